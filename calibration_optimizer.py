#!/usr/bin/env python3
"""
calibration_optimizer.py — Calibration clean-up for AutoBright.

Manual corrections pile up noisy points over weeks of use. Two passes
compress them back into a clean curve:

  optimize()                — drops interior points that sit within 5 % of
                              the line through their kept neighbours.
  adaptive_curve_fitting()  — splits the set into lighting regimes at big
                              lux/brightness jumps, then smooths each regime
                              with a 3-point moving average. Points are only
                              moved when they stray more than 3 % from it.

Both are pure: they return a new list and never touch the store.
"""

from __future__ import annotations

import dataclasses
from typing import List, Sequence

import numpy as np

from brightness_curves import round_half_up
from calibration_store import CalibrationPoint

PRUNE_DEVIATION     = 5.0   # brightness %
SEGMENT_LUX_GAP     = 100   # lux
SEGMENT_BRIGHT_GAP  = 20    # brightness %
SMOOTH_WINDOW       = 3
SMOOTH_DEVIATION    = 3     # brightness %


def _interpolate(x1: float, y1: float, x2: float, y2: float, x: float) -> float:
    if abs(x2 - x1) < 1e-10:
        return y1
    return y1 + (y2 - y1) * (x - x1) / (x2 - x1)


def _by_lux(points: Sequence[CalibrationPoint]) -> List[CalibrationPoint]:
    return sorted(points, key=lambda p: p.lux)


def optimize(points: Sequence[CalibrationPoint]) -> List[CalibrationPoint]:
    """Deviation pruning. Sets of three points or fewer come back unchanged."""
    if len(points) <= 3:
        return list(points)

    ordered = _by_lux(points)
    kept = [ordered[0]]

    for i in range(1, len(ordered) - 1):
        prev, current, nxt = kept[-1], ordered[i], ordered[i + 1]
        expected = _interpolate(prev.lux, prev.brightness, nxt.lux, nxt.brightness, current.lux)
        if abs(current.brightness - expected) > PRUNE_DEVIATION:
            kept.append(current)

    kept.append(ordered[-1])
    return kept


# ----------------------------------------------------------------------
# Adaptive curve fitting
# ----------------------------------------------------------------------

def detect_segments(points: Sequence[CalibrationPoint]) -> List[List[CalibrationPoint]]:
    """
    Split lux-sorted points wherever the lux gap exceeds SEGMENT_LUX_GAP or
    the brightness gap exceeds SEGMENT_BRIGHT_GAP. The point before a break
    also opens the next segment, so neighbours overlap by one point.
    Single-point segments are dropped.
    """
    if not points:
        return []

    segments: List[List[CalibrationPoint]] = []
    current = [points[0]]

    for prev, point in zip(points, points[1:]):
        lux_gap    = point.lux - prev.lux
        bright_gap = abs(point.brightness - prev.brightness)

        if lux_gap > SEGMENT_LUX_GAP or bright_gap > SEGMENT_BRIGHT_GAP:
            if len(current) > 1:
                segments.append(current)
            current = [prev, point]
        else:
            current.append(point)

    if len(current) > 1:
        segments.append(current)
    return segments


def smooth_point(segment: Sequence[CalibrationPoint], index: int) -> CalibrationPoint:
    """Moving average of up to SMOOTH_WINDOW points around index (same lux and timestamp)."""
    window_size = min(SMOOTH_WINDOW, len(segment))
    start = max(0, index - window_size // 2)
    end = min(len(segment), start + window_size)

    mean = float(np.mean([p.brightness for p in segment[start:end]]))
    return dataclasses.replace(segment[index], brightness=round_half_up(mean))


def fit_segment(segment: Sequence[CalibrationPoint]) -> List[CalibrationPoint]:
    if len(segment) <= 2:
        return list(segment)

    fitted = [segment[0]]
    for i in range(1, len(segment) - 1):
        current = segment[i]
        smoothed = smooth_point(segment, i)
        if abs(current.brightness - smoothed.brightness) > SMOOTH_DEVIATION:
            fitted.append(smoothed)
        else:
            fitted.append(current)
    fitted.append(segment[-1])
    return fitted


def adaptive_curve_fitting(points: Sequence[CalibrationPoint]) -> List[CalibrationPoint]:
    """
    Segment-wise smoothing. Fewer than three points come back unchanged.
    Neighbouring segments share their boundary point; it is emitted once, not
    once per segment, so the result keeps one point per lux.
    """
    if len(points) < 3:
        return list(points)

    result: List[CalibrationPoint] = []
    for segment in detect_segments(_by_lux(points)):
        fitted = fit_segment(segment)
        # segment ends are never moved, so the shared boundary is identical on both sides
        if result and fitted and result[-1] == fitted[0]:
            fitted = fitted[1:]
        result.extend(fitted)
    return result
