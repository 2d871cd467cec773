#!/usr/bin/env python3
"""
brightness_curves.py — Light → brightness curves for AutoBright.

Two ways to turn a lux value into a screen brightness percentage:

- ANALYTIC curves (no calibration yet). Lux is normalised against a
  10 000 lux ceiling and compressed with log10(1 + 9x), so the first few
  hundred lux move the screen a lot and bright daylight barely at all.
  The result is rescaled into 10–100 %, rising (FORWARD) or falling
  (INVERSE) with light.

- CALIBRATION interpolation. Once the user has corrected the screen at
  least once, their (lux, brightness) points win: piecewise-linear between
  the bracketing pair, flat beyond the first and last point.

Calibrated results are clamped to 0–100, analytic ones to 10–100.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import TYPE_CHECKING, Dict, Iterable, Optional, Sequence

import numpy as np

if TYPE_CHECKING:
    from calibration_store import CalibrationPoint

DEFAULT_MIN_BRIGHTNESS = 10.0
DEFAULT_MAX_BRIGHTNESS = 100.0
DEFAULT_MAX_LUX        = 10000.0


class MappingMode(str, Enum):
    INVERSE = "inverse"   # brighter room -> dimmer screen (indoor)
    FORWARD = "forward"   # brighter room -> brighter screen (outdoor)


MODE_DESCRIPTIONS: Dict[MappingMode, str] = {
    MappingMode.INVERSE: "Inverse: the brighter the surroundings, the dimmer the screen (indoor use).",
    MappingMode.FORWARD: "Forward: the brighter the surroundings, the brighter the screen (outdoor use).",
}


def round_half_up(value: float) -> int:
    """Round to nearest integer, halves away from zero."""
    return int(math.floor(value + 0.5)) if value >= 0 else -int(math.floor(-value + 0.5))


def _clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, value))


# ----------------------------------------------------------------------
# Analytic curves
# ----------------------------------------------------------------------

def compressed_light(lux) -> np.ndarray:
    """log10(1 + 9x) of lux normalised to [0, 1] against DEFAULT_MAX_LUX."""
    normalized = np.clip(np.asarray(lux, dtype=float) / DEFAULT_MAX_LUX, 0.0, 1.0)
    return np.log10(1.0 + normalized * 9.0)


def forward_curve(lux: int) -> int:
    span = DEFAULT_MAX_BRIGHTNESS - DEFAULT_MIN_BRIGHTNESS
    brightness = DEFAULT_MIN_BRIGHTNESS + float(compressed_light(lux)) * span
    return _clamp(round_half_up(brightness), 10, 100)


def inverse_curve(lux: int) -> int:
    span = DEFAULT_MAX_BRIGHTNESS - DEFAULT_MIN_BRIGHTNESS
    brightness = DEFAULT_MAX_BRIGHTNESS - float(compressed_light(lux)) * span
    return _clamp(round_half_up(brightness), 10, 100)


ANALYTIC_CURVES = {
    MappingMode.FORWARD: forward_curve,
    MappingMode.INVERSE: inverse_curve,
}


# ----------------------------------------------------------------------
# Calibration interpolation
# ----------------------------------------------------------------------

def interpolate_brightness(lux: int, calibration: Sequence["CalibrationPoint"]) -> int:
    """
    Piecewise-linear brightness over calibration points (must be non-empty).
    Two points at the same lux return the lower one's brightness.
    """
    points = sorted(calibration, key=lambda p: p.lux)
    first, last = points[0], points[-1]

    if lux <= first.lux:
        return first.brightness
    if lux >= last.lux:
        return last.brightness

    for p1, p2 in zip(points, points[1:]):
        if p1.lux <= lux <= p2.lux:
            if p2.lux == p1.lux:
                return p1.brightness
            ratio = (lux - p1.lux) / (p2.lux - p1.lux)
            brightness = p1.brightness + ratio * (p2.brightness - p1.brightness)
            return _clamp(round_half_up(brightness), 0, 100)

    # unreachable for a sorted, non-empty set
    return last.brightness


def brightness_for(
    lux: int,
    calibration: Optional[Sequence["CalibrationPoint"]] = None,
    mode: MappingMode = MappingMode.FORWARD,
) -> int:
    """Target brightness for a lux value. Calibration always beats the analytic curve."""
    if calibration:
        return interpolate_brightness(lux, calibration)
    return ANALYTIC_CURVES[MappingMode(mode)](lux)


def compare_modes(lux: int, calibration: Optional[Sequence["CalibrationPoint"]] = None) -> Dict[str, int]:
    return {mode.value: brightness_for(lux, calibration, mode) for mode in MappingMode}


def sample_curve(
    calibration: Optional[Sequence["CalibrationPoint"]],
    mode: MappingMode = MappingMode.FORWARD,
    lux_values: Optional[Iterable[int]] = None,
    n: int = 51,
) -> np.ndarray:
    """
    Evaluate the active curve over a lux grid for previews.
    Returns an (N, 2) int array of [lux, brightness] rows.
    """
    if lux_values is None:
        lux_values = np.linspace(0, DEFAULT_MAX_LUX, max(2, n)).astype(int)
    lux_arr = np.asarray(list(lux_values), dtype=int)
    snapshot = list(calibration or [])
    out = np.array([brightness_for(int(x), snapshot, mode) for x in lux_arr], dtype=int)
    return np.column_stack([lux_arr, out]) if lux_arr.size else np.empty((0, 2), dtype=int)
