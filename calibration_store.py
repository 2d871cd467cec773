#!/usr/bin/env python3
"""
calibration_store.py — User calibration points for AutoBright.

CalibrationStore     — owned, ordered set of (lux, brightness) points.
                       Points closer than MERGE_TOLERANCE lux collapse into
                       the newest one. Every mutation is mirrored to a
                       persistence backend.
JsonCalibrationFile  — default backend (~/.autobright_calibration.json).

Writers are serialised by a lock. Readers get an immutable tuple snapshot
that is swapped in whole on every write, so they never see a half-applied
change.
"""

from __future__ import annotations

import datetime
import json
import logging
import threading
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Protocol, Tuple

from brightness_curves import DEFAULT_MAX_LUX

logger = logging.getLogger("AutoBright.Store")

MERGE_TOLERANCE = 10   # lux


class PersistenceFailure(OSError):
    """Calibration data could not be written or read."""


@dataclass(frozen=True)
class CalibrationPoint:
    """One user-confirmed brightness at a given ambient light level."""
    lux:         int
    brightness:  int
    recorded_at: datetime.datetime = field(default_factory=datetime.datetime.now)

    def __post_init__(self):
        if self.lux < 0:
            raise ValueError(f"lux must be >= 0, got {self.lux}")
        if not 0 <= self.brightness <= 100:
            raise ValueError(f"brightness must be in 0..100, got {self.brightness}")

    def to_record(self) -> dict:
        return {
            "lux":        self.lux,
            "brightness": self.brightness,
            "timestamp":  int(self.recorded_at.timestamp() * 1000),
        }

    @classmethod
    def from_record(cls, rec: dict) -> "CalibrationPoint":
        return cls(
            lux         = int(rec["lux"]),
            brightness  = int(rec["brightness"]),
            recorded_at = datetime.datetime.fromtimestamp(int(rec["timestamp"]) / 1000.0),
        )


@dataclass
class CalibrationStats:
    count:          int   = 0
    min_lux:        int   = 0
    max_lux:        int   = 0
    min_brightness: int   = 0
    max_brightness: int   = 0
    avg_brightness: float = 0.0
    coverage:       float = 0.0

    def as_dict(self) -> dict:
        return asdict(self)


class CalibrationPersistence(Protocol):
    def load(self) -> List[CalibrationPoint]: ...
    def save(self, points: List[CalibrationPoint]) -> bool: ...


# ─── JSON BACKEND ─────────────────────────────────────────────────────────────

class JsonCalibrationFile:
    """
    Ordered list of {lux, brightness, timestamp} records, timestamp in
    epoch milliseconds.
    """

    def __init__(self, path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> List[CalibrationPoint]:
        if not self._path.exists():
            return []
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8") or "[]")
            points = [CalibrationPoint.from_record(r) for r in raw]
            logger.info(f"Calibration: loaded {len(points)} points from {self._path}")
            return points
        except Exception as e:
            logger.warning(f"Calibration load failed ({self._path}): {e}")
            return []

    def save(self, points: List[CalibrationPoint]) -> bool:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(
                json.dumps([p.to_record() for p in points], indent=2), encoding="utf-8"
            )
            return True
        except OSError as e:
            raise PersistenceFailure(f"Calibration save failed ({self._path}): {e}") from e


# ─── STORE ────────────────────────────────────────────────────────────────────

def _sorted(points: Iterable[CalibrationPoint]) -> Tuple[CalibrationPoint, ...]:
    return tuple(sorted(points, key=lambda p: p.lux))


class CalibrationStore:
    """
    The authoritative calibration set for the process.

    on_diagnostic(kind, message) is called for persistence problems so the
    owner can surface them; the store itself never raises on I/O.
    """

    def __init__(
        self,
        persistence: Optional[CalibrationPersistence] = None,
        on_diagnostic: Optional[Callable[[str, str], None]] = None,
        tolerance: int = MERGE_TOLERANCE,
    ):
        self._persistence   = persistence
        self._on_diagnostic = on_diagnostic
        self.tolerance      = tolerance
        self._lock          = threading.Lock()
        self._points: Tuple[CalibrationPoint, ...] = ()
        self._hydrate()

    def _hydrate(self):
        if self._persistence is None:
            return
        try:
            self._points = _sorted(self._persistence.load())
        except Exception as e:
            self._points = ()
            self._diagnose("persistence_failure", f"Calibration load failed, starting empty: {e}")

    def _diagnose(self, kind: str, message: str):
        logger.warning(message)
        if self._on_diagnostic:
            self._on_diagnostic(kind, message)

    def _commit(self, points: Iterable[CalibrationPoint]):
        """Swap in the new snapshot and shadow it to persistence. Caller holds the lock."""
        self._points = _sorted(points)
        if self._persistence is None:
            return
        try:
            if not self._persistence.save(list(self._points)):
                self._diagnose("persistence_failure", "Calibration save reported failure; keeping in memory.")
        except Exception as e:
            logger.error(f"Calibration save failed: {e}")
            self._diagnose("persistence_failure", f"Calibration save failed; keeping in memory: {e}")

    # ── Mutations ────────────────────────────────────────────────────────────
    def insert(self, point: CalibrationPoint):
        with self._lock:
            kept = [p for p in self._points if abs(p.lux - point.lux) > self.tolerance]
            kept.append(point)
            self._commit(kept)
        logger.info(f"Calibration: LUX:{point.lux} -> {point.brightness}% ({len(self._points)} points)")

    def insert_many(self, points: Iterable[CalibrationPoint]):
        with self._lock:
            self._commit(list(points))
        logger.info(f"Calibration: replaced set ({len(self._points)} points)")

    def remove_near(self, lux: int, tolerance: Optional[int] = None) -> int:
        tol = self.tolerance if tolerance is None else tolerance
        with self._lock:
            kept = [p for p in self._points if not (lux - tol <= p.lux <= lux + tol)]
            removed = len(self._points) - len(kept)
            if removed:
                self._commit(kept)
        return removed

    def remove_older_than(self, cutoff: datetime.datetime) -> int:
        with self._lock:
            kept = [p for p in self._points if p.recorded_at >= cutoff]
            removed = len(self._points) - len(kept)
            if removed:
                self._commit(kept)
        if removed:
            logger.info(f"Calibration: pruned {removed} points older than {cutoff.isoformat()}")
        return removed

    def clear(self):
        with self._lock:
            self._commit(())
        logger.info("Calibration: cleared")

    # ── Reads ────────────────────────────────────────────────────────────────
    def all(self) -> List[CalibrationPoint]:
        return list(self._points)

    def in_range(self, min_lux: int, max_lux: int) -> List[CalibrationPoint]:
        return [p for p in self._points if min_lux <= p.lux <= max_lux]

    def __len__(self) -> int:
        return len(self._points)

    def stats(self) -> CalibrationStats:
        points = self._points
        if not points:
            return CalibrationStats()
        brightness = [p.brightness for p in points]
        min_lux, max_lux = points[0].lux, points[-1].lux
        coverage = (max_lux - min_lux) / DEFAULT_MAX_LUX
        return CalibrationStats(
            count          = len(points),
            min_lux        = min_lux,
            max_lux        = max_lux,
            min_brightness = min(brightness),
            max_brightness = max(brightness),
            avg_brightness = sum(brightness) / len(brightness),
            coverage       = max(0.0, min(1.0, coverage)),
        )
