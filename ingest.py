#!/usr/bin/env python3
"""
ingest.py — Sensor → brightness pipeline for AutoBright.

Two flows meet here:

  1. SENSOR  each line from the light sensor is parsed, mapped through the
             active curve (calibration or FORWARD analytic) and applied to
             the screen.
  2. MANUAL  slider moves from the user are debounced (300 ms, last value
             wins), applied, and stored as a calibration point when the current lux
             is known. This is how the curve learns.

Session states:  IDLE → CONNECTED → RECEIVING → DISCONNECTED

The pipeline holds no log buffer. Everything a UI might show is published
as a dict through broadcast_fn:
    {"type": "session",     "state": ...}
    {"type": "decision",    "source": "sensor"|"manual", "lux", "brightness", "applied"}
    {"type": "diagnostic",  "kind": ..., "msg": ...}
    {"type": "calibration", "action": ..., "count": ...}
"""

from __future__ import annotations

import asyncio
import datetime
import logging
from enum import Enum
from typing import AsyncIterable, Awaitable, Callable, Optional

import config
from brightness_curves import MappingMode, brightness_for, round_half_up
from calibration_optimizer import adaptive_curve_fitting, optimize
from calibration_store import CalibrationPoint, CalibrationStore
from display import BrightnessActuator
from lux_reading import LightSample, MalformedReading, parse_line

logger = logging.getLogger("AutoBright.Ingest")

BroadcastFn = Callable[[dict], Awaitable[None]]


class SessionState(str, Enum):
    IDLE         = "idle"
    CONNECTED    = "connected"
    RECEIVING    = "receiving"
    DISCONNECTED = "disconnected"


class IngestionPipeline:

    def __init__(
        self,
        store: CalibrationStore,
        actuator: BrightnessActuator,
        broadcast_fn: Optional[BroadcastFn] = None,
        debounce_s: float = config.MANUAL_DEBOUNCE_S,
        mode: MappingMode = MappingMode.FORWARD,
        clock: Callable[[], datetime.datetime] = datetime.datetime.now,
    ):
        self.store      = store
        self.actuator   = actuator
        self.broadcast  = broadcast_fn
        self.debounce_s = debounce_s
        self.mode       = mode
        self._clock     = clock

        self.state: SessionState = SessionState.IDLE
        self.last_sample: Optional[LightSample] = None
        self.current_brightness: Optional[int] = None
        self.manual_brightness: int = 50

        self._debounce_task: Optional[asyncio.Task] = None

    @property
    def current_lux(self) -> int:
        """Lux of the latest reading; 0 until the sensor has spoken."""
        return self.last_sample.lux if self.last_sample else 0

    async def _emit(self, payload: dict):
        if self.broadcast is None:
            return
        try:
            await self.broadcast(payload)
        except Exception as e:
            logger.warning(f"Broadcast failed: {e}")

    async def _diagnostic(self, kind: str, msg: str):
        await self._emit({"type": "diagnostic", "kind": kind, "msg": msg})

    def _actuate(self, value: int) -> bool:
        try:
            return bool(self.actuator.set(value))
        except Exception as e:
            logger.error(f"Actuator raised on set({value}): {e}")
            return False

    def seed_from_actuator(self) -> int:
        """Initialise the manual slider from the screen's current brightness."""
        try:
            value = int(self.actuator.get_current())
        except Exception as e:
            logger.warning(f"Could not read current brightness: {e}")
            return self.manual_brightness
        if 0 <= value <= 100:
            self.current_brightness = value
            self.manual_brightness  = value
        return self.manual_brightness

    # ─── SENSOR FLOW ──────────────────────────────────────────────────────────
    async def handle_line(self, line: str) -> Optional[int]:
        """
        Process one sensor line. Returns the brightness decided, or None if
        the line was rejected. A failed actuation is reported, never retried.
        """
        try:
            sample = parse_line(line, self._clock())
        except MalformedReading as e:
            logger.warning(str(e))
            await self._diagnostic("malformed_reading", str(e))
            return None

        self.last_sample = sample
        target = brightness_for(sample.lux, self.store.all(), self.mode)
        applied = self._actuate(target)

        if applied:
            self.current_brightness = target
            self.manual_brightness  = target   # keep the slider in step
        else:
            logger.error(f"Auto brightness failed: LUX:{sample.lux} -> {target}%")
            await self._diagnostic("actuation_failure", f"Could not set brightness to {target}%")

        await self._emit({
            "type":       "decision",
            "source":     "sensor",
            "lux":        sample.lux,
            "brightness": target,
            "applied":    applied,
            "calibration_points": len(self.store),
        })
        return target

    async def run(self, source: AsyncIterable[str]):
        """Consume one sensor session until the source ends or fails."""
        self.state = SessionState.CONNECTED
        await self._emit({"type": "session", "state": self.state.value})
        reason = "source_closed"
        try:
            async for line in source:
                if self.state is SessionState.DISCONNECTED:
                    break
                self.state = SessionState.RECEIVING
                await self.handle_line(line)
        except asyncio.CancelledError:
            reason = "requested"
            raise
        except Exception as e:
            reason = "sensor_failure"
            logger.warning(f"Sensor stream failed: {e}")
            await self._diagnostic("sensor_failure", str(e))
        finally:
            await self.disconnect(reason)

    async def disconnect(self, reason: str = "requested"):
        """End the session. Any pending manual adjustment is dropped, not applied."""
        self._cancel_debounce()
        if self.state in (SessionState.IDLE, SessionState.DISCONNECTED):
            return
        self.state = SessionState.DISCONNECTED
        logger.info(f"Session ended ({reason})")
        await self._emit({"type": "session", "state": self.state.value, "reason": reason})

    # ─── MANUAL FLOW ──────────────────────────────────────────────────────────
    def set_manual_brightness(self, value: int):
        """Schedule a manual brightness change; replaces any pending one."""
        value = max(0, min(100, round_half_up(float(value))))
        self.manual_brightness = value
        self._cancel_debounce()
        self._debounce_task = asyncio.get_running_loop().create_task(self._apply_manual(value))

    def _cancel_debounce(self):
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = None

    async def _apply_manual(self, value: int):
        await asyncio.sleep(self.debounce_s)
        # Fired: later slider moves or a disconnect must not cancel this one.
        self._debounce_task = None

        applied = self._actuate(value)
        if applied:
            self.current_brightness = value
            logger.info(f"Manual brightness set to {value}%")
        else:
            logger.error(f"Manual brightness failed: {value}%")

        # The slider position is the user's intent, so learn from it even if
        # the platform call failed.
        lux = self.current_lux
        if lux > 0:
            self.store.insert(CalibrationPoint(lux=lux, brightness=value, recorded_at=self._clock()))

        if not applied:
            await self._diagnostic("actuation_failure", f"Could not set brightness to {value}%")
        await self._emit({
            "type":       "decision",
            "source":     "manual",
            "lux":        lux,
            "brightness": value,
            "applied":    applied,
        })
        if lux > 0:
            await self._emit({"type": "calibration", "action": "learned",
                              "lux": lux, "brightness": value, "count": len(self.store)})
        else:
            msg = "No light reading yet; adjustment applied but not learned"
            logger.info(msg)
            await self._diagnostic("no_light_sample", msg)

    # ─── CALIBRATION REQUESTS ─────────────────────────────────────────────────
    async def optimize_calibration(self, method: str = "adaptive") -> int:
        """
        Compress the stored calibration ('adaptive' fitting or 'prune').
        Needs more than three points; returns the resulting point count.
        """
        points = self.store.all()
        if len(points) <= 3:
            return len(points)
        if method == "adaptive":
            optimized = adaptive_curve_fitting(points)
        elif method == "prune":
            optimized = optimize(points)
        else:
            raise ValueError(f"Unknown optimisation method '{method}'")

        self.store.insert_many(optimized)
        logger.info(f"Calibration optimised ({method}): {len(points)} -> {len(optimized)} points")
        await self._emit({"type": "calibration", "action": "optimized",
                          "method": method, "count": len(optimized)})
        return len(optimized)

    async def clear_calibration(self):
        self.store.clear()
        await self._emit({"type": "calibration", "action": "cleared", "count": 0})

    def status(self) -> dict:
        return {
            "state":              self.state.value,
            "lux":                self.current_lux,
            "current_brightness": self.current_brightness,
            "manual_brightness":  self.manual_brightness,
            "mode":               self.mode.value,
            "calibration":        self.store.stats().as_dict(),
        }
