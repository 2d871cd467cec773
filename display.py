#!/usr/bin/env python3
"""
display.py — Screen brightness actuator for AutoBright.

Thin wrapper over screen-brightness-control (WMI on Windows, sysfs /
ddcutil / light on Linux). Only the primary display is driven.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import screen_brightness_control as sbc

logger = logging.getLogger("AutoBright.Display")

PRIMARY_DISPLAY = 0


class ActuationFailure(RuntimeError):
    """The platform refused or failed to change the screen brightness."""


class BrightnessActuator(Protocol):
    def set(self, percentage: int) -> bool: ...
    def get_current(self) -> int: ...


class ScreenBrightness:
    """
    set() returns False instead of raising, so one failed platform call
    only means the brightness did not change this cycle.
    """

    def __init__(self, display: Optional[int] = PRIMARY_DISPLAY, fallback: int = 50):
        self.display  = display
        self._current = fallback

    def _write(self, percentage: int):
        try:
            sbc.set_brightness(percentage, display=self.display)
        except Exception as e:
            raise ActuationFailure(f"set_brightness({percentage}) failed: {e}") from e

    def set(self, percentage: int) -> bool:
        if not 0 <= percentage <= 100:
            logger.warning(f"Brightness {percentage}% out of range, ignored")
            return False
        try:
            self._write(int(percentage))
        except ActuationFailure as e:
            logger.error(str(e))
            return False
        self._current = int(percentage)
        logger.debug(f"Brightness set to {percentage}%")
        return True

    def get_current(self) -> int:
        """Current brightness, or the last value we set if the platform can't tell us."""
        try:
            value = sbc.get_brightness(display=self.display)
            value = value[0] if isinstance(value, list) else value
            self._current = int(value)
        except Exception as e:
            logger.warning(f"get_brightness failed, using last known {self._current}%: {e}")
        return self._current
