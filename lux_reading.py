#!/usr/bin/env python3
"""
lux_reading.py — Ambient-light line parser for AutoBright.

The sensor firmware prints one reading per line:

    LUX:742

Older boards (and some USB bridges) emit the bare number or wrap it in
noise, so when the tag is missing we take the first run of digits in the
line instead.
"""

from __future__ import annotations

import datetime
import re
from dataclasses import dataclass, field
from typing import Optional

TAGGED_PATTERN = re.compile(r"LUX:(\d+)", re.ASCII)
DIGITS_PATTERN = re.compile(r"(\d+)", re.ASCII)


class MalformedReading(ValueError):
    """Line carries no usable lux value."""

    def __init__(self, line: str):
        super().__init__(f"Invalid sensor line: {line!r} (expected LUX:<n> or a number)")
        self.line = line


@dataclass(frozen=True)
class LightSample:
    lux:         int
    observed_at: datetime.datetime = field(default_factory=datetime.datetime.now)


def parse_line(line: Optional[str], observed_at: Optional[datetime.datetime] = None) -> LightSample:
    """
    Turn one decoded sensor line into a LightSample.
    Raises MalformedReading for empty lines and lines without digits.
    """
    text = (line or "").strip()
    if not text:
        raise MalformedReading(line or "")

    match = TAGGED_PATTERN.search(text) or DIGITS_PATTERN.search(text)
    if match is None:
        raise MalformedReading(text)

    when = observed_at or datetime.datetime.now()
    return LightSample(lux=int(match.group(1)), observed_at=when)
