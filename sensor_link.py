#!/usr/bin/env python3
"""
sensor_link.py — Serial line source for the AutoBright light sensor.

The sensor board (BH1750 / TEMT6000 on an Arduino-class MCU) prints one
reading per line at 9600 baud, 8N1, no flow control:

    LUX:742\\r\\n

SerialLineSource opens the port with pyserial and exposes the decoded,
stripped, non-empty lines as an async iterator. Blocking readline() calls
run in a worker thread so the event loop stays responsive. A read error
ends the iterator by raising, which the ingestion pipeline reports as a
disconnect.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, List, Optional

import serial
import serial.tools.list_ports

import config

logger = logging.getLogger("AutoBright.Sensor")


def available_ports() -> List[str]:
    """Device names of every serial port the OS reports (COM3, /dev/ttyUSB0, …)."""
    try:
        return sorted(p.device for p in serial.tools.list_ports.comports())
    except Exception as e:
        logger.warning(f"Port scan failed: {e}")
        return []


class SerialLineSource:
    """
    Usage:
        link = SerialLineSource("/dev/ttyUSB0")
        link.open()
        async for line in link.lines():
            ...
        link.close()
    """

    def __init__(self, port: str, baudrate: int = config.SERIAL_BAUDRATE,
                 timeout: float = config.SERIAL_TIMEOUT_S):
        self.port     = port
        self.baudrate = baudrate
        self.timeout  = timeout
        self._serial: Optional[serial.Serial] = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    def open(self) -> bool:
        """Open the port. Returns False (and logs) if the OS refuses it."""
        try:
            self._serial = serial.Serial(
                self.port,
                self.baudrate,
                bytesize = serial.EIGHTBITS,
                parity   = serial.PARITY_NONE,
                stopbits = serial.STOPBITS_ONE,
                xonxoff  = False,
                rtscts   = False,
                timeout  = self.timeout,
            )
            self._closing = False
            logger.info(f"Serial: connected to {self.port} @ {self.baudrate}")
            return True
        except (serial.SerialException, ValueError) as e:
            logger.error(f"Serial: failed to open {self.port}: {e}")
            self._serial = None
            return False

    async def lines(self) -> AsyncIterator[str]:
        """Yield stripped, non-empty lines until closed. Read errors propagate."""
        while self.is_open and not self._closing:
            port = self._serial
            try:
                raw = await asyncio.to_thread(port.readline)
            except Exception:
                if self._closing:
                    return   # port closed under a pending read
                raise
            if not raw:
                continue   # readline timeout
            text = raw.decode("utf-8", errors="replace").strip()
            if text:
                yield text

    def close(self):
        self._closing = True
        if self._serial is not None:
            try:
                self._serial.close()
            except Exception as e:
                logger.warning(f"Serial: close failed: {e}")
            self._serial = None
            logger.info(f"Serial: disconnected from {self.port}")
