import datetime
import os
import tempfile

# Keep config/app from reading or writing the real home directory.
os.environ.setdefault("AUTOBRIGHT_HOME", tempfile.mkdtemp(prefix="autobright-test-"))

import pytest

from calibration_store import CalibrationPoint, CalibrationStore


T0 = datetime.datetime(2024, 5, 1, 12, 0, 0)


def point(lux, brightness, minutes=0):
    return CalibrationPoint(lux=lux, brightness=brightness,
                            recorded_at=T0 + datetime.timedelta(minutes=minutes))


class FakeActuator:
    def __init__(self, current=50, fail=False):
        self.calls = []
        self.current = current
        self.fail = fail

    def set(self, percentage):
        self.calls.append(percentage)
        if self.fail:
            return False
        self.current = percentage
        return True

    def get_current(self):
        return self.current


class MemoryPersistence:
    def __init__(self, points=None, fail_save=False, fail_load=False):
        self.saved = list(points or [])
        self.saves = 0
        self.fail_save = fail_save
        self.fail_load = fail_load

    def load(self):
        if self.fail_load:
            raise ValueError("corrupt calibration blob")
        return list(self.saved)

    def save(self, points):
        self.saves += 1
        if self.fail_save:
            raise OSError("disk full")
        self.saved = list(points)
        return True


@pytest.fixture
def actuator():
    return FakeActuator()


@pytest.fixture
def store():
    return CalibrationStore()


@pytest.fixture
def events():
    return []


@pytest.fixture
def collect(events):
    async def _collect(payload):
        events.append(payload)
    return _collect
