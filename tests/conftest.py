"""Shared builders for snapshot histories."""

from datetime import datetime, timedelta

import pytest

from homepulse.core.entities import DeviceRecord, UsageSnapshot

# 2024-01-01 is a Monday
START = datetime(2024, 1, 1)


def device(device_id, status="off", type="light", normal_usage=100.0, **extra) -> dict:
    return {
        "id": device_id,
        "name": extra.pop("name", device_id.title()),
        "type": type,
        "status": status,
        "normal_usage": normal_usage,
        **extra,
    }


def build_history(days, states, start=START) -> list[UsageSnapshot]:
    """Hourly snapshots for ``days`` days; ``states(day, hour)`` returns device dicts."""
    snapshots = []
    for day in range(days):
        for hour in range(24):
            timestamp = start + timedelta(days=day, hours=hour)
            records = [DeviceRecord.model_validate(d) for d in states(day, hour)]
            snapshots.append(UsageSnapshot.capture(records, timestamp))
    return snapshots


@pytest.fixture
def start_time():
    return START


@pytest.fixture
def make_device():
    return device


@pytest.fixture
def make_history():
    return build_history


@pytest.fixture
def evening_history():
    """100 days; device x is on at 18:00 except on days 0, 20, 40, 60 and 80."""
    skipped = {0, 20, 40, 60, 80}

    def states(day, hour):
        on = hour == 18 and day not in skipped
        return [device("x", "on" if on else "off", normal_usage=500.0)]

    return build_history(100, states)


@pytest.fixture
def fridge_history():
    """8 days of one always-on device drawing 450W on even days, 550W on odd days."""

    def states(day, hour):
        power = 450.0 if day % 2 == 0 else 550.0
        return [device("fridge", "on", type="refrigerator", normal_usage=500.0, current_power=power)]

    return build_history(8, states)
