"""Tests for the synthetic usage generator."""

from datetime import datetime

import pytest

from conftest import START, device
from homepulse.core.entities import parse_devices
from homepulse.data.synthetic import DEFAULT_PROFILE, SyntheticUsageGenerator, profile_for

HOUSEHOLD = [
    device("fridge", "on", type="refrigerator", normal_usage=150),
    device("tv", "off", type="tv", normal_usage=120),
    device("pc", "off", type="computer", normal_usage=300),
    device("lamp", "off", type="light", normal_usage=10),
]


@pytest.fixture
def devices():
    return parse_devices(HOUSEHOLD)


def test_same_seed_same_history(devices):
    first = list(SyntheticUsageGenerator(devices, seed=42).days(3, START))
    second = list(SyntheticUsageGenerator(devices, seed=42).days(3, START))
    assert [d.snapshots for d in first] == [d.snapshots for d in second]
    assert [d.actions for d in first] == [d.actions for d in second]


def test_day_has_one_snapshot_per_hour(devices):
    day = SyntheticUsageGenerator(devices, seed=1).day(datetime(2024, 1, 1, 7, 45))
    assert len(day.snapshots) == 24
    assert day.start == datetime(2024, 1, 1, 7)
    assert [s.timestamp.hour for s in day.snapshots] == list(range(7, 24)) + list(range(0, 7))


def test_refrigerator_stays_on_with_varying_power(devices):
    days = list(SyntheticUsageGenerator(devices, seed=7).days(2, START))
    for day in days:
        for snapshot in day.snapshots:
            fridge = next(d for d in snapshot.devices if d.device_id == "fridge")
            assert fridge.is_active
            assert 120 <= fridge.power_watts <= 180


def test_toggles_become_manual_actions(devices):
    days = list(SyntheticUsageGenerator(devices, seed=3).days(7, START))
    actions = [a for d in days for a in d.actions]
    assert actions
    assert all(a.is_manual and a.context["simulated"] for a in actions)
    assert all(a.device_id != "fridge" for a in actions)


def test_off_device_waits_for_its_profile_hours(devices):
    day = SyntheticUsageGenerator(devices, seed=5).day(START)
    morning = [s for s in day.snapshots if s.hour_of_day < 9]
    assert len(morning) == 9
    for snapshot in morning:
        pc = next(d for d in snapshot.devices if d.device_id == "pc")
        assert not pc.is_active


def test_profile_lookup():
    assert profile_for("Air Conditioner") == profile_for("air_conditioner")
    assert profile_for("toaster") == DEFAULT_PROFILE


def test_needs_devices():
    with pytest.raises(ValueError):
        SyntheticUsageGenerator([])
