"""Synthetic usage data generator.

Plays a household forward hour by hour. Each device type has an hourly
"should be on" probability; devices follow it lazily (an on device that
should be off switches off with 30% chance per hour, an off device that
should be on switches on with 40% chance), and active power varies by
+/-20% around the rated usage. Toggles between consecutive hours become
user actions.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import numpy as np

from homepulse.core.entities import (
    HOURS_PER_DAY,
    WEEKEND_DAYS,
    DeviceRecord,
    UsageSnapshot,
    UserActionEvent,
)

logger = logging.getLogger(__name__)

TURN_OFF_CHANCE = 0.3
TURN_ON_CHANCE = 0.4
POWER_VARIATION = 0.2


def _window(start: int, end: int, probability: float) -> list[float]:
    """Hourly probabilities: ``probability`` for hours in [start, end], else 0."""
    return [probability if start <= h <= end else 0.0 for h in range(HOURS_PER_DAY)]


def _night(probability: float) -> list[float]:
    return [probability if (h >= 18 or h <= 6) else 0.0 for h in range(HOURS_PER_DAY)]


# device type -> (weekday, weekend) hourly "should be on" probability
USAGE_PROFILES: dict[str, tuple[list[float], list[float]]] = {
    "refrigerator": ([1.0] * HOURS_PER_DAY, [1.0] * HOURS_PER_DAY),
    "light": (_night(0.8), _night(0.8)),
    "tv": (_window(18, 22, 0.7), _window(10, 23, 0.6)),
    "computer": (_window(9, 18, 0.8), _window(12, 20, 0.4)),
    "air_conditioner": (_window(12, 18, 0.6), _window(12, 18, 0.6)),
    "washing_machine": (_window(7, 9, 0.3), _window(9, 12, 0.5)),
}
DEFAULT_PROFILE = (_window(8, 22, 0.3), _window(8, 22, 0.3))


def profile_for(device_type: str) -> tuple[list[float], list[float]]:
    key = device_type.strip().lower().replace(" ", "_").replace("-", "_")
    return USAGE_PROFILES.get(key, DEFAULT_PROFILE)


@dataclass
class SyntheticDay:
    start: datetime
    snapshots: list[UsageSnapshot] = field(default_factory=list)
    actions: list[UserActionEvent] = field(default_factory=list)


class SyntheticUsageGenerator:
    """Deterministic (given a seed) stream of hourly snapshots for a device set."""

    def __init__(self, devices: Sequence[DeviceRecord], seed: int | None = None):
        if not devices:
            raise ValueError("SyntheticUsageGenerator needs at least one device")
        self.devices = list(devices)
        self.rng = np.random.default_rng(seed)
        self._status = {d.id: d.status for d in self.devices}
        self._previous: UsageSnapshot | None = None

    def step(self, timestamp: datetime) -> tuple[UsageSnapshot, list[UserActionEvent]]:
        """Advance all devices to ``timestamp`` and record one snapshot."""
        weekend = timestamp.weekday() in WEEKEND_DAYS
        states = []
        for device in self.devices:
            weekday_profile, weekend_profile = profile_for(device.type)
            should_be_on = self.rng.random() < (weekend_profile if weekend else weekday_profile)[timestamp.hour]
            status = self._status[device.id]
            if status == "on" and not should_be_on and self.rng.random() < TURN_OFF_CHANCE:
                status = "off"
            elif status == "off" and should_be_on and self.rng.random() < TURN_ON_CHANCE:
                status = "on"
            self._status[device.id] = status

            power = None
            if status == "on":
                variation = self.rng.uniform(1 - POWER_VARIATION, 1 + POWER_VARIATION)
                power = round(device.normal_usage * variation, 1)
            states.append(device.model_copy(update={"status": status, "current_power": power}))

        snapshot = UsageSnapshot.capture(states, timestamp)
        actions = self._transitions(snapshot)
        self._previous = snapshot
        return snapshot, actions

    def day(self, start: datetime) -> SyntheticDay:
        """24 hourly snapshots beginning at ``start`` (truncated to the hour)."""
        start = start.replace(minute=0, second=0, microsecond=0)
        result = SyntheticDay(start=start)
        for hour in range(HOURS_PER_DAY):
            snapshot, actions = self.step(start + timedelta(hours=hour))
            result.snapshots.append(snapshot)
            result.actions.extend(actions)
        return result

    def days(self, count: int, start: datetime) -> Iterator[SyntheticDay]:
        for offset in range(count):
            yield self.day(start + timedelta(days=offset))

    def _transitions(self, snapshot: UsageSnapshot) -> list[UserActionEvent]:
        if self._previous is None:
            return []
        before = {d.device_id: d.status for d in self._previous.devices}
        actions = []
        for device in snapshot.devices:
            previous = before.get(device.device_id)
            if previous is None or previous == device.status:
                continue
            actions.append(
                UserActionEvent.at(
                    device.device_id,
                    "toggle_on" if device.is_active else "toggle_off",
                    snapshot.timestamp,
                    manual=True,
                    context={
                        "simulated": True,
                        "active_devices": snapshot.active_device_count,
                        "total_power": snapshot.total_power_watts,
                    },
                )
            )
        return actions
