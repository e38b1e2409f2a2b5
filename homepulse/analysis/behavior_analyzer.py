"""Behavior analyzer: how and when the user toggles devices by hand."""

import logging
from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict, Field

from homepulse.core.entities import (
    HOURS_PER_DAY,
    ActionType,
    HourlyCounts,
    Probability,
    UserActionEvent,
)

logger = logging.getLogger(__name__)

MIN_MANUAL_ACTIONS = 5
MIN_CONSISTENCY = 0.7


class DeviceBehavior(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    on_count: int = 0
    off_count: int = 0
    manual_count: int = 0
    automated_count: int = 0
    total_actions: int = 0
    hour_histogram: HourlyCounts
    on_hours: HourlyCounts
    off_hours: HourlyCounts
    consistency: Probability = 0.0
    peak_hour: int = 0


class AutomationOpportunity(BaseModel):
    """A device the user keeps switching by hand at the same hour."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    suggested_hour: int
    action: ActionType
    consistency: Probability
    manual_count: int
    total_actions: int


class BehaviorModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_behaviors: dict[str, DeviceBehavior] = Field(default_factory=dict)
    preferred_hours: HourlyCounts = Field(default_factory=lambda: [0] * HOURS_PER_DAY)
    automation_opportunities: list[AutomationOpportunity] = Field(default_factory=list)
    action_count: int = 0

    @classmethod
    def empty(cls) -> "BehaviorModel":
        return cls()


class BehaviorAnalyzer:
    """Builds per-device action histograms and spots automation opportunities."""

    def analyze(self, actions: Sequence[UserActionEvent]) -> BehaviorModel:
        if not actions:
            return BehaviorModel.empty()

        preferred = [0] * HOURS_PER_DAY
        grouped: dict[str, list[UserActionEvent]] = {}
        for event in actions:
            grouped.setdefault(event.device_id, []).append(event)
            preferred[event.hour_of_day] += 1

        behaviors = {
            device_id: self._device_behavior(device_id, events)
            for device_id, events in sorted(grouped.items())
        }
        opportunities = [
            self._opportunity(b) for b in behaviors.values() if self.is_automation_candidate(b)
        ]
        logger.debug(
            "Analyzed %d actions over %d devices, %d automation opportunities",
            len(actions),
            len(behaviors),
            len(opportunities),
        )
        return BehaviorModel(
            device_behaviors=behaviors,
            preferred_hours=preferred,
            automation_opportunities=opportunities,
            action_count=len(actions),
        )

    @staticmethod
    def is_automation_candidate(behavior: DeviceBehavior) -> bool:
        return behavior.manual_count > MIN_MANUAL_ACTIONS and behavior.consistency > MIN_CONSISTENCY

    @staticmethod
    def _device_behavior(device_id: str, events: list[UserActionEvent]) -> DeviceBehavior:
        on_hours = [0] * HOURS_PER_DAY
        off_hours = [0] * HOURS_PER_DAY
        manual = 0
        for event in events:
            if event.action == "toggle_on":
                on_hours[event.hour_of_day] += 1
            else:
                off_hours[event.hour_of_day] += 1
            if event.is_manual:
                manual += 1

        histogram = [on + off for on, off in zip(on_hours, off_hours)]
        total = len(events)
        peak = max(range(HOURS_PER_DAY), key=lambda h: (histogram[h], -h))
        return DeviceBehavior(
            device_id=device_id,
            on_count=sum(on_hours),
            off_count=sum(off_hours),
            manual_count=manual,
            automated_count=total - manual,
            total_actions=total,
            hour_histogram=histogram,
            on_hours=on_hours,
            off_hours=off_hours,
            consistency=histogram[peak] / total,
            peak_hour=peak,
        )

    @staticmethod
    def _opportunity(behavior: DeviceBehavior) -> AutomationOpportunity:
        hour = behavior.peak_hour
        action = "toggle_on" if behavior.on_hours[hour] >= behavior.off_hours[hour] else "toggle_off"
        return AutomationOpportunity(
            device_id=behavior.device_id,
            suggested_hour=hour,
            action=action,
            consistency=behavior.consistency,
            manual_count=behavior.manual_count,
            total_actions=behavior.total_actions,
        )
