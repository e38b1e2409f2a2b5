"""Prediction and forecast service.

Reads one immutable ``ModelBundle`` and answers the live queries:

- will a device be active at a given hour (with a 24h outlook)
- which optimization recommendations apply right now
- what the next N hours of energy use and cost look like
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta

from homepulse.analysis.pattern_analyzer import DevicePattern
from homepulse.core.bundle import ModelBundle
from homepulse.core.entities import HOURS_PER_DAY, WEEKEND_DAYS, DeviceRecord
from homepulse.core.reports import (
    DevicePrediction,
    EnergyForecast,
    ForecastHour,
    HourSchedule,
    NextStateChange,
    PredictionReport,
    Recommendation,
    RecommendationReport,
)

logger = logging.getLogger(__name__)

# Devices without a learned pattern
DEFAULT_PROBABILITY = 0.3
DEFAULT_CONFIDENCE = 0.1

ACTIVE_THRESHOLD = 0.5
CORRELATION_WEIGHT = 0.1
CONFIDENCE_SAMPLE_CAP = 10
DATA_WEIGHT = 0.7
SHARPNESS_WEIGHT = 0.3

MAX_RECOMMENDATIONS = 5
PEAK_SHUTDOWN_MIN_WATTS = 200.0
PEAK_SHUTDOWN_SAVING = 0.2
ALWAYS_ON_MIN_WATTS = 50.0
ALWAYS_ON_SAVING = 0.1
STRONG_CORRELATION = 0.7
DAYS_PER_MONTH = 30
MAX_FORECAST_CONFIDENCE = 0.8

_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


def _is_weekend(moment: datetime) -> bool:
    return moment.weekday() in WEEKEND_DAYS


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class PredictionService:
    """Query side of the engine for one model bundle."""

    def __init__(self, bundle: ModelBundle, price_per_kwh: float = 2.50):
        self.bundle = bundle
        self.price_per_kwh = price_per_kwh

    @property
    def patterns(self) -> dict[str, DevicePattern]:
        return self.bundle.usage.device_patterns

    # ------------------------------------------------------------------
    # Device activity
    # ------------------------------------------------------------------

    def predict(
        self, devices: Sequence[DeviceRecord], horizon: int = 0, now: datetime | None = None
    ) -> PredictionReport:
        """Predict each device's state ``horizon`` hours from ``now``.

        Args:
            devices: Validated inventory; devices without a learned pattern
                get the low-confidence default.
            horizon: Hours ahead of ``now`` (0 = the current hour).
            now: Reference time, defaults to the local clock.
        """
        now = now or datetime.now()
        target = now + timedelta(hours=horizon)
        weekend = _is_weekend(target)

        base: dict[str, tuple[float, int]] = {}
        for device in devices:
            pattern = self.patterns.get(device.id)
            if pattern is not None:
                base[device.id] = pattern.probability_at(target.hour, weekend)

        predictions = []
        for device in devices:
            pattern = self.patterns.get(device.id)
            if pattern is None:
                predictions.append(self.default_prediction(device, target.hour))
                continue

            probability, samples = base[device.id]
            adjustment = sum(
                correlation * base[partner][0] * CORRELATION_WEIGHT
                for partner, correlation in self.bundle.usage.correlations_for(device.id)
                if partner in base and base[partner][0] > ACTIVE_THRESHOLD
            )
            adjusted = clamp(probability + adjustment)
            will_be_active = adjusted > ACTIVE_THRESHOLD
            schedule = self.daily_schedule(pattern, target, device.is_on)

            predictions.append(
                DevicePrediction(
                    device_id=device.id,
                    device_name=device.name,
                    target_hour=target.hour,
                    probability=adjusted,
                    base_probability=probability,
                    correlation_adjustment=adjustment,
                    will_be_active=will_be_active,
                    confidence=self.confidence(probability, samples),
                    method="pattern",
                    samples=samples,
                    expected_power=adjusted * (pattern.average_power_when_active or device.normal_usage),
                    typical_usage_hours=list(pattern.typical_usage_hours),
                    daily_schedule=schedule,
                    next_state_change=self.next_state_change(pattern, target, device.is_on),
                )
            )

        return PredictionReport(
            ready=True,
            predictions=predictions,
            target_hour=target.hour,
            generated_at=now,
            model_version=self.bundle.version,
        )

    @staticmethod
    def confidence(probability: float, samples: int) -> float:
        """70% data volume (saturating at 10 samples), 30% distance from a coin flip."""
        volume = min(1.0, samples / CONFIDENCE_SAMPLE_CAP)
        sharpness = abs(probability - 0.5) * 2
        return clamp(DATA_WEIGHT * volume + SHARPNESS_WEIGHT * sharpness)

    @staticmethod
    def default_prediction(device: DeviceRecord, hour: int) -> DevicePrediction:
        return DevicePrediction(
            device_id=device.id,
            device_name=device.name,
            target_hour=hour,
            probability=DEFAULT_PROBABILITY,
            base_probability=DEFAULT_PROBABILITY,
            will_be_active=False,
            confidence=DEFAULT_CONFIDENCE,
            method="default",
            expected_power=DEFAULT_PROBABILITY * device.normal_usage,
        )

    @staticmethod
    def daily_schedule(pattern: DevicePattern, start: datetime, is_on: bool) -> list[HourSchedule]:
        """24 hourly states from ``start`` with turn_on/turn_off markers."""
        schedule = []
        previous = is_on
        for offset in range(HOURS_PER_DAY):
            moment = start + timedelta(hours=offset)
            probability, _ = pattern.probability_at(moment.hour, _is_weekend(moment))
            active = probability > ACTIVE_THRESHOLD
            transition = None
            if active != previous:
                transition = "turn_on" if active else "turn_off"
            schedule.append(
                HourSchedule(
                    hour=moment.hour,
                    probability=probability,
                    will_be_active=active,
                    transition=transition,
                )
            )
            previous = active
        return schedule

    @staticmethod
    def next_state_change(pattern: DevicePattern, start: datetime, is_on: bool) -> NextStateChange | None:
        for offset in range(1, HOURS_PER_DAY + 1):
            moment = start + timedelta(hours=offset)
            probability, _ = pattern.probability_at(moment.hour, _is_weekend(moment))
            active = probability > ACTIVE_THRESHOLD
            if active != is_on:
                return NextStateChange(
                    hour=moment.hour,
                    hours_from_now=offset,
                    status="on" if active else "off",
                )
        return None

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    def recommend(self, devices: Sequence[DeviceRecord], now: datetime | None = None) -> RecommendationReport:
        now = now or datetime.now()
        inventory = {d.id: d for d in devices}

        candidates = (
            self._peak_hour_recommendations(devices, now.hour)
            + self._cost_recommendations(inventory)
            + self._always_on_recommendations(devices)
            + self._correlation_recommendations(inventory)
            + self._automation_recommendations(inventory)
        )

        seen = set()
        unique = []
        for rec in candidates:
            key = (rec.type, frozenset(rec.devices))
            if key in seen:
                continue
            seen.add(key)
            unique.append(rec)

        unique.sort(key=lambda r: _PRIORITY_ORDER[r.priority])
        return RecommendationReport(ready=True, recommendations=unique[:MAX_RECOMMENDATIONS])

    def _peak_hour_recommendations(self, devices: Sequence[DeviceRecord], hour: int) -> list[Recommendation]:
        peak_hours = self.bundle.usage.peak_hours
        if hour not in peak_hours:
            return []
        heavy = [d for d in devices if d.is_on and d.power > PEAK_SHUTDOWN_MIN_WATTS]
        if not heavy:
            return []

        total = sum(d.power for d in heavy)
        savings = total / 1000 * self.price_per_kwh * PEAK_SHUTDOWN_SAVING * DAYS_PER_MONTH
        names = ", ".join(d.name for d in heavy)
        return [
            Recommendation(
                type="peak_hour_usage",
                priority="high",
                title="Peak usage hour",
                suggestion=f"{hour:02d}:00 is usually a peak hour. Consider switching off {names}.",
                devices=[d.id for d in heavy],
                potential_savings=round(savings, 2),
                data={"peak_hour": hour, "peak_hours": list(peak_hours), "power_watts": total},
            )
        ]

    def _cost_recommendations(self, inventory: dict[str, DeviceRecord]) -> list[Recommendation]:
        recs = []
        for opportunity in self.bundle.cost.savings_opportunities:
            device = inventory.get(opportunity.device_id)
            if device is None:
                continue
            hours = ", ".join(f"{h:02d}:00" for h in opportunity.peak_usage_hours)
            recs.append(
                Recommendation(
                    type="cost_optimization",
                    priority="high",
                    title="Shift usage off peak",
                    suggestion=f"Move {device.name} away from the expensive hours ({hours}).",
                    devices=[device.id],
                    potential_savings=round(opportunity.monthly_savings, 2),
                    data={
                        "peak_usage_hours": opportunity.peak_usage_hours,
                        "current_daily_cost": opportunity.current_daily_cost,
                        "potential_daily_cost": opportunity.potential_daily_cost,
                    },
                )
            )
        return recs

    def _always_on_recommendations(self, devices: Sequence[DeviceRecord]) -> list[Recommendation]:
        recs = []
        for device in devices:
            pattern = self.patterns.get(device.id)
            if pattern is None or not pattern.always_on:
                continue
            if not device.is_on or device.power <= ALWAYS_ON_MIN_WATTS:
                continue
            savings = (
                device.power * ALWAYS_ON_SAVING * HOURS_PER_DAY * DAYS_PER_MONTH / 1000 * self.price_per_kwh
            )
            recs.append(
                Recommendation(
                    type="always_on_device",
                    priority="medium",
                    title="Always-on device",
                    suggestion=f"{device.name} is almost never off. Consider a schedule or a power-saving mode.",
                    devices=[device.id],
                    potential_savings=round(savings, 2),
                    data={"active_ratio": pattern.active_ratio, "power_watts": device.power},
                )
            )
        return recs

    def _correlation_recommendations(self, inventory: dict[str, DeviceRecord]) -> list[Recommendation]:
        recs = []
        for pair in self.bundle.usage.device_correlations:
            if pair.correlation <= STRONG_CORRELATION:
                continue
            first, second = inventory.get(pair.device_a), inventory.get(pair.device_b)
            if first is None or second is None:
                continue
            recs.append(
                Recommendation(
                    type="device_correlation",
                    priority="low",
                    title="Devices used together",
                    suggestion=f"{first.name} and {second.name} are usually on together. Consider one scene for both.",
                    devices=[first.id, second.id],
                    data={"correlation": pair.correlation, "together_count": pair.together_count},
                )
            )
        return recs

    def _automation_recommendations(self, inventory: dict[str, DeviceRecord]) -> list[Recommendation]:
        recs = []
        for opportunity in self.bundle.behavior.automation_opportunities:
            device = inventory.get(opportunity.device_id)
            if device is None:
                continue
            verb = "on" if opportunity.action == "toggle_on" else "off"
            recs.append(
                Recommendation(
                    type="automation_opportunity",
                    priority="low",
                    title="Automate a routine",
                    suggestion=(
                        f"You usually switch {device.name} {verb} around "
                        f"{opportunity.suggested_hour:02d}:00. Consider automating it."
                    ),
                    devices=[device.id],
                    data={
                        "hour": opportunity.suggested_hour,
                        "action": opportunity.action,
                        "consistency": opportunity.consistency,
                    },
                )
            )
        return recs

    # ------------------------------------------------------------------
    # Energy forecast
    # ------------------------------------------------------------------

    def forecast(
        self, devices: Sequence[DeviceRecord], hours: int = 12, now: datetime | None = None
    ) -> EnergyForecast:
        now = now or datetime.now()
        usage = self.bundle.usage
        confidence = min(MAX_FORECAST_CONFIDENCE, self.bundle.accuracy)

        entries = []
        for offset in range(hours):
            hour = (now.hour + offset) % HOURS_PER_DAY
            if usage.hourly_sample_counts[hour] > 0:
                power = usage.hourly_aggregate_power[hour]
                source = "history"
            else:
                power = self._pattern_power(devices, hour)
                source = "pattern"
            energy = power / 1000
            entries.append(
                ForecastHour(
                    hour=hour,
                    hour_label=f"{hour:02d}:00",
                    expected_power=power,
                    energy_kwh=energy,
                    cost=energy * self.price_per_kwh,
                    confidence=confidence,
                    source=source,
                )
            )

        total_energy = sum(e.energy_kwh for e in entries)
        return EnergyForecast(
            ready=True,
            hours=entries,
            total_energy_kwh=total_energy,
            total_cost=total_energy * self.price_per_kwh,
            confidence=confidence,
        )

    def _pattern_power(self, devices: Sequence[DeviceRecord], hour: int) -> float:
        total = 0.0
        for device in devices:
            pattern = self.patterns.get(device.id)
            probability = pattern.hourly_activation[hour] if pattern else DEFAULT_PROBABILITY
            total += probability * device.normal_usage
        return total
