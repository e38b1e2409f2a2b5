"""Anomaly detector: learned normal ranges and checks of live readings against them."""

import logging
from collections.abc import Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from homepulse.analysis.pattern_analyzer import UsagePatternModel
from homepulse.core.entities import HOURS, DeviceRecord, Priority, UsageSnapshot

logger = logging.getLogger(__name__)

STD_MULTIPLIER = 2.0
RARE_ACTIVATION_PROBABILITY = 0.1


class NormalRange(BaseModel):
    """``[min, max]`` with ``max = mean + 2 * std`` (population std)."""

    model_config = ConfigDict(frozen=True)

    min: float = 0.0
    max: float
    mean: float
    std: float
    samples: int

    @classmethod
    def from_values(cls, values: Sequence[float]) -> "NormalRange | None":
        if len(values) == 0:
            return None
        data = np.asarray(values, dtype=float)
        mean = float(data.mean())
        std = float(data.std())
        return cls(max=mean + STD_MULTIPLIER * std, mean=mean, std=std, samples=int(data.size))


class AnomalyModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    power_range: NormalRange | None = None
    hourly_ranges: list[NormalRange | None] = Field(default_factory=lambda: [None] * 24)
    device_count_range: NormalRange | None = None

    @property
    def is_trained(self) -> bool:
        return self.power_range is not None

    @classmethod
    def empty(cls) -> "AnomalyModel":
        return cls()


class DetectedAnomaly(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    severity: Priority
    message: str
    current_value: float
    expected_range: tuple[float, float] | None = None
    device_id: str | None = None


class AnomalyDetector:
    """Learns normal ranges from history and flags readings outside them."""

    def fit(self, snapshots: Sequence[UsageSnapshot]) -> AnomalyModel:
        if not snapshots:
            return AnomalyModel.empty()

        by_hour: dict[int, list[float]] = {}
        for snapshot in snapshots:
            by_hour.setdefault(snapshot.hour_of_day, []).append(snapshot.total_power_watts)

        model = AnomalyModel(
            power_range=NormalRange.from_values([s.total_power_watts for s in snapshots]),
            hourly_ranges=[NormalRange.from_values(by_hour.get(h, [])) for h in HOURS],
            device_count_range=NormalRange.from_values([s.active_device_count for s in snapshots]),
        )
        logger.debug(
            "Normal power range up to %.1fW over %d samples",
            model.power_range.max,
            model.power_range.samples,
        )
        return model

    @staticmethod
    def detect(
        model: AnomalyModel,
        usage: UsagePatternModel,
        devices: Sequence[DeviceRecord],
        hour: int,
    ) -> list[DetectedAnomaly]:
        if not model.is_trained:
            return []

        active = [d for d in devices if d.is_on]
        total_power = sum(d.power for d in active)
        anomalies = []

        overall = model.power_range
        if total_power > overall.max:
            anomalies.append(
                DetectedAnomaly(
                    type="high_power_consumption",
                    severity="high",
                    message=(
                        f"Unusually high power consumption ({total_power:.0f}W "
                        f"vs normal max {overall.max:.0f}W)"
                    ),
                    current_value=total_power,
                    expected_range=(overall.min, overall.max),
                )
            )

        hourly = model.hourly_ranges[hour]
        if hourly is not None and total_power > hourly.max:
            anomalies.append(
                DetectedAnomaly(
                    type="unusual_hourly_usage",
                    severity="medium",
                    message=(
                        f"Power use is high for {hour:02d}:00 ({total_power:.0f}W "
                        f"vs usual max {hourly.max:.0f}W)"
                    ),
                    current_value=total_power,
                    expected_range=(hourly.min, hourly.max),
                )
            )

        for device in active:
            pattern = usage.device_patterns.get(device.id)
            if pattern is None:
                continue
            probability = pattern.hourly_activation[hour]
            if probability < RARE_ACTIVATION_PROBABILITY:
                anomalies.append(
                    DetectedAnomaly(
                        type="unusual_operation",
                        severity="medium",
                        message=f"{device.name} is on at {hour:02d}:00, which is unusual",
                        current_value=probability,
                        device_id=device.id,
                    )
                )

        count_range = model.device_count_range
        if count_range is not None and len(active) > count_range.max:
            anomalies.append(
                DetectedAnomaly(
                    type="high_device_count",
                    severity="low",
                    message=(
                        f"{len(active)} devices are on at once "
                        f"(usually at most {count_range.max:.0f})"
                    ),
                    current_value=float(len(active)),
                    expected_range=(count_range.min, count_range.max),
                )
            )
        return anomalies
