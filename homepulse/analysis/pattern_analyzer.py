"""Pattern analyzer: hourly activation probabilities, power profile and correlations.

Turns the raw snapshot history into per-device usage patterns. Everything is
a pure aggregation over the history, so training twice on the same history
yields identical patterns.
"""

import logging
from collections.abc import Sequence
from itertools import combinations

import numpy as np
import pandas as pd
from pydantic import BaseModel, ConfigDict, Field

from homepulse.core.entities import (
    HOURS,
    HOURS_PER_DAY,
    HourlyCounts,
    HourlyProbabilities,
    HourlyValues,
    Probability,
    UsageSnapshot,
)

logger = logging.getLogger(__name__)

ALWAYS_ON_RATIO = 0.95
TYPICAL_HOUR_PROBABILITY = 0.3
PEAK_HOUR_COUNT = 6
MIN_CORRELATION = 0.3
MIN_CORRELATION_SAMPLES = 10
DEFAULT_ACCURACY = 0.7


class DevicePattern(BaseModel):
    """Learned usage pattern of one device."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    device_type: str = ""
    room: str = ""
    total_samples: int = 0
    active_samples: int = 0
    hourly_activation: HourlyProbabilities
    weekday_probabilities: HourlyProbabilities
    weekend_probabilities: HourlyProbabilities
    hourly_samples: HourlyCounts
    weekday_samples: HourlyCounts
    weekend_samples: HourlyCounts
    average_power_when_active: float = 0.0
    always_on: bool = False
    typical_usage_hours: list[int] = Field(default_factory=list)

    @property
    def active_ratio(self) -> float:
        return self.active_samples / self.total_samples if self.total_samples else 0.0

    def probability_at(self, hour: int, weekend: bool) -> tuple[float, int]:
        """Probability and supporting sample count for one hour of a day type.

        Falls back to the all-days probability when this device was never
        observed at that hour on that kind of day.
        """
        samples = self.weekend_samples[hour] if weekend else self.weekday_samples[hour]
        if samples > 0:
            probs = self.weekend_probabilities if weekend else self.weekday_probabilities
            return probs[hour], samples
        return self.hourly_activation[hour], self.hourly_samples[hour]


class DeviceCorrelation(BaseModel):
    """Co-activation of an unordered device pair (``device_a < device_b``)."""

    model_config = ConfigDict(frozen=True)

    device_a: str
    device_b: str
    correlation: Probability
    together_count: int
    total_samples: int

    def partner_of(self, device_id: str) -> str | None:
        if device_id == self.device_a:
            return self.device_b
        if device_id == self.device_b:
            return self.device_a
        return None


class UsagePatternModel(BaseModel):
    """Output of the pattern analyzer for one training pass."""

    model_config = ConfigDict(frozen=True)

    device_patterns: dict[str, DevicePattern] = Field(default_factory=dict)
    hourly_aggregate_power: HourlyValues = Field(default_factory=lambda: [0.0] * HOURS_PER_DAY)
    hourly_sample_counts: HourlyCounts = Field(default_factory=lambda: [0] * HOURS_PER_DAY)
    hourly_active_devices: HourlyValues = Field(default_factory=lambda: [0.0] * HOURS_PER_DAY)
    weekday_hourly_power: HourlyValues = Field(default_factory=lambda: [0.0] * HOURS_PER_DAY)
    weekend_hourly_power: HourlyValues = Field(default_factory=lambda: [0.0] * HOURS_PER_DAY)
    peak_hours: list[int] = Field(default_factory=list)
    device_correlations: list[DeviceCorrelation] = Field(default_factory=list)
    accuracy: Probability = 0.0
    sample_count: int = 0

    @classmethod
    def empty(cls) -> "UsagePatternModel":
        return cls()

    def correlations_for(self, device_id: str) -> list[tuple[str, float]]:
        """(partner id, correlation) for every retained pair involving ``device_id``."""
        result = []
        for pair in self.device_correlations:
            partner = pair.partner_of(device_id)
            if partner is not None:
                result.append((partner, pair.correlation))
        return result


class PatternAnalyzer:
    """Derives device usage patterns from the snapshot history."""

    def analyze(self, snapshots: Sequence[UsageSnapshot]) -> UsagePatternModel:
        if not snapshots:
            return UsagePatternModel.empty()

        samples = self._sample_frame(snapshots)
        readings = self._reading_frame(snapshots)

        hourly_power = self._hour_means(samples, "total_power")
        patterns = self._device_patterns(readings)
        correlations = self._correlations(readings, sorted(patterns), len(snapshots))

        model = UsagePatternModel(
            device_patterns=patterns,
            hourly_aggregate_power=hourly_power,
            hourly_sample_counts=self._hour_counts(samples),
            hourly_active_devices=self._hour_means(samples, "active_devices"),
            weekday_hourly_power=self._hour_means(samples[~samples["weekend"]], "total_power"),
            weekend_hourly_power=self._hour_means(samples[samples["weekend"]], "total_power"),
            peak_hours=self.find_peak_hours(hourly_power),
            device_correlations=correlations,
            accuracy=self.pattern_consistency(patterns),
            sample_count=len(snapshots),
        )
        logger.debug(
            "Analyzed %d snapshots: %d devices, %d correlations, peak hours %s",
            len(snapshots),
            len(patterns),
            len(correlations),
            model.peak_hours,
        )
        return model

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    @staticmethod
    def _sample_frame(snapshots: Sequence[UsageSnapshot]) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "hour": [s.hour_of_day for s in snapshots],
                "weekend": [s.is_weekend for s in snapshots],
                "total_power": [s.total_power_watts for s in snapshots],
                "active_devices": [s.active_device_count for s in snapshots],
            }
        )

    @staticmethod
    def _reading_frame(snapshots: Sequence[UsageSnapshot]) -> pd.DataFrame:
        rows = [
            (i, s.hour_of_day, s.is_weekend, d.device_id, d.device_type, d.room, d.is_active, d.power_watts)
            for i, s in enumerate(snapshots)
            for d in s.devices
        ]
        columns = ["sample", "hour", "weekend", "device_id", "device_type", "room", "active", "power"]
        return pd.DataFrame(rows, columns=columns)

    @staticmethod
    def _hour_means(frame: pd.DataFrame, column: str) -> list[float]:
        if frame.empty:
            return [0.0] * HOURS_PER_DAY
        means = frame.groupby("hour")[column].mean().reindex(list(HOURS), fill_value=0.0)
        return [float(v) for v in means]

    @staticmethod
    def _hour_counts(frame: pd.DataFrame) -> list[int]:
        counts = frame.groupby("hour").size().reindex(list(HOURS), fill_value=0)
        return [int(v) for v in counts]

    @staticmethod
    def _hour_table(frame: pd.DataFrame, device_ids: list[str]) -> tuple[np.ndarray, np.ndarray]:
        """(samples, active) count matrices of shape (devices, 24)."""
        if frame.empty:
            zeros = np.zeros((len(device_ids), HOURS_PER_DAY), dtype=np.int64)
            return zeros, zeros.copy()

        counts = frame.groupby(["device_id", "hour"])["active"].agg(["size", "sum"])
        samples = counts["size"].unstack(fill_value=0)
        active = counts["sum"].unstack(fill_value=0)
        samples = samples.reindex(index=device_ids, columns=list(HOURS), fill_value=0)
        active = active.reindex(index=device_ids, columns=list(HOURS), fill_value=0)
        return samples.to_numpy(dtype=np.int64), active.to_numpy(dtype=np.int64)

    @staticmethod
    def _ratio(active: np.ndarray, samples: np.ndarray) -> np.ndarray:
        return np.divide(
            active.astype(float),
            samples.astype(float),
            out=np.zeros(samples.shape, dtype=float),
            where=samples > 0,
        )

    # ------------------------------------------------------------------
    # Device patterns
    # ------------------------------------------------------------------

    def _device_patterns(self, readings: pd.DataFrame) -> dict[str, DevicePattern]:
        if readings.empty:
            return {}

        device_ids = sorted(readings["device_id"].unique())
        weekend_mask = readings["weekend"].astype(bool)

        all_samples, all_active = self._hour_table(readings, device_ids)
        wd_samples, wd_active = self._hour_table(readings[~weekend_mask], device_ids)
        we_samples, we_active = self._hour_table(readings[weekend_mask], device_ids)

        hourly = self._ratio(all_active, all_samples)
        weekday = self._ratio(wd_active, wd_samples)
        weekend = self._ratio(we_active, we_samples)

        active_rows = readings[readings["active"].astype(bool)]
        avg_power = (
            active_rows.groupby("device_id")["power"].mean().reindex(device_ids, fill_value=0.0)
        )
        meta = readings.groupby("device_id")[["device_type", "room"]].last()

        patterns = {}
        for i, device_id in enumerate(device_ids):
            total = int(all_samples[i].sum())
            active = int(all_active[i].sum())
            probs = hourly[i].tolist()
            patterns[device_id] = DevicePattern(
                device_id=device_id,
                device_type=str(meta.at[device_id, "device_type"]),
                room=str(meta.at[device_id, "room"]),
                total_samples=total,
                active_samples=active,
                hourly_activation=probs,
                weekday_probabilities=weekday[i].tolist(),
                weekend_probabilities=weekend[i].tolist(),
                hourly_samples=all_samples[i].tolist(),
                weekday_samples=wd_samples[i].tolist(),
                weekend_samples=we_samples[i].tolist(),
                average_power_when_active=float(avg_power[device_id]),
                always_on=total > 0 and active / total > ALWAYS_ON_RATIO,
                typical_usage_hours=[h for h in HOURS if probs[h] > TYPICAL_HOUR_PROBABILITY],
            )
        return patterns

    # ------------------------------------------------------------------
    # Correlations
    # ------------------------------------------------------------------

    @staticmethod
    def _correlations(
        readings: pd.DataFrame, device_ids: list[str], sample_count: int
    ) -> list[DeviceCorrelation]:
        """Co-activation fraction for every device pair seen together often enough.

        correlation = samples where both are active / samples where both are present
        """
        if len(device_ids) < 2:
            return []

        codes = pd.Categorical(readings["device_id"], categories=device_ids).codes
        rows = readings["sample"].to_numpy()

        present = np.zeros((sample_count, len(device_ids)), dtype=np.int64)
        active = np.zeros_like(present)
        present[rows, codes] = 1
        active[rows, codes] = readings["active"].to_numpy(dtype=np.int64)

        shared = present.T @ present
        together = active.T @ active

        correlations = []
        for i, j in combinations(range(len(device_ids)), 2):
            total = int(shared[i, j])
            if total < MIN_CORRELATION_SAMPLES:
                continue
            both = int(together[i, j])
            value = both / total
            if value > MIN_CORRELATION:
                correlations.append(
                    DeviceCorrelation(
                        device_a=device_ids[i],
                        device_b=device_ids[j],
                        correlation=value,
                        together_count=both,
                        total_samples=total,
                    )
                )
        return correlations

    # ------------------------------------------------------------------
    # Summary statistics
    # ------------------------------------------------------------------

    @staticmethod
    def find_peak_hours(hourly_power: Sequence[float], count: int = PEAK_HOUR_COUNT) -> list[int]:
        """Top ``count`` hours by average power, returned in clock order."""
        ranked = sorted(HOURS, key=lambda h: (-hourly_power[h], h))[:count]
        return sorted(ranked)

    @staticmethod
    def pattern_consistency(patterns: dict[str, DevicePattern]) -> float:
        """Mean per-device consistency of the hourly probabilities.

        Hours with a probability of exactly 0 or 1 carry no information and
        are skipped. Per device: ``1 - min(1, 2 * variance)``. Devices with no
        informative hour are ignored; with none at all the score is 0.7.
        """
        scores = []
        for pattern in patterns.values():
            probs = np.asarray(pattern.hourly_activation, dtype=float)
            informative = probs[(probs > 0.0) & (probs < 1.0)]
            if informative.size == 0:
                continue
            scores.append(1.0 - min(1.0, 2.0 * float(np.var(informative))))
        return float(np.mean(scores)) if scores else DEFAULT_ACCURACY
