"""Cost analyzer: hourly cost curve, peak-cost hours and savings opportunities."""

import logging

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from homepulse.analysis.pattern_analyzer import UsagePatternModel
from homepulse.core.entities import HOURS, HOURS_PER_DAY, HourlyValues

logger = logging.getLogger(__name__)

PEAK_COST_HOUR_COUNT = 4
DEFAULT_PEAK_COST_HOURS = (17, 18, 19, 20)
MIN_SAVINGS_POWER_WATTS = 200.0
MIN_MONTHLY_SAVINGS = 5.0
SCHEDULE_HOUR_COUNT = 4
DAYS_PER_MONTH = 30


class SavingsOpportunity(BaseModel):
    """Money saved per month by moving a device's peak-hour use off peak."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    device_type: str = ""
    peak_usage_hours: list[int]
    average_power_watts: float
    daily_peak_kwh: float
    current_daily_cost: float
    potential_daily_cost: float
    monthly_savings: float


class OptimalSchedule(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    recommended_hours: list[int]
    scores: list[float]


class CostModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    hourly_costs: HourlyValues = Field(default_factory=lambda: [0.0] * HOURS_PER_DAY)
    peak_cost_hours: list[int] = Field(default_factory=lambda: list(DEFAULT_PEAK_COST_HOURS))
    savings_opportunities: list[SavingsOpportunity] = Field(default_factory=list)
    optimal_schedules: dict[str, OptimalSchedule] = Field(default_factory=dict)
    price_per_kwh: float = 2.50
    average_daily_cost: float = 0.0

    @classmethod
    def empty(cls, price_per_kwh: float = 2.50) -> "CostModel":
        return cls(price_per_kwh=price_per_kwh)


class CostAnalyzer:
    """Prices the learned hourly power profile at a flat tariff."""

    def __init__(self, price_per_kwh: float = 2.50, off_peak_factor: float = 0.8):
        self.price_per_kwh = price_per_kwh
        self.off_peak_factor = off_peak_factor

    def analyze(self, usage: UsagePatternModel) -> CostModel:
        if usage.sample_count == 0:
            return CostModel.empty(self.price_per_kwh)

        power = np.asarray(usage.hourly_aggregate_power, dtype=float)
        costs = power / 1000.0 * self.price_per_kwh
        observed = np.asarray(usage.hourly_sample_counts) > 0
        peak_hours = self.peak_cost_hours(costs, observed)

        opportunities = self._savings(usage, peak_hours)
        schedules = self._optimal_schedules(usage, costs)
        logger.debug(
            "Cost analysis: peak cost hours %s, %d savings opportunities",
            peak_hours,
            len(opportunities),
        )
        return CostModel(
            hourly_costs=costs.tolist(),
            peak_cost_hours=peak_hours,
            savings_opportunities=opportunities,
            optimal_schedules=schedules,
            price_per_kwh=self.price_per_kwh,
            average_daily_cost=float(costs[observed].sum()),
        )

    @staticmethod
    def peak_cost_hours(costs: np.ndarray, observed: np.ndarray | None = None) -> list[int]:
        """Top four hours by average cost, ascending; evening window when nothing is known."""
        if observed is None:
            observed = np.ones(HOURS_PER_DAY, dtype=bool)
        candidates = [h for h in HOURS if observed[h]]
        if not candidates or not np.any(costs[observed] > 0):
            return list(DEFAULT_PEAK_COST_HOURS)
        ranked = sorted(candidates, key=lambda h: (-costs[h], h))[:PEAK_COST_HOUR_COUNT]
        return sorted(ranked)

    def _savings(self, usage: UsagePatternModel, peak_hours: list[int]) -> list[SavingsOpportunity]:
        peak = set(peak_hours)
        opportunities = []
        for pattern in usage.device_patterns.values():
            overlap = sorted(peak.intersection(pattern.typical_usage_hours))
            if not overlap or pattern.average_power_when_active <= MIN_SAVINGS_POWER_WATTS:
                continue

            daily_kwh = pattern.average_power_when_active * len(overlap) / 1000.0
            current = daily_kwh * self.price_per_kwh
            potential = current * self.off_peak_factor
            monthly = (current - potential) * DAYS_PER_MONTH
            if monthly <= MIN_MONTHLY_SAVINGS:
                continue
            opportunities.append(
                SavingsOpportunity(
                    device_id=pattern.device_id,
                    device_type=pattern.device_type,
                    peak_usage_hours=overlap,
                    average_power_watts=pattern.average_power_when_active,
                    daily_peak_kwh=daily_kwh,
                    current_daily_cost=current,
                    potential_daily_cost=potential,
                    monthly_savings=monthly,
                )
            )
        opportunities.sort(key=lambda o: (-o.monthly_savings, o.device_id))
        return opportunities

    @staticmethod
    def _optimal_schedules(usage: UsagePatternModel, costs: np.ndarray) -> dict[str, OptimalSchedule]:
        """Best hours per device: ``probability * (1 - cost / max cost)``."""
        max_cost = float(costs.max()) if costs.size else 0.0
        normalized = costs / max_cost if max_cost > 0 else np.zeros(HOURS_PER_DAY)

        schedules = {}
        for device_id, pattern in usage.device_patterns.items():
            scores = np.asarray(pattern.hourly_activation, dtype=float) * (1.0 - normalized)
            # stable sort keeps the earlier hour first on ties
            order = np.argsort(-scores, kind="stable")[:SCHEDULE_HOUR_COUNT]
            schedules[device_id] = OptimalSchedule(
                device_id=device_id,
                recommended_hours=[int(h) for h in order],
                scores=[float(scores[h]) for h in order],
            )
        return schedules
