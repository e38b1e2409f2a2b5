"""Tests for the cost analyzer."""

import numpy as np
import pytest

from conftest import build_history, device
from homepulse.analysis.cost_analyzer import CostAnalyzer
from homepulse.analysis.pattern_analyzer import PatternAnalyzer, UsagePatternModel


def _usage(states, days=7):
    return PatternAnalyzer().analyze(build_history(days, states))


@pytest.fixture
def analyzer():
    return CostAnalyzer(price_per_kwh=2.50, off_peak_factor=0.8)


@pytest.fixture
def morning_heater():
    """2kW heater every morning 06-09, 50W lamp 20-21."""

    def states(day, hour):
        return [
            device("heater", "on" if 6 <= hour <= 9 else "off", type="heater", normal_usage=2000),
            device("lamp", "on" if hour in (20, 21) else "off", normal_usage=50),
        ]

    return _usage(states)


class TestCostAnalyzer:
    def test_no_data_uses_evening_window(self, analyzer):
        model = analyzer.analyze(UsagePatternModel.empty())
        assert model.peak_cost_hours == [17, 18, 19, 20]
        assert model.savings_opportunities == []
        assert model.hourly_costs == [0.0] * 24

    def test_hourly_cost(self, analyzer, morning_heater):
        model = analyzer.analyze(morning_heater)
        assert model.hourly_costs[7] == pytest.approx(2000 / 1000 * 2.50)
        assert model.hourly_costs[20] == pytest.approx(50 / 1000 * 2.50)
        assert model.hourly_costs[3] == 0.0

    def test_peak_cost_hours_sorted_by_clock(self, analyzer, morning_heater):
        assert analyzer.analyze(morning_heater).peak_cost_hours == [6, 7, 8, 9]

    def test_savings_opportunity(self, analyzer, morning_heater):
        opportunities = analyzer.analyze(morning_heater).savings_opportunities
        assert [o.device_id for o in opportunities] == ["heater"]
        heater = opportunities[0]
        assert heater.peak_usage_hours == [6, 7, 8, 9]
        assert heater.daily_peak_kwh == pytest.approx(8.0)
        assert heater.current_daily_cost == pytest.approx(20.0)
        assert heater.potential_daily_cost == pytest.approx(16.0)
        assert heater.monthly_savings == pytest.approx(120.0)

    def test_small_savings_are_not_surfaced(self, analyzer):
        # 250W for one peak hour: (0.625 - 0.5) * 30 = 3.75 per month
        usage = _usage(lambda day, hour: [device("tv", "on" if hour == 19 else "off", normal_usage=250)])
        model = analyzer.analyze(usage)
        assert 19 in model.peak_cost_hours
        assert model.savings_opportunities == []

    def test_low_power_devices_are_ignored(self, analyzer):
        usage = _usage(lambda day, hour: [device("lamp", "on" if hour == 19 else "off", normal_usage=150)])
        assert analyzer.analyze(usage).savings_opportunities == []

    def test_optimal_schedule_prefers_cheap_likely_hours(self, analyzer, morning_heater):
        schedules = analyzer.analyze(morning_heater).optimal_schedules
        lamp = schedules["lamp"]
        assert len(lamp.recommended_hours) == 4
        assert lamp.recommended_hours[:2] == [20, 21]
        assert lamp.scores[0] == pytest.approx(1 - 0.125 / 5.0)

    def test_peak_cost_hours_with_partial_observation(self):
        costs = np.zeros(24)
        costs[[2, 5, 11, 13, 22]] = [1.0, 3.0, 2.0, 5.0, 4.0]
        assert CostAnalyzer.peak_cost_hours(costs) == [5, 11, 13, 22]
