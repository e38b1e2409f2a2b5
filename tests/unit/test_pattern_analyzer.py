"""Tests for the pattern analyzer."""

import pytest

from conftest import build_history, device
from homepulse.analysis.pattern_analyzer import PatternAnalyzer, UsagePatternModel


@pytest.fixture
def analyzer():
    return PatternAnalyzer()


@pytest.fixture
def household():
    """Two weeks: fridge always on, tv 08-22, lamp with the tv and at 07, heater at night."""

    def states(day, hour):
        daytime = 8 <= hour <= 22
        return [
            device("fridge", "on", type="refrigerator", normal_usage=150),
            device("tv", "on" if daytime else "off", type="tv", normal_usage=120),
            device("lamp", "on" if daytime or hour == 7 else "off", normal_usage=60),
            device("heater", "on" if hour <= 3 else "off", type="heater", normal_usage=2000),
        ]

    return build_history(14, states)


class TestPatternAnalyzer:
    def test_empty_history(self, analyzer):
        model = analyzer.analyze([])
        assert model == UsagePatternModel.empty()
        assert model.device_patterns == {}

    def test_probability_arrays_are_24_hours_in_range(self, analyzer, household):
        model = analyzer.analyze(household)
        assert set(model.device_patterns) == {"fridge", "tv", "lamp", "heater"}
        for pattern in model.device_patterns.values():
            for probs in (
                pattern.hourly_activation,
                pattern.weekday_probabilities,
                pattern.weekend_probabilities,
            ):
                assert len(probs) == 24
                assert all(0.0 <= p <= 1.0 for p in probs)

    def test_hourly_activation(self, analyzer, household):
        tv = analyzer.analyze(household).device_patterns["tv"]
        assert tv.hourly_activation[18] == 1.0
        assert tv.hourly_activation[3] == 0.0
        assert tv.total_samples == 14 * 24
        assert tv.active_samples == 14 * 15
        assert tv.typical_usage_hours == list(range(8, 23))

    def test_always_on_requires_ratio_above_threshold(self, analyzer, household):
        patterns = analyzer.analyze(household).device_patterns
        assert patterns["fridge"].always_on
        assert patterns["fridge"].active_ratio > 0.95
        assert not patterns["tv"].always_on

    def test_average_power_when_active(self, analyzer, household):
        patterns = analyzer.analyze(household).device_patterns
        assert patterns["heater"].average_power_when_active == pytest.approx(2000)

    def test_hourly_aggregate_power_and_peak_hours(self, analyzer, household):
        model = analyzer.analyze(household)
        assert model.hourly_aggregate_power[0] == pytest.approx(2150)
        assert model.hourly_aggregate_power[18] == pytest.approx(330)
        assert model.hourly_sample_counts == [14] * 24
        # heater hours first, then the earliest tv hours, sorted by clock
        assert model.peak_hours == [0, 1, 2, 3, 8, 9]

    def test_weekday_and_weekend_split(self, analyzer, make_history):
        # On at 09:00 on weekdays only
        def states(day, hour):
            weekend = day % 7 in (5, 6)
            return [device("pc", "on" if hour == 9 and not weekend else "off")]

        pc = analyzer.analyze(make_history(14, states)).device_patterns["pc"]
        assert pc.weekday_probabilities[9] == 1.0
        assert pc.weekend_probabilities[9] == 0.0
        assert pc.hourly_activation[9] == pytest.approx(10 / 14)
        assert pc.weekday_samples[9] == 10
        assert pc.weekend_samples[9] == 4

    def test_probability_falls_back_to_all_days(self, analyzer, make_history):
        # Two weekdays only: no weekend samples at all
        pattern = analyzer.analyze(
            make_history(2, lambda day, hour: [device("a", "on" if hour == 5 else "off")])
        ).device_patterns["a"]
        assert pattern.probability_at(5, weekend=True) == (1.0, 2)
        assert pattern.probability_at(5, weekend=False) == (1.0, 2)

    def test_correlations_stored_once_and_symmetric(self, analyzer, household):
        model = analyzer.analyze(household)
        pairs = [(c.device_a, c.device_b) for c in model.device_correlations]
        assert len(pairs) == len(set(pairs))
        assert all(a < b for a, b in pairs)

        tv_lamp = next(c for c in model.device_correlations if {c.device_a, c.device_b} == {"lamp", "tv"})
        assert tv_lamp.total_samples == 14 * 24
        assert tv_lamp.together_count == 14 * 15
        assert tv_lamp.correlation == pytest.approx(15 / 24)
        assert ("lamp", tv_lamp.correlation) in model.correlations_for("tv")
        assert ("tv", tv_lamp.correlation) in model.correlations_for("lamp")

    def test_correlation_threshold(self, analyzer, make_history):
        # a/b on 16 of 24 hours together (0.67); c never overlaps with them
        def states(day, hour):
            daytime = hour >= 8
            return [
                device("a", "on" if daytime else "off"),
                device("b", "on" if daytime else "off"),
                device("c", "on" if hour < 4 else "off"),
            ]

        model = analyzer.analyze(make_history(2, states))
        assert [(c.device_a, c.device_b) for c in model.device_correlations] == [("a", "b")]
        assert model.device_correlations[0].correlation == pytest.approx(32 / 48)

    @pytest.mark.parametrize("samples,expected", [(9, 0), (10, 1)])
    def test_correlation_needs_ten_shared_samples(self, analyzer, make_history, samples, expected):
        history = make_history(1, lambda day, hour: [device("a", "on"), device("b", "on")])[:samples]
        assert len(analyzer.analyze(history).device_correlations) == expected

    def test_swapping_device_order_gives_same_correlation(self, analyzer, household):
        reordered = [s.model_copy(update={"devices": tuple(reversed(s.devices))}) for s in household]
        first = analyzer.analyze(household).device_correlations
        second = analyzer.analyze(reordered).device_correlations
        assert first == second

    def test_training_is_idempotent(self, analyzer, household):
        first = analyzer.analyze(household)
        second = analyzer.analyze(household)
        assert first.device_patterns == second.device_patterns
        assert first.peak_hours == second.peak_hours
        assert first.accuracy == second.accuracy


class TestPatternConsistency:
    def test_degenerate_patterns_use_default(self, analyzer, household):
        # Every probability in this household is exactly 0 or 1
        assert analyzer.analyze(household).accuracy == pytest.approx(0.7)

    def test_constant_probability_is_fully_consistent(self, analyzer, evening_history):
        assert analyzer.analyze(evening_history).accuracy == pytest.approx(1.0)

    def test_variance_lowers_consistency(self, analyzer, make_history):
        # hour 0: on 1 of 4 days; hour 1: on 3 of 4 days -> probs 0.25 and 0.75, variance 0.0625
        def states(day, hour):
            on = (hour == 0 and day == 0) or (hour == 1 and day != 0)
            return [device("a", "on" if on else "off")]

        model = analyzer.analyze(make_history(4, states))
        assert model.accuracy == pytest.approx(1 - 2 * 0.0625)
