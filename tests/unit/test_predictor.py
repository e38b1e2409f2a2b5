"""Tests for PredictionService: predictions, recommendations and forecasts."""

from datetime import datetime

import pytest

from conftest import build_history, device
from homepulse.analysis.anomaly_detector import AnomalyDetector
from homepulse.analysis.behavior_analyzer import BehaviorAnalyzer
from homepulse.analysis.cost_analyzer import CostAnalyzer
from homepulse.analysis.pattern_analyzer import PatternAnalyzer
from homepulse.core.bundle import ModelBundle
from homepulse.core.entities import UserActionEvent, parse_devices
from homepulse.core.predictor import PredictionService

# 2024-04-15 is a Monday
MONDAY = datetime(2024, 4, 15)


def make_service(snapshots, actions=()):
    usage = PatternAnalyzer().analyze(snapshots)
    bundle = ModelBundle(
        sample_count=len(snapshots),
        usage=usage,
        behavior=BehaviorAnalyzer().analyze(list(actions)),
        cost=CostAnalyzer().analyze(usage),
        anomaly=AnomalyDetector().fit(snapshots),
    )
    return PredictionService(bundle, price_per_kwh=2.50)


@pytest.fixture
def evening_service(evening_history):
    return make_service(evening_history)


@pytest.fixture
def paired_service():
    """b on 08-22 daily; a on 08-19 daily and at 20:00 only on the first four days."""

    def states(day, hour):
        a_on = 8 <= hour <= 19 or (hour == 20 and day < 4)
        return [
            device("a", "on" if a_on else "off"),
            device("b", "on" if 8 <= hour <= 22 else "off"),
        ]

    return make_service(build_history(10, states))


class TestPredict:
    def test_regular_evening_device(self, evening_service):
        devices = parse_devices([device("x", "off", normal_usage=500)])
        report = evening_service.predict(devices, now=MONDAY.replace(hour=18))
        prediction = report.for_device("x")
        assert report.ready
        assert prediction.method == "pattern"
        assert prediction.probability == pytest.approx(0.95, abs=0.02)
        assert prediction.will_be_active
        assert prediction.confidence > 0.5
        assert prediction.samples == 72

    def test_unknown_device_gets_default(self, evening_service):
        devices = parse_devices([device("new", "on", normal_usage=100)])
        prediction = evening_service.predict(devices, now=MONDAY).predictions[0]
        assert prediction.method == "default"
        assert prediction.probability == 0.3
        assert prediction.confidence == 0.1
        assert not prediction.will_be_active

    def test_quiet_hour(self, evening_service):
        devices = parse_devices([device("x", "off", normal_usage=500)])
        prediction = evening_service.predict(devices, now=MONDAY.replace(hour=3)).predictions[0]
        assert prediction.probability == 0.0
        assert not prediction.will_be_active

    def test_horizon_shifts_target_hour(self, evening_service):
        devices = parse_devices([device("x", "off", normal_usage=500)])
        report = evening_service.predict(devices, horizon=2, now=MONDAY.replace(hour=16))
        assert report.target_hour == 18
        assert report.predictions[0].will_be_active

    def test_weekend_probability_is_used_on_weekends(self, evening_service):
        devices = parse_devices([device("x", "off", normal_usage=500)])
        saturday = datetime(2024, 4, 20, 18)
        prediction = evening_service.predict(devices, now=saturday).predictions[0]
        assert prediction.base_probability == pytest.approx(26 / 28)
        assert prediction.samples == 28

    def test_correlated_partner_pushes_probability_up(self, paired_service):
        devices = parse_devices([device("a", "off"), device("b", "on")])
        report = paired_service.predict(devices, now=datetime(2024, 1, 15, 20))
        a = report.for_device("a")
        assert a.base_probability == pytest.approx(0.5)
        assert a.correlation_adjustment == pytest.approx(0.1 * 124 / 240)
        assert a.will_be_active
        # a is at 0.5, which does not count as predicted active
        assert report.for_device("b").correlation_adjustment == 0.0

    def test_partner_must_be_in_the_inventory(self, paired_service):
        devices = parse_devices([device("a", "off")])
        a = paired_service.predict(devices, now=datetime(2024, 1, 15, 20)).predictions[0]
        assert a.correlation_adjustment == 0.0
        assert not a.will_be_active

    def test_probabilities_stay_in_range(self, paired_service):
        devices = parse_devices([device("a", "on"), device("b", "on")])
        for hour in range(24):
            for p in paired_service.predict(devices, now=datetime(2024, 1, 15, hour)).predictions:
                assert 0.0 <= p.probability <= 1.0
                assert 0.0 <= p.confidence <= 1.0

    def test_daily_schedule_and_next_change(self, evening_service):
        devices = parse_devices([device("x", "off", normal_usage=500)])
        prediction = evening_service.predict(devices, now=MONDAY.replace(hour=17)).predictions[0]
        schedule = prediction.daily_schedule
        assert len(schedule) == 24
        assert [s.hour for s in schedule[:3]] == [17, 18, 19]
        assert schedule[0].transition is None
        assert schedule[1].transition == "turn_on"
        assert schedule[2].transition == "turn_off"
        assert prediction.next_state_change.hour == 18
        assert prediction.next_state_change.hours_from_now == 1
        assert prediction.next_state_change.status == "on"
        assert prediction.typical_usage_hours == [18]


class TestConfidence:
    @pytest.mark.parametrize(
        "probability,samples,expected",
        [
            (0.5, 0, 0.0),
            (0.5, 10, 0.7),
            (1.0, 10, 1.0),
            (0.0, 5, 0.35 + 0.3),
            (0.75, 100, 0.7 + 0.15),
        ],
    )
    def test_blend(self, probability, samples, expected):
        assert PredictionService.confidence(probability, samples) == pytest.approx(expected)


class TestRecommend:
    def test_peak_hour_shutdown(self, evening_service):
        devices = parse_devices([device("x", "on", normal_usage=500)])
        report = evening_service.recommend(devices, now=MONDAY.replace(hour=18))
        peak = next(r for r in report.recommendations if r.type == "peak_hour_usage")
        assert peak.priority == "high"
        assert peak.devices == ["x"]
        assert peak.potential_savings == pytest.approx(0.5 * 2.50 * 0.2 * 30)

    def test_always_on_and_cost_optimization(self, fridge_history):
        service = make_service(fridge_history)
        devices = parse_devices([device("fridge", "on", type="refrigerator", normal_usage=500)])
        report = service.recommend(devices, now=MONDAY.replace(hour=12))
        assert [(r.type, r.priority) for r in report.recommendations] == [
            ("cost_optimization", "high"),
            ("always_on_device", "medium"),
        ]
        always_on = report.recommendations[1]
        assert always_on.potential_savings == pytest.approx(500 * 0.1 * 24 * 30 / 1000 * 2.50)
        assert report.recommendations[0].potential_savings == pytest.approx(30.0)

    def test_weak_correlation_is_not_recommended(self, paired_service):
        devices = parse_devices([device("a", "off"), device("b", "off")])
        report = paired_service.recommend(devices, now=datetime(2024, 1, 15, 3))
        assert [r.type for r in report.recommendations] == []

    def test_strongly_correlated_devices(self, make_history):
        history = make_history(
            3,
            lambda day, hour: [
                device("tv", "on" if hour >= 2 else "off"),
                device("soundbar", "on" if hour >= 2 else "off"),
            ],
        )
        devices = parse_devices([device("tv", "off"), device("soundbar", "off")])
        report = make_service(history).recommend(devices, now=MONDAY.replace(hour=1))
        pair = next(r for r in report.recommendations if r.type == "device_correlation")
        assert pair.priority == "low"
        assert sorted(pair.devices) == ["soundbar", "tv"]

    def test_automation_opportunity(self, evening_history):
        actions = [
            UserActionEvent.at("x", "toggle_on", datetime(2024, 1, day + 1, 18)) for day in range(8)
        ]
        service = make_service(evening_history, actions)
        devices = parse_devices([device("x", "off", normal_usage=500)])
        report = service.recommend(devices, now=MONDAY.replace(hour=6))
        automation = next(r for r in report.recommendations if r.type == "automation_opportunity")
        assert automation.priority == "low"
        assert automation.data["hour"] == 18

    def test_capped_and_grouped_by_priority(self, make_history):
        names = [f"d{i}" for i in range(8)]
        history = make_history(7, lambda day, hour: [device(n, "on", normal_usage=300) for n in names])
        devices = parse_devices([device(n, "on", normal_usage=300) for n in names])
        report = make_service(history).recommend(devices, now=MONDAY.replace(hour=12))
        assert len(report.recommendations) == 5
        order = {"high": 0, "medium": 1, "low": 2}
        ranks = [order[r.priority] for r in report.recommendations]
        assert ranks == sorted(ranks)
        keys = [(r.type, frozenset(r.devices)) for r in report.recommendations]
        assert len(keys) == len(set(keys))


class TestForecast:
    def test_uses_historical_hourly_average(self, evening_service):
        devices = parse_devices([device("x", "off", normal_usage=500)])
        forecast = evening_service.forecast(devices, hours=3, now=MONDAY.replace(hour=17))
        assert [h.hour for h in forecast.hours] == [17, 18, 19]
        eighteen = forecast.hours[1]
        assert eighteen.source == "history"
        assert eighteen.expected_power == pytest.approx(0.95 * 500)
        assert eighteen.energy_kwh == pytest.approx(0.475)
        assert eighteen.cost == pytest.approx(0.475 * 2.50)
        assert forecast.total_energy_kwh == pytest.approx(0.475)
        assert forecast.confidence == pytest.approx(0.8)

    def test_wraps_around_midnight(self, evening_service):
        devices = parse_devices([device("x", "off", normal_usage=500)])
        forecast = evening_service.forecast(devices, hours=3, now=MONDAY.replace(hour=23))
        assert [h.hour for h in forecast.hours] == [23, 0, 1]
        assert forecast.hours[1].hour_label == "00:00"

    def test_pattern_fallback_for_unobserved_hours(self, evening_history):
        service = make_service([s for s in evening_history if s.hour_of_day != 5])
        devices = parse_devices([device("x", "off", normal_usage=500), device("new", "off", normal_usage=100)])
        hour = service.forecast(devices, hours=1, now=MONDAY.replace(hour=5)).hours[0]
        assert hour.source == "pattern"
        assert hour.expected_power == pytest.approx(0.3 * 100)

    def test_confidence_capped_by_accuracy(self, make_history):
        # probabilities 0.25 / 0.75 -> consistency 0.875, capped at 0.8
        def states(day, hour):
            on = (hour == 0 and day == 0) or (hour == 1 and day != 0)
            return [device("a", "on" if on else "off")]

        service = make_service(make_history(4, states))
        assert service.forecast(parse_devices([device("a", "off")]), hours=1, now=MONDAY).confidence == 0.8
