"""Tests for the anomaly detector."""

import pytest

from conftest import build_history, device
from homepulse.analysis.anomaly_detector import AnomalyDetector, AnomalyModel, NormalRange
from homepulse.analysis.pattern_analyzer import PatternAnalyzer
from homepulse.core.entities import parse_devices


@pytest.fixture
def detector():
    return AnomalyDetector()


@pytest.fixture
def trained(detector, fridge_history):
    return detector.fit(fridge_history), PatternAnalyzer().analyze(fridge_history)


def _fridge(power):
    return parse_devices([device("fridge", "on", type="refrigerator", normal_usage=500, current_power=power)])


class TestNormalRange:
    def test_mean_plus_two_population_std(self):
        normal = NormalRange.from_values([450, 550, 450, 550])
        assert normal.mean == pytest.approx(500)
        assert normal.std == pytest.approx(50)
        assert normal.max == pytest.approx(600)
        assert normal.min == 0.0
        assert normal.samples == 4

    def test_empty_values(self):
        assert NormalRange.from_values([]) is None


class TestAnomalyDetector:
    def test_fit_builds_overall_hourly_and_count_ranges(self, trained):
        model, _ = trained
        assert model.power_range.max == pytest.approx(600)
        assert len(model.hourly_ranges) == 24
        assert all(r is not None for r in model.hourly_ranges)
        assert model.device_count_range.max == pytest.approx(1)

    def test_flags_high_power(self, detector, trained):
        model, usage = trained
        anomalies = detector.detect(model, usage, _fridge(650), hour=12)
        types = {a.type for a in anomalies}
        assert "high_power_consumption" in types
        assert "unusual_hourly_usage" in types
        high = next(a for a in anomalies if a.type == "high_power_consumption")
        assert high.severity == "high"
        assert high.expected_range == pytest.approx((0.0, 600.0))

    def test_normal_reading_is_not_flagged(self, detector, trained):
        model, usage = trained
        assert detector.detect(model, usage, _fridge(550), hour=12) == []

    def test_device_on_at_unusual_hour(self, detector):
        history_devices = [device("tv", "off", normal_usage=100), device("lamp", "on", normal_usage=10)]
        history = build_history(7, lambda day, hour: history_devices)
        model = detector.fit(history)
        usage = PatternAnalyzer().analyze(history)

        now_devices = parse_devices([device("tv", "on", normal_usage=5), device("lamp", "off", normal_usage=10)])
        anomalies = detector.detect(model, usage, now_devices, hour=3)
        unusual = [a for a in anomalies if a.type == "unusual_operation"]
        assert [a.device_id for a in unusual] == ["tv"]
        assert unusual[0].severity == "medium"

    def test_high_device_count(self, detector, trained):
        model, usage = trained
        devices = parse_devices(
            [
                device("fridge", "on", normal_usage=500, current_power=100),
                device("kettle", "on", normal_usage=100),
            ]
        )
        anomalies = detector.detect(model, usage, devices, hour=8)
        assert [(a.type, a.severity) for a in anomalies] == [("high_device_count", "low")]

    def test_untrained_model_reports_nothing(self, detector):
        assert detector.detect(AnomalyModel.empty(), PatternAnalyzer().analyze([]), _fridge(5000), 0) == []
