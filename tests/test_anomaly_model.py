"""
Tests for AnomalyModel

Point detection, severity mapping, time-series analysis, history and persistence.
"""
import math

import pandas as pd
import pytest

from game_insights.anomaly_model import AnomalyModel, severity_for
from game_insights.errors import InsufficientDataError
from game_insights.model_store import InMemoryModelStore
from game_insights.models import AnomalySeverity, AnomalyType, MetricDataPoint, Sensitivity


@pytest.fixture
def flat_profile(now):
    """
    Two weeks alternating 90/110: every weekday slot averages 100 and all
    points fall at midnight, so the expected value is exactly 100 with std 10.
    """
    start = now.normalize() - pd.Timedelta(days=14)
    return [
        MetricDataPoint(timestamp=start + pd.Timedelta(days=i), value=90.0 if i % 2 else 110.0)
        for i in range(14)
    ]


@pytest.fixture
def trained_model(flat_profile):
    model = AnomalyModel()
    model.train_metric("dau", flat_profile)
    return model


class TestSeverity:
    @pytest.mark.parametrize("z, expected", [
        (2.0, AnomalySeverity.LOW),
        (2.5, AnomalySeverity.MEDIUM),
        (3.0, AnomalySeverity.HIGH),
        (3.99, AnomalySeverity.HIGH),
        (4.0, AnomalySeverity.CRITICAL),
        (12.0, AnomalySeverity.CRITICAL),
    ])
    def test_cutoffs(self, z, expected):
        assert severity_for(z) == expected


class TestDetect:
    """Single-observation detection"""

    def test_first_observation_seeds_profile(self):
        model = AnomalyModel()
        assert model.detect("sessions", 50) is None
        profile = model.get_profile("sessions")
        assert profile.mean == 50
        assert profile.std == pytest.approx(10)
        assert model.metrics_tracked == ["sessions"]

    def test_spike_after_steady_history(self, steady_metric, now):
        model = AnomalyModel()
        model.train_metric("revenue", steady_metric)
        anomaly = model.detect("revenue", 200, timestamp=now)
        assert anomaly is not None
        assert anomaly.type == AnomalyType.SPIKE
        assert anomaly.severity in (AnomalySeverity.HIGH, AnomalySeverity.CRITICAL)
        assert anomaly.possible_causes == [
            "Possible viral content or marketing campaign",
            "External event driving traffic",
            "Bot activity or data quality issue",
        ]

    def test_drop_causes_ignore_metric_name(self, steady_metric, now):
        model = AnomalyModel()
        model.train_metric("revenue", steady_metric)
        anomaly = model.detect("revenue", 0, timestamp=now)
        assert anomaly.type == AnomalyType.DROP
        assert anomaly.possible_causes[0] == "Technical issue or service disruption"
        assert len(anomaly.possible_causes) == 3

    @pytest.mark.parametrize("value, severity", [
        (126, AnomalySeverity.MEDIUM),
        (75, AnomalySeverity.MEDIUM),
        (135, AnomalySeverity.HIGH),
        (141, AnomalySeverity.CRITICAL),
    ])
    def test_deviation_equals_z_score(self, trained_model, now, value, severity):
        anomaly = trained_model.detect("dau", value, timestamp=now)
        assert anomaly is not None
        assert anomaly.expected_value == pytest.approx(100)
        assert anomaly.deviation == pytest.approx(abs(value - 100) / 10)
        assert anomaly.severity == severity
        assert anomaly.type == (AnomalyType.SPIKE if value > 100 else AnomalyType.DROP)

    def test_below_threshold_folds_into_profile(self, trained_model, now):
        assert trained_model.detect("dau", 124, timestamp=now) is None
        profile = trained_model.get_profile("dau")
        assert profile.mean == pytest.approx(0.3 * 124 + 0.7 * 100)
        assert profile.max == 124
        assert trained_model.anomaly_history == []

    def test_non_positive_mean_resets_volatility(self, now):
        model = AnomalyModel()
        model.detect("net_balance", -10, timestamp=now)
        assert model.get_profile("net_balance").volatility == pytest.approx(0.2)
        assert model.detect("net_balance", -10, timestamp=now) is None
        assert model.get_profile("net_balance").volatility == 0.0

    def test_anomalies_are_not_folded(self, trained_model, now):
        before = trained_model.get_profile("dau")
        trained_model.detect("dau", 500, timestamp=now)
        assert trained_model.get_profile("dau") == before

    def test_sensitivity_changes_threshold(self, trained_model, now):
        assert trained_model.threshold == 2.5
        trained_model.set_sensitivity(Sensitivity.HIGH)
        anomaly = trained_model.detect("dau", 122, timestamp=now)
        assert anomaly is not None
        assert anomaly.severity == AnomalySeverity.LOW

        trained_model.set_sensitivity("low")
        assert trained_model.detect("dau", 128, timestamp=now) is None

    def test_history_is_bounded(self, trained_model, now):
        for i in range(150):
            trained_model.detect("dau", 1000 + i, timestamp=now)
        history = trained_model.anomaly_history
        assert len(history) == AnomalyModel.HISTORY_LIMIT
        assert history[0].value == 1050

    def test_batch_needs_metric_names(self, trained_model, now):
        anomalies = trained_model.detect_batch([
            {"metric": "dau", "value": 300, "timestamp": now.isoformat()},
            MetricDataPoint(metric="dau", value=100, timestamp=now),
        ])
        assert len(anomalies) == 1
        with pytest.raises(ValueError):
            trained_model.detect_batch([{"value": 1, "timestamp": now.isoformat()}])


class TestTimeSeriesAnalysis:
    @staticmethod
    def _series(now, values):
        start = now.normalize() - pd.Timedelta(days=len(values))
        return [MetricDataPoint(timestamp=start + pd.Timedelta(days=i), value=v) for i, v in enumerate(values)]

    def test_trend_break(self, now):
        older = [95.0 if i % 2 else 105.0 for i in range(14)]
        recent = [195.0 if i % 2 else 205.0 for i in range(14)]
        anomalies = AnomalyModel().analyze_time_series("dau", self._series(now, older + recent))
        trend = [a for a in anomalies if a.type == AnomalyType.TREND_BREAK]
        assert len(trend) == 1
        assert trend[0].deviation == pytest.approx(20)
        assert trend[0].severity == AnomalySeverity.CRITICAL
        assert trend[0].possible_causes[0] == "Successful feature release or update"

    def test_pattern_change(self, now):
        older = [99.0 if i % 2 else 101.0 for i in range(14)]
        recent = [80.0 if i % 2 else 120.0 for i in range(14)]
        anomalies = AnomalyModel().analyze_time_series("dau", self._series(now, older + recent))
        pattern = [a for a in anomalies if a.type == AnomalyType.PATTERN_CHANGE]
        assert len(pattern) == 1
        assert pattern[0].severity == AnomalySeverity.HIGH
        assert pattern[0].deviation == pytest.approx(math.log(400))
        assert pattern[0].value == pytest.approx(400)
        assert pattern[0].expected_value == pytest.approx(1)
        assert (pattern[0].expected_range.low, pattern[0].expected_range.high) == pytest.approx((0.5, 2))
        assert pattern[0].possible_causes[0] == "Increased variability in user behavior"
        assert not any(a.type == AnomalyType.TREND_BREAK for a in anomalies)

    def test_short_series(self, now):
        assert AnomalyModel().analyze_time_series("dau", self._series(now, [1.0, 2.0])) == []


class TestHistoryQueries:
    def test_summary(self, trained_model, now):
        trained_model.detect("dau", 300, timestamp=now)
        trained_model.detect("dau", 10, timestamp=now)
        summary = trained_model.get_anomaly_summary()
        assert summary["total"] == 2
        assert summary["by_type"]["spike"] == 1
        assert summary["by_type"]["drop"] == 1
        assert summary["top_metrics"] == [{"metric": "dau", "count": 2}]

    def test_recent_anomalies_window(self, trained_model):
        trained_model.detect("dau", 300)
        trained_model.detect("dau", 300, timestamp="2020-01-01T00:00:00")
        assert len(trained_model.get_recent_anomalies(hours=24)) == 1


class TestTraining:
    def test_profile_buckets_fall_back_to_mean(self, now):
        monday = pd.Timestamp("2025-06-02 09:00:00")
        points = []
        for week in range(7):
            points.append(MetricDataPoint(timestamp=monday + pd.Timedelta(weeks=week), value=200.0))
            points.append(MetricDataPoint(timestamp=monday + pd.Timedelta(weeks=week, days=1, hours=1), value=100.0))
        profile = AnomalyModel().train_metric("dau", points)
        assert len(profile.day_of_week_means) == 7
        assert len(profile.hour_of_day_means) == 24
        assert profile.day_of_week_means[:3] == pytest.approx([200, 100, 150])
        assert profile.day_of_week_means[6] == pytest.approx(150)
        assert profile.hour_of_day_means[9] == pytest.approx(200)
        assert profile.hour_of_day_means[10] == pytest.approx(100)
        assert profile.hour_of_day_means[0] == pytest.approx(150)

    def test_train_metric_needs_history(self, flat_profile):
        with pytest.raises(InsufficientDataError):
            AnomalyModel().train_metric("dau", flat_profile[:5])

    def test_train_skips_short_series(self, steady_metric, flat_profile):
        model = AnomalyModel()
        metrics = model.train({"revenue": steady_metric, "tiny": flat_profile[:3]})
        assert model.metrics_tracked == ["revenue"]
        assert metrics.training_data_size == len(steady_metric)
        assert 0 <= metrics.accuracy <= 1

    def test_train_accepts_generators(self, steady_metric):
        model = AnomalyModel()
        model.train({"revenue": (p for p in steady_metric)})
        assert model.is_trained


class TestPersistence:
    def test_round_trip(self, steady_metric, now):
        store = InMemoryModelStore()
        model = AnomalyModel(store=store, sensitivity=Sensitivity.HIGH)
        model.train({"revenue": steady_metric})
        original = model.detect("revenue", 250, timestamp=now)
        model.save()

        restored = AnomalyModel(store=store)
        assert restored.load()
        assert restored.sensitivity == Sensitivity.HIGH
        assert restored.get_profile("revenue") == model.get_profile("revenue")
        saved = restored.anomaly_history[-1]
        assert (saved.type, saved.severity) == (original.type, original.severity)
        assert saved.deviation == pytest.approx(original.deviation)

    def test_load_from_empty_store(self):
        assert not AnomalyModel().load()
