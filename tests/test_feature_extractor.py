"""
Tests for FeatureExtractor

Covers per-user features, aggregate metrics, time series and the
sklearn transformer wrapper.
"""
import pandas as pd
import pytest

from game_insights.data_processor import GameDataset
from game_insights.feature_extractor import FeatureExtractor, UserFeatureTransformer


@pytest.fixture
def extractor(event_rows, now):
    return FeatureExtractor(GameDataset(rows=event_rows), now=now)


class TestUserFeatures:
    """Per-user feature extraction"""

    def test_user_ids_skip_anonymous_rows(self, extractor):
        assert extractor.user_ids() == ["alice", "bob"]
        assert extractor.row_count("alice") == 4
        assert extractor.row_count("nobody") == 0

    def test_activity(self, extractor):
        f = extractor.extract_user_features("alice")
        assert f.session_count_7d == 2
        assert f.session_count_30d == 4
        assert f.session_trend == 0.0
        assert f.last_session_hours_ago == 5
        assert f.days_since_first_session == 10
        assert f.cohort == "2025-06"

    def test_monetization_ignores_blank_revenue(self, extractor):
        f = extractor.extract_user_features("alice")
        assert f.total_spend == pytest.approx(4.99)
        assert f.purchase_count == 1
        assert f.is_payer
        assert f.days_since_last_purchase == 9
        assert f.avg_purchase_value == pytest.approx(4.99)

    def test_progression(self, extractor):
        f = extractor.extract_user_features("alice")
        assert f.current_level == 6
        assert f.max_level_reached == 6
        assert f.progression_speed == pytest.approx(0.6)
        assert f.failure_rate == pytest.approx(0.5)
        assert not f.stuck_at_level

    def test_engagement(self, extractor):
        f = extractor.extract_user_features("alice")
        assert f.days_active == 4
        assert f.avg_session_length == pytest.approx(600)
        assert f.total_play_time == pytest.approx(2400)
        assert f.weekly_active_ratio == pytest.approx(4 / 10)
        assert f.peak_play_hour == 12
        assert f.feature_usage == {"session_start": 1, "purchase": 1, "level_attempt": 2}

    def test_non_payer(self, extractor):
        f = extractor.extract_user_features("bob")
        assert not f.is_payer
        assert f.total_spend == 0
        assert f.days_since_last_purchase == 999
        assert f.last_session_hours_ago == 24

    def test_unknown_user_gets_defaults(self, extractor):
        f = extractor.extract_user_features("ghost")
        assert f.last_session_hours_ago == 999
        assert f.current_level == 1
        assert f.session_count_30d == 0
        assert f.peak_play_hour == 12
        assert f.cohort == "2025-06"

    def test_extraction_is_idempotent(self, extractor):
        assert extractor.extract_all_user_features() == extractor.extract_all_user_features()
        assert extractor.extract_aggregate_features() == extractor.extract_aggregate_features()

    def test_declared_mappings(self, now):
        rows = [
            {"who": "x", "when": now.isoformat(), "paid": 3},
            {"who": "x", "when": (now - pd.Timedelta(days=1)).isoformat(), "paid": 2},
        ]
        dataset = GameDataset(rows=rows, column_mappings=[
            {"originalName": "who", "canonicalName": "user_id"},
            {"originalName": "when", "canonicalName": "timestamp"},
            {"originalName": "paid", "canonicalName": "revenue"},
        ])
        f = FeatureExtractor(dataset, now=now).extract_user_features("x")
        assert f.total_spend == 5
        assert f.days_active == 2

    def test_columns_resolve_from_first_row_only(self, now):
        rows = [
            {"user_id": "x", "timestamp": now.isoformat(), "event_type": "level_attempt"},
            {"user_id": "x", "timestamp": now.isoformat(), "event_type": "level_attempt", "result": "fail"},
        ]
        f = FeatureExtractor(GameDataset(rows=rows), now=now).extract_user_features("x")
        assert f.failure_rate == 0.0

        rows[0]["result"] = None
        f = FeatureExtractor(GameDataset(rows=rows), now=now).extract_user_features("x")
        assert f.failure_rate == pytest.approx(0.5)


class TestAggregateFeatures:
    def test_active_users_and_retention(self, extractor):
        agg = extractor.extract_aggregate_features()
        assert agg.date == "2025-06-15"
        assert agg.day_of_week == 6
        assert agg.is_weekend
        assert agg.dau == 2
        assert agg.wau == 2
        assert agg.mau == 2
        assert agg.new_users == 1
        assert agg.returning_users == 1
        assert agg.d1_retention == pytest.approx(0.5)
        assert agg.d7_retention == 0.0

    def test_monetization(self, extractor):
        agg = extractor.extract_aggregate_features()
        assert agg.payer_conversion_rate == pytest.approx(0.5)
        assert agg.revenue == pytest.approx(100)
        assert agg.avg_sessions_per_user == pytest.approx(3)

    def test_empty_dataset(self, now):
        agg = FeatureExtractor([], now=now).extract_aggregate_features()
        assert agg.dau == 0
        assert agg.arpu == 0
        assert agg.d1_retention == 0
        assert agg.avg_level_reached == 1


class TestTimeSeries:
    def test_revenue_series_sorted_by_date(self, extractor):
        series = extractor.extract_time_series("revenue")
        assert [p.date for p in series] == sorted(p.date for p in series)
        assert series[0].date == "2025-06-05"
        assert series[-1].value == pytest.approx(100)

    def test_dau_series(self, extractor):
        series = {p.date: p.value for p in extractor.extract_time_series("dau")}
        assert series["2025-06-15"] == 1
        assert series["2025-06-14"] == 1

    def test_unknown_metric_is_zero(self, extractor):
        series = extractor.extract_time_series("bogus")
        assert series and all(p.value == 0 for p in series)

    def test_revenue_data_points(self, extractor):
        points = {p.date: p for p in extractor.extract_revenue_data_points()}
        assert points["2025-06-05"].new_users == 1
        assert points["2025-06-06"].new_users == 0
        assert points["2025-06-06"].payers == 1
        assert points["2025-06-06"].revenue == pytest.approx(4.99)


class TestUserFeatureTransformer:
    def test_transform_dataframe(self, event_rows, now):
        frame = UserFeatureTransformer(now=now).fit_transform(pd.DataFrame(event_rows))
        assert list(frame.index) == ["alice", "bob"]
        assert frame.loc["alice", "total_spend"] == pytest.approx(4.99)
        assert "feature_usage" not in frame.columns

    def test_transform_rows(self, event_rows, now):
        frame = UserFeatureTransformer(now=now).transform(event_rows)
        assert len(frame) == 2
