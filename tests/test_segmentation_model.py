"""
Tests for SegmentationModel

Predefined rule segments and k-means clustering.
"""
import pytest

from game_insights.errors import InsufficientDataError
from game_insights.model_store import InMemoryModelStore
from game_insights.models import CriteriaOperator, FeatureName, PredefinedSegment, SegmentCriteria
from game_insights.segmentation_model import SegmentationModel, matches


@pytest.fixture
def two_groups(make_features):
    """30 heavy spenders and 30 idle players"""
    heavy = [
        make_features(f"h{i}", total_spend=200, purchase_count=8, is_payer=True, session_count_7d=20,
                      weekly_active_ratio=0.9)
        for i in range(30)
    ]
    idle = [
        make_features(f"i{i}", session_count_7d=0, weekly_active_ratio=0.05, avg_session_length=30)
        for i in range(30)
    ]
    return heavy + idle


@pytest.fixture
def cluster_model():
    return SegmentationModel(
        {"min_data_points": 50, "hyperparameters": {"num_clusters": 2}}, random_state=0,
    )


class TestPredefinedSegments:
    def test_whale(self, make_features):
        whale = make_features(total_spend=150, is_payer=True)
        model = SegmentationModel()
        assert PredefinedSegment.WHALE in model.assign_predefined_segments(whale)
        assert model.get_primary_segment(whale) == PredefinedSegment.WHALE

    def test_priority_order(self, make_features):
        newcomer = make_features(days_since_first_session=3, last_session_hours_ago=200)
        segments = SegmentationModel().assign_predefined_segments(newcomer)
        assert segments == [PredefinedSegment.NON_PAYER, PredefinedSegment.CHURNED, PredefinedSegment.NEW_USER]

    def test_fallback_primary_segment(self, make_features):
        odd_payer = make_features(is_payer=True, total_spend=0.5)
        model = SegmentationModel()
        assert model.assign_predefined_segments(odd_payer) == []
        assert model.get_primary_segment(odd_payer) == PredefinedSegment.CASUAL
        idle_payer = odd_payer.model_copy(update={"weekly_active_ratio": 0.1})
        assert model.get_primary_segment(idle_payer) == PredefinedSegment.AT_RISK

    def test_segment_users_summary(self, two_groups):
        result = SegmentationModel().segment_users(two_groups)
        by_id = {s.id: s for s in result["segments"]}
        assert by_id["whale"].user_count == 30
        assert by_id["non_payer"].user_count == 30
        assert by_id["whale"].characteristics["avg_total_spend"] == pytest.approx(200)
        assert sum(s.percentage for s in result["segments"]) == pytest.approx(100)
        assert result["assignments"]["h0"] == PredefinedSegment.WHALE

    def test_targeting_recommendations(self):
        assert SegmentationModel().get_targeting_recommendations("whale")[0] == "VIP support and exclusive content"


class TestCriteria:
    def test_between_is_inclusive(self, make_features):
        criteria = SegmentCriteria(feature=FeatureName.TOTAL_SPEND, operator=CriteriaOperator.BETWEEN, value=[1, 20])
        assert matches(make_features(total_spend=20), criteria)
        assert not matches(make_features(total_spend=20.5), criteria)

    def test_in_operator(self, make_features):
        criteria = SegmentCriteria(feature=FeatureName.PEAK_PLAY_HOUR, operator=CriteriaOperator.IN, value=[20, 21, 22])
        assert matches(make_features(peak_play_hour=21), criteria)
        assert not matches(make_features(peak_play_hour=9), criteria)


class TestClustering:
    def test_train_separates_groups(self, cluster_model, two_groups):
        metrics = cluster_model.train(two_groups)
        assert metrics.silhouette == pytest.approx(1.0)
        assert metrics.training_data_size == 60
        counts = sorted(c.user_count for c in cluster_model.cluster_centers)
        assert counts == [30, 30]
        spends = sorted(c.center["total_spend"] for c in cluster_model.cluster_centers)
        assert spends == pytest.approx([0, 200])

    def test_assign_cluster(self, cluster_model, two_groups, make_features):
        assert cluster_model.assign_cluster(two_groups[0]) is None
        cluster_model.train(two_groups)
        heavy_cluster = cluster_model.assign_cluster(two_groups[0])
        newcomer = make_features("new", total_spend=180, purchase_count=7, is_payer=True, session_count_7d=18,
                                 weekly_active_ratio=0.8)
        assert cluster_model.assign_cluster(newcomer) == heavy_cluster
        assert cluster_model.assign_cluster(two_groups[-1]) != heavy_cluster

    def test_auto_cluster_empty(self, cluster_model):
        assert cluster_model.auto_cluster([]) == {"clusters": [], "assignments": {}}

    def test_single_cluster_silhouette_is_zero(self, cluster_model, two_groups):
        metrics = cluster_model.evaluate(two_groups, {f.user_id: 0 for f in two_groups})
        assert metrics.silhouette == 0.0

    def test_insufficient_users(self, two_groups):
        with pytest.raises(InsufficientDataError):
            SegmentationModel().train(two_groups)


class TestPersistence:
    def test_round_trip(self, two_groups):
        store = InMemoryModelStore()
        model = SegmentationModel({"min_data_points": 50, "hyperparameters": {"num_clusters": 2}},
                                  store=store, random_state=0)
        model.train(two_groups)

        restored = SegmentationModel(store=store)
        assert restored.load()
        assert restored.cluster_centers == model.cluster_centers
        assert [restored.assign_cluster(f) for f in two_groups] == [model.assign_cluster(f) for f in two_groups]

    def test_rejects_foreign_scaler(self):
        store = InMemoryModelStore()
        store.put(SegmentationModel.STORE_KEY, {"scaler": "not a scaler", "cluster_centers": []})
        assert not SegmentationModel(store=store).load()
