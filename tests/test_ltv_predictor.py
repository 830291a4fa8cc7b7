"""
Tests for LTVPredictor
"""
import math

import pytest

from game_insights.errors import InsufficientDataError
from game_insights.ltv_predictor import DEFAULT_COEFFICIENTS, LTVPredictor, segment_for
from game_insights.model_store import InMemoryModelStore
from game_insights.models import LTVSegment, LTVTrainingSample


@pytest.fixture
def idle_non_payer(make_features):
    return make_features(
        "idle",
        session_count_7d=0,
        session_count_30d=0,
        avg_session_length=0,
        days_active=0,
        weekly_active_ratio=0,
    )


@pytest.fixture
def big_spender(make_features):
    return make_features(
        "whale",
        is_payer=True,
        total_spend=150,
        purchase_count=5,
        avg_purchase_value=30,
        days_since_last_purchase=3,
    )


class TestSegments:
    @pytest.mark.parametrize("value, segment", [
        (250, LTVSegment.WHALE),
        (100, LTVSegment.WHALE),
        (99.9, LTVSegment.DOLPHIN),
        (20, LTVSegment.DOLPHIN),
        (1, LTVSegment.MINNOW),
        (0.99, LTVSegment.NON_PAYER),
        (0, LTVSegment.NON_PAYER),
    ])
    def test_thresholds(self, value, segment):
        assert segment_for(value) == segment


class TestPredict:
    def test_idle_non_payer(self, idle_non_payer):
        prediction = LTVPredictor().predict(idle_non_payer)
        assert prediction.projected_365d < 1
        assert prediction.segment == LTVSegment.NON_PAYER

    def test_big_spender(self, big_spender):
        prediction = LTVPredictor().predict(big_spender)
        assert prediction.segment == LTVSegment.WHALE
        assert prediction.projected_30d == pytest.approx(150)
        assert prediction.projected_30d <= prediction.projected_90d <= prediction.projected_365d
        assert prediction.range.low < prediction.value < prediction.range.high
        assert prediction.factors[0].name == "Paying User"

    def test_recency_multiplier(self, big_spender):
        predictor = LTVPredictor()
        recent = predictor.predict(big_spender).value
        lapsed = predictor.predict(big_spender.model_copy(update={"days_since_last_purchase": 45})).value
        assert recent > lapsed

    @pytest.mark.parametrize("days_since_last_purchase, expected", [(3, 12.0), (15, 10.0), (45, 8.0)])
    def test_recency_scales_intercept(self, make_features, days_since_last_purchase, expected):
        coefficients = {name: 0.0 for name in DEFAULT_COEFFICIENTS}
        coefficients["intercept"] = 10.0
        payer = make_features(is_payer=True, total_spend=5, days_since_last_purchase=days_since_last_purchase)
        assert LTVPredictor._base_ltv(payer, coefficients, 0.05, 50.0) == pytest.approx(expected)

    def test_engaged_non_payer_gets_conversion_term(self, make_features):
        predictor = LTVPredictor()
        engaged = make_features(days_active=10, weekly_active_ratio=0.6)
        casual = make_features(days_active=10, weekly_active_ratio=0.4)
        assert predictor.predict(engaged).value > predictor.predict(casual).value

    def test_horizon_past_tenure_returns_earned_spend(self, big_spender):
        veteran = big_spender.model_copy(update={"days_since_first_session": 400})
        assert LTVPredictor().predict(veteran).value == pytest.approx(150)


class TestEarlyLtv:
    def test_early_purchase_boost(self):
        predictor = LTVPredictor()
        early = predictor.predict_early_ltv(days_since_install=3, session_count=5, total_spend=4.99, current_level=3)
        assert early.factors[0].name == "Early Purchase"

    def test_no_boost_after_initial_period(self):
        late = LTVPredictor().predict_early_ltv(days_since_install=10, session_count=5, total_spend=4.99, current_level=3)
        assert all(f.name != "Early Purchase" for f in late.factors)

    def test_activity_ratio_counts_sessions_per_week(self):
        fortnight = LTVPredictor().predict_early_ltv(days_since_install=14, session_count=7, total_spend=0, current_level=3)
        engagement = [f for f in fortnight.factors if f.name == "High Engagement"]
        assert engagement and engagement[0].description == "Active 100% of days"

        sparse = LTVPredictor().predict_early_ltv(days_since_install=14, session_count=3, total_spend=0, current_level=3)
        assert all(f.name != "High Engagement" for f in sparse.factors)

    def test_confidence_reduced_for_new_installs(self):
        predictor = LTVPredictor()
        day1 = predictor.predict_early_ltv(1, 1, 0, 1)
        day5 = predictor.predict_early_ltv(5, 1, 0, 1)
        assert day1.confidence < day5.confidence


class TestBatch:
    def test_segment_users(self, idle_non_payer, big_spender):
        buckets = LTVPredictor().segment_users([idle_non_payer, big_spender])
        assert buckets["whale"]["user_ids"] == ["whale"]
        assert buckets["non_payer"]["count"] == 1
        assert buckets["dolphin"]["avg_ltv"] == 0.0

    def test_high_potential_non_payers(self, make_features, big_spender):
        promising = make_features(
            "promising", weekly_active_ratio=0.8, session_count_30d=30, progression_speed=3, days_since_first_session=5,
        )
        quiet = make_features("quiet")
        candidates = LTVPredictor().get_high_potential_non_payers([promising, quiet, big_spender])
        assert [c["user_id"] for c in candidates] == ["promising"]
        assert candidates[0]["conversion_probability"] == pytest.approx(0.45)


class TestTraining:
    @staticmethod
    def _samples(make_features, n=250):
        samples = []
        for i in range(n):
            spend = float(i % 5) * 10
            features = make_features(
                f"u{i}", is_payer=spend > 0, total_spend=spend, purchase_count=i % 5,
                days_since_last_purchase=5 if spend else 999, days_active=5 + i % 10,
            )
            samples.append(LTVTrainingSample(features=features, actual_ltv=spend * 1.5))
        return samples

    def test_insufficient_data(self, make_features):
        with pytest.raises(InsufficientDataError):
            LTVPredictor().train(self._samples(make_features, 50))

    def test_train_and_reload(self, make_features):
        store = InMemoryModelStore()
        predictor = LTVPredictor(store=store)
        metrics = predictor.train(self._samples(make_features))
        assert metrics.training_data_size == 250
        assert metrics.mae >= 0
        assert all(math.isfinite(v) for v in predictor.coefficients.values())
        assert predictor.conversion_rate == pytest.approx(0.8)

        restored = LTVPredictor(store=store)
        assert restored.load()
        assert restored.coefficients == predictor.coefficients
        assert sum(restored.get_feature_importance().values()) == pytest.approx(1)
