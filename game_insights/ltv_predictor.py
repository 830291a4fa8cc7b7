"""
Lifetime Value Prediction Module

Linear-combination LTV model with semantic coefficients, projected over
30/90/365-day horizons with an exponentially decaying daily rate.
"""

import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import numpy as np
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score

from .data_processor import utc_now
from .errors import InsufficientDataError
from .model_store import PersistentModel
from .models import (
    LTVPrediction,
    LTVSegment,
    LTVTrainingSample,
    ModelConfig,
    ModelMetrics,
    PredictionFactor,
    PredictionRange,
    UserFeatures,
    UserLTVPrediction,
)


DEFAULT_COEFFICIENTS: Dict[str, float] = {
    "intercept": 0.0,
    "is_payer": 50.0,
    "total_spend": 2.5,
    "purchase_count": 5.0,
    "days_active": 0.5,
    "session_count_30d": 0.2,
    "progression_speed": 3.0,
    "avg_session_length": 0.1,
    "early_purchase": 30.0,
}

# 365-day projection thresholds, highest first
SEGMENT_THRESHOLDS = [
    (100.0, LTVSegment.WHALE),
    (20.0, LTVSegment.DOLPHIN),
    (1.0, LTVSegment.MINNOW),
]


def segment_for(projected_365d: float) -> LTVSegment:
    for threshold, segment in SEGMENT_THRESHOLDS:
        if projected_365d >= threshold:
            return segment
    return LTVSegment.NON_PAYER


class LTVPredictor(PersistentModel):
    """
    Player lifetime value model.

    Example:
    --------
    >>> predictor = LTVPredictor()
    >>> prediction = predictor.predict(features)
    >>> prediction.segment
    <LTVSegment.DOLPHIN: 'dolphin'>
    """

    STORE_KEY = "ltv_predictor_model"
    DEFAULT_CONFIG = ModelConfig(
        min_data_points=200,
        lookback_days=90,
        validation_split=0.2,
        hyperparameters={
            "decay_rate": 0.03,
            "initial_period": 7,
            "horizon_days": 365,
            "learning_rate": 0.0001,
            "epochs": 100,
        },
    )
    DEFAULT_CONVERSION_RATE = 0.05
    DEFAULT_PAYER_LTV = 20.0

    def __init__(self, config=None, store=None, verbose: bool = False):
        super().__init__(config, store, verbose)
        self.coefficients: Dict[str, float] = dict(DEFAULT_COEFFICIENTS)
        self.avg_ltv = 0.0
        self.avg_payer_ltv = self.DEFAULT_PAYER_LTV
        self.conversion_rate = self.DEFAULT_CONVERSION_RATE

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    @staticmethod
    def _base_ltv(features: UserFeatures, coefficients: Mapping[str, float], conversion_rate: float, avg_payer_ltv: float) -> float:
        ltv = coefficients["intercept"]

        if features.is_payer:
            ltv += coefficients["is_payer"]
            ltv += coefficients["total_spend"] * features.total_spend
            ltv += coefficients["purchase_count"] * features.purchase_count
            # Recency scales everything accumulated so far, intercept included
            if features.days_since_last_purchase < 7:
                ltv *= 1.2
            elif features.days_since_last_purchase > 30:
                ltv *= 0.8

        ltv += coefficients["days_active"] * features.days_active
        ltv += coefficients["session_count_30d"] * features.session_count_30d
        ltv += coefficients["progression_speed"] * features.progression_speed
        ltv += coefficients["avg_session_length"] * features.avg_session_length

        if not features.is_payer and features.days_active > 7 and features.weekly_active_ratio > 0.5:
            ltv += conversion_rate * avg_payer_ltv

        return max(0.0, ltv)

    def _project(self, features: UserFeatures, base_ltv: float, horizon_days: int) -> float:
        """Earned spend plus the decayed daily rate over the remaining horizon."""
        remaining = max(0, horizon_days - features.days_since_first_session)
        if remaining == 0:
            return features.total_spend
        decay = self.hyperparameter("decay_rate")
        days = np.arange(1, remaining + 1)
        return features.total_spend + float(np.sum(base_ltv / 365 * np.exp(-decay * days)))

    def predict(self, features: UserFeatures, horizon_days: Optional[int] = None) -> LTVPrediction:
        horizon = int(horizon_days or self.hyperparameter("horizon_days"))
        with self._lock:
            coefficients, conversion, payer_ltv = self.coefficients, self.conversion_rate, self.avg_payer_ltv
        base = self._base_ltv(features, coefficients, conversion, payer_ltv)

        projected_30d = self._project(features, base, 30)
        projected_90d = self._project(features, base, 90)
        projected_365d = self._project(features, base, horizon)

        return LTVPrediction(
            value=projected_365d,
            confidence=self._confidence(features),
            range=PredictionRange(low=projected_365d * 0.6, high=projected_365d * 1.5),
            factors=self._factors(features),
            segment=segment_for(projected_365d),
            projected_30d=projected_30d,
            projected_90d=projected_90d,
            projected_365d=projected_365d,
        )

    @staticmethod
    def _factors(features: UserFeatures) -> List[PredictionFactor]:
        factors = []
        if features.is_payer:
            factors.append(PredictionFactor(
                name="Paying User", impact=0.9,
                description=f"Has spent ${features.total_spend:.2f}",
            ))
        if features.purchase_count > 1:
            factors.append(PredictionFactor(
                name="Repeat Purchaser", impact=0.7,
                description=f"{features.purchase_count} purchases",
            ))
        if features.is_payer and features.days_since_last_purchase < 7:
            factors.append(PredictionFactor(
                name="Recent Purchase", impact=0.5,
                description=f"Last purchase {features.days_since_last_purchase:.0f} days ago",
            ))
        if features.weekly_active_ratio > 0.5:
            factors.append(PredictionFactor(
                name="High Engagement", impact=0.6,
                description=f"Active {features.weekly_active_ratio * 100:.0f}% of days",
            ))
        if features.progression_speed > 2:
            factors.append(PredictionFactor(
                name="Fast Progression", impact=0.4,
                description=f"{features.progression_speed:.1f} levels per day",
            ))
        if features.days_since_first_session > 30:
            factors.append(PredictionFactor(
                name="Long-term Player", impact=0.5,
                description=f"Playing for {features.days_since_first_session} days",
            ))
        return factors

    def _confidence(self, features: UserFeatures) -> float:
        confidence = 0.5
        for days in (7, 30, 90):
            if features.days_since_first_session > days:
                confidence += 0.1
        if features.is_payer:
            confidence += 0.1
        if self.metrics is not None and (self.metrics.r2 or 0) > 0.5:
            confidence += 0.1
        return min(0.9, confidence)

    def predict_early_ltv(
        self,
        days_since_install: int,
        session_count: int,
        total_spend: float,
        current_level: float,
        user_id: str = "early",
    ) -> LTVPrediction:
        """
        Estimate LTV from the first days of play.

        Purchases inside the initial period are boosted, since early spenders
        tend to be the most valuable players.
        """
        days = max(0, int(days_since_install))
        is_payer = total_spend > 0
        features = UserFeatures(
            user_id=user_id,
            cohort=utc_now().strftime("%Y-%m"),
            session_count_7d=session_count,
            session_count_30d=session_count,
            last_session_hours_ago=0,
            avg_session_length=10,
            total_play_time=session_count * 10,
            current_level=current_level,
            max_level_reached=current_level,
            progression_speed=current_level / max(1, days),
            failure_rate=0.2,
            total_spend=total_spend,
            purchase_count=1 if is_payer else 0,
            avg_purchase_value=total_spend if is_payer else 0,
            days_since_last_purchase=0 if is_payer else 999,
            is_payer=is_payer,
            days_active=min(days, session_count),
            days_since_first_session=days,
            weekly_active_ratio=min(1.0, session_count / 7),
            peak_play_hour=20,
        )
        prediction = self.predict(features)

        confidence = prediction.confidence
        if days < 3:
            confidence *= 0.5
        elif days < 7:
            confidence *= 0.7

        if not (is_payer and days <= self.hyperparameter("initial_period")):
            return prediction.model_copy(update={"confidence": confidence})

        value = prediction.value * 2.5
        projected_365d = prediction.projected_365d * 2.5
        return prediction.model_copy(update={
            "value": value,
            "confidence": confidence,
            "range": PredictionRange(low=value * 0.6, high=value * 1.5),
            "projected_30d": prediction.projected_30d * 2,
            "projected_90d": prediction.projected_90d * 2,
            "projected_365d": projected_365d,
            "segment": segment_for(projected_365d),
            "factors": [PredictionFactor(
                name="Early Purchase", impact=0.9,
                description=f"Purchased within the first {days} days",
            )] + prediction.factors,
        })

    def predict_batch(self, users: Iterable[UserFeatures]) -> List[UserLTVPrediction]:
        return [UserLTVPrediction(user_id=f.user_id, **self.predict(f).model_dump()) for f in users]

    def segment_users(self, users: Iterable[UserFeatures]) -> Dict[str, Any]:
        """Group users by LTV segment with counts and summed projected value."""
        segments: Dict[str, Dict[str, Any]] = {
            s.value: {"user_ids": [], "count": 0, "total_ltv": 0.0, "avg_ltv": 0.0} for s in LTVSegment
        }
        for prediction in self.predict_batch(users):
            bucket = segments[prediction.segment.value]
            bucket["user_ids"].append(prediction.user_id)
            bucket["count"] += 1
            bucket["total_ltv"] += prediction.value
        for bucket in segments.values():
            bucket["avg_ltv"] = bucket["total_ltv"] / bucket["count"] if bucket["count"] else 0.0
        return segments

    def get_high_potential_non_payers(self, users: Iterable[UserFeatures], limit: int = 50) -> List[Dict[str, Any]]:
        """
        Non-payers ranked by conversion probability times potential LTV.

        Only users with a conversion probability above 10% are returned.
        """
        with self._lock:
            base_rate, payer_ltv = self.conversion_rate, self.avg_payer_ltv

        candidates = []
        for f in users:
            if f.is_payer:
                continue
            probability = base_rate
            if f.weekly_active_ratio > 0.7:
                probability *= 2
            elif f.weekly_active_ratio > 0.5:
                probability *= 1.5
            probability *= min(2.0, 1 + f.session_count_30d / 30)
            if f.progression_speed > 2:
                probability *= 1.5
            if f.days_since_first_session <= 7:
                probability *= 1.5
            elif f.days_since_first_session <= 14:
                probability *= 1.2
            elif f.days_since_first_session > 30:
                probability *= 0.5
            probability = min(0.5, probability)

            potential = payer_ltv * min(2.0, 2 * f.weekly_active_ratio) * min(1.5, 1 + f.progression_speed / 5)
            if probability > 0.1:
                candidates.append({
                    "user_id": f.user_id,
                    "conversion_probability": probability,
                    "potential_ltv": potential,
                    "expected_value": probability * potential,
                })

        candidates.sort(key=lambda c: c["expected_value"], reverse=True)
        return candidates[:limit]

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    @staticmethod
    def _as_samples(samples) -> List[LTVTrainingSample]:
        return [s if isinstance(s, LTVTrainingSample) else LTVTrainingSample.model_validate(s) for s in samples]

    def train(self, samples: Iterable[Union[LTVTrainingSample, Mapping[str, Any]]]) -> ModelMetrics:
        """
        Nudge coefficients toward observed LTV by per-sample gradient steps.

        Raises:
        -------
        InsufficientDataError if fewer than min_data_points samples
        """
        data = self._as_samples(samples)
        if len(data) < self.config.min_data_points:
            raise InsufficientDataError(self.config.min_data_points, len(data), "users")

        self._log(f"🔄 Training LTV predictor on {len(data):,} samples...")
        actual = np.array([s.actual_ltv for s in data], dtype=float)
        payers = [s for s in data if s.features.is_payer]
        avg_ltv = float(actual.mean())
        avg_payer_ltv = float(np.mean([s.actual_ltv for s in payers])) if payers else self.DEFAULT_PAYER_LTV
        conversion_rate = len(payers) / len(data)

        coefficients = dict(self.coefficients)
        learning_rate = self.hyperparameter("learning_rate")
        for _ in range(int(self.hyperparameter("epochs"))):
            for sample in data:
                f = sample.features
                predicted = self._base_ltv(f, coefficients, conversion_rate, avg_payer_ltv)
                step = learning_rate * (sample.actual_ltv - predicted)
                coefficients["intercept"] += step
                if f.is_payer:
                    coefficients["is_payer"] += step
                    coefficients["total_spend"] += step * f.total_spend * 0.01
                    coefficients["purchase_count"] += step * f.purchase_count
                coefficients["days_active"] += step * f.days_active * 0.1
                coefficients["session_count_30d"] += step * f.session_count_30d * 0.01

        if not all(math.isfinite(v) for v in coefficients.values()):
            print("  ⚠️ LTV training diverged; keeping previous coefficients")
            coefficients = dict(self.coefficients)

        with self._lock:
            self.coefficients = coefficients
            self.avg_ltv = avg_ltv
            self.avg_payer_ltv = avg_payer_ltv
            self.conversion_rate = conversion_rate

        split = int(len(data) * (1 - self.config.validation_split))
        metrics = self.evaluate(data[split:])
        metrics.training_data_size = len(data)
        self.metrics = metrics
        self._log(f"  ✅ LTV predictor trained: mae={metrics.mae:.2f}, r2={metrics.r2:.3f}")
        self.save()
        return metrics

    def evaluate(self, samples: Iterable[Union[LTVTrainingSample, Mapping[str, Any]]]) -> ModelMetrics:
        data = self._as_samples(samples)
        if not data:
            return ModelMetrics(mse=0.0, mae=0.0, r2=0.0, last_trained=utc_now().isoformat())

        actual = np.array([s.actual_ltv for s in data], dtype=float)
        predicted = np.array([self.predict(s.features).value for s in data], dtype=float)
        ss_total = float(np.sum((actual - actual.mean()) ** 2))
        return ModelMetrics(
            mse=float(mean_squared_error(actual, predicted)),
            mae=float(mean_absolute_error(actual, predicted)),
            r2=float(r2_score(actual, predicted)) if ss_total > 0 else 0.0,
            last_trained=utc_now().isoformat(),
        )

    def get_feature_importance(self) -> Dict[str, float]:
        with self._lock:
            weights = {k: abs(v) for k, v in self.coefficients.items() if k != "intercept"}
        total = sum(weights.values())
        return {k: v / total if total > 0 else 0.0 for k, v in weights.items()}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def get_state(self) -> Dict[str, Any]:
        return {
            "coefficients": dict(self.coefficients),
            "avg_ltv": self.avg_ltv,
            "avg_payer_ltv": self.avg_payer_ltv,
            "conversion_rate": self.conversion_rate,
            "metrics": self.metrics.model_dump() if self.metrics else None,
        }

    def set_state(self, state: Dict[str, Any]) -> None:
        coefficients = {**DEFAULT_COEFFICIENTS, **{k: float(v) for k, v in state["coefficients"].items()}}
        metrics = ModelMetrics.model_validate(state["metrics"]) if state.get("metrics") else None
        with self._lock:
            self.coefficients = coefficients
            self.avg_ltv = float(state.get("avg_ltv", 0.0))
            self.avg_payer_ltv = float(state.get("avg_payer_ltv", self.DEFAULT_PAYER_LTV))
            self.conversion_rate = float(state.get("conversion_rate", self.DEFAULT_CONVERSION_RATE))
            self.metrics = metrics
