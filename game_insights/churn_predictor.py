"""
Churn Prediction Module

Weighted-feature churn scorer. Each feature is z-normalised against stored
statistics, squashed through a sigmoid and combined with a learned weight;
thresholded features only contribute once they cross into risky territory.
Weights are refined by per-sample gradient nudges over a fixed number of epochs.
"""

import math
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
from sklearn.metrics import accuracy_score, f1_score, precision_score, recall_score

from .data_processor import utc_now
from .errors import InsufficientDataError
from .model_store import PersistentModel
from .models import (
    ChurnPrediction,
    ChurnTrainingSample,
    FeatureName,
    ModelConfig,
    ModelMetrics,
    PredictionFactor,
    PredictionRange,
    RiskLevel,
    UserChurnPrediction,
    UserFeatures,
)


@dataclass(frozen=True)
class FeatureWeight:
    """Weight, direction and optional activation threshold of one feature"""
    weight: float
    positive: bool
    threshold: Optional[float] = None


DEFAULT_WEIGHTS: Dict[FeatureName, FeatureWeight] = {
    FeatureName.SESSION_TREND: FeatureWeight(0.20, positive=False),
    FeatureName.LAST_SESSION_HOURS_AGO: FeatureWeight(0.18, positive=True, threshold=72),
    FeatureName.FAILURE_RATE: FeatureWeight(0.12, positive=True, threshold=0.5),
    FeatureName.STUCK_AT_LEVEL: FeatureWeight(0.10, positive=True),
    FeatureName.WEEKLY_ACTIVE_RATIO: FeatureWeight(0.15, positive=False),
    FeatureName.PROGRESSION_SPEED: FeatureWeight(0.08, positive=False),
    FeatureName.DAYS_ACTIVE: FeatureWeight(0.07, positive=False),
    FeatureName.IS_PAYER: FeatureWeight(0.05, positive=False),
    FeatureName.DAYS_SINCE_LAST_PURCHASE: FeatureWeight(0.05, positive=True, threshold=30),
}

PREVENTION_ACTIONS: Dict[str, List[str]] = {
    "Declining Activity": [
        "Send a personalised re-engagement notification",
        "Offer a limited-time comeback reward",
    ],
    "Extended Absence": [
        "Trigger a win-back push or email campaign",
        "Grant a daily login bonus on return",
    ],
    "High Failure Rate": [
        "Offer a difficulty assist or hint",
        "Review level balance for the player's current stage",
    ],
    "Progression Blocked": [
        "Offer a booster or power-up for the blocking level",
        "Surface an alternative progression path",
    ],
    "Low Weekly Engagement": [
        "Introduce daily quests or streak rewards",
        "Highlight social or guild features",
    ],
}

DEFAULT_ACTIONS = ["Monitor engagement and keep regular content cadence"]
MAX_ACTIONS = 5


def _sigmoid(x: float) -> float:
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


def risk_level_for(score: float) -> RiskLevel:
    if score >= 0.8:
        return RiskLevel.CRITICAL
    if score >= 0.6:
        return RiskLevel.HIGH
    if score >= 0.4:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def pairwise_auc(scores: np.ndarray, labels: np.ndarray) -> float:
    """
    Rank-based AUC: share of (positive, negative) pairs where the positive
    scores strictly higher. 0.5 when either class is empty.
    """
    positives = scores[labels]
    negatives = scores[~labels]
    if len(positives) == 0 or len(negatives) == 0:
        return 0.5
    ordered = np.sort(negatives)
    ahead = np.searchsorted(ordered, positives, side="left")
    return float(ahead.sum()) / (len(positives) * len(negatives))


class ChurnPredictor(PersistentModel):
    """
    Churn risk scorer with explainable factors and retention actions.

    Example:
    --------
    >>> predictor = ChurnPredictor()
    >>> prediction = predictor.predict(features)
    >>> prediction.risk_level
    <RiskLevel.HIGH: 'high'>
    """

    STORE_KEY = "churn_predictor_model"
    DEFAULT_CONFIG = ModelConfig(
        min_data_points=500,
        lookback_days=30,
        validation_split=0.2,
        hyperparameters={"learning_rate": 0.01, "epochs": 100, "churn_threshold": 0.5},
    )

    def __init__(self, config=None, store=None, verbose: bool = False):
        super().__init__(config, store, verbose)
        self.weights: Dict[FeatureName, FeatureWeight] = dict(DEFAULT_WEIGHTS)
        self.feature_means: Dict[FeatureName, float] = {}
        self.feature_stds: Dict[FeatureName, float] = {}

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _snapshot(self) -> Tuple[Dict[FeatureName, FeatureWeight], Dict[FeatureName, float], Dict[FeatureName, float]]:
        with self._lock:
            return self.weights, self.feature_means, self.feature_stds

    @staticmethod
    def _normalize(value: float, mean: float, std: float) -> float:
        return _sigmoid((value - mean) / (std or 1.0))

    @staticmethod
    def _threshold_active(spec: FeatureWeight, value: float) -> bool:
        if spec.threshold is None:
            return True
        return value >= spec.threshold if spec.positive else value <= spec.threshold

    def _score(self, features: UserFeatures, weights, means, stds) -> float:
        score = 0.0
        for name, spec in weights.items():
            value = features.value_of(name)
            if not self._threshold_active(spec, value):
                continue
            normalized = self._normalize(value, means.get(name, 0.0), stds.get(name, 1.0))
            score += normalized * spec.weight if spec.positive else (1 - normalized) * spec.weight
        return min(1.0, max(0.0, score))

    def predict(self, features: UserFeatures) -> ChurnPrediction:
        """
        Score churn risk for one user.

        Returns:
        --------
        ChurnPrediction with value in [0, 1], risk level, factors and actions
        """
        weights, means, stds = self._snapshot()
        score = self._score(features, weights, means, stds)
        factors = self._factors(features)
        return ChurnPrediction(
            value=score,
            confidence=self._confidence(features),
            range=PredictionRange(low=max(0.0, score - 0.1), high=min(1.0, score + 0.1)),
            factors=factors,
            risk_level=risk_level_for(score),
            days_until_churn=self._days_until_churn(features, score),
            prevention_actions=self._prevention_actions(factors),
        )

    @staticmethod
    def _factors(features: UserFeatures) -> List[PredictionFactor]:
        factors = []
        if features.session_trend < -0.3:
            factors.append(PredictionFactor(
                name="Declining Activity", impact=0.8,
                description=f"Sessions down {abs(features.session_trend) * 100:.0f}% week over week",
            ))
        if features.last_session_hours_ago > 72:
            factors.append(PredictionFactor(
                name="Extended Absence", impact=0.7,
                description=f"Last seen {features.last_session_hours_ago / 24:.0f} days ago",
            ))
        if features.failure_rate > 0.5:
            factors.append(PredictionFactor(
                name="High Failure Rate", impact=0.6,
                description=f"Failing {features.failure_rate * 100:.0f}% of attempts",
            ))
        if features.stuck_at_level:
            factors.append(PredictionFactor(
                name="Progression Blocked", impact=0.5,
                description=f"Stuck at level {features.current_level:g}",
            ))
        if features.weekly_active_ratio < 0.3:
            factors.append(PredictionFactor(
                name="Low Weekly Engagement", impact=0.4,
                description=f"Active {features.weekly_active_ratio * 100:.0f}% of days",
            ))
        return sorted(factors, key=lambda f: f.impact, reverse=True)

    @staticmethod
    def _prevention_actions(factors: List[PredictionFactor]) -> List[str]:
        actions: List[str] = []
        for factor in factors:
            for action in PREVENTION_ACTIONS.get(factor.name, []):
                if action not in actions:
                    actions.append(action)
        return (actions or list(DEFAULT_ACTIONS))[:MAX_ACTIONS]

    @staticmethod
    def _days_until_churn(features: UserFeatures, score: float) -> Optional[int]:
        if score < 0.4:
            return None
        days = max(1.0, 7 - features.last_session_hours_ago / 24)
        if features.session_trend < -0.5:
            days *= 0.5
        elif features.session_trend < 0:
            days *= 0.7
        return max(1, math.floor(days))

    def _confidence(self, features: UserFeatures) -> float:
        confidence = 0.5
        if features.days_since_first_session > 7:
            confidence += 0.1
        if features.days_since_first_session > 30:
            confidence += 0.1
        if features.session_count_7d > 0:
            confidence += 0.1
        if features.session_count_30d > 0:
            confidence += 0.1
        if self.metrics is not None and (self.metrics.auc or 0) > 0.7:
            confidence += 0.1
        return min(0.95, confidence)

    def predict_batch(self, users: Iterable[UserFeatures]) -> Dict[str, Any]:
        """
        Score many users.

        Returns:
        --------
        dict with `predictions`, `segments` (user ids by risk level) and `summary`
        """
        predictions = [
            UserChurnPrediction(user_id=f.user_id, **self.predict(f).model_dump())
            for f in users
        ]
        segments = {level.value: [] for level in RiskLevel}
        for p in predictions:
            segments[p.risk_level.value].append(p.user_id)

        total = len(predictions)
        at_risk = sum(1 for p in predictions if p.value >= 0.5)
        return {
            "predictions": predictions,
            "segments": segments,
            "summary": {
                "total_users": total,
                "at_risk_count": at_risk,
                "at_risk_percentage": at_risk / total * 100 if total else 0.0,
                "avg_risk": sum(p.value for p in predictions) / total if total else 0.0,
            },
        }

    def get_at_risk_users(
        self,
        users: Iterable[UserFeatures],
        limit: int = 100,
        min_risk: Union[RiskLevel, str] = RiskLevel.MEDIUM,
    ) -> List[UserChurnPrediction]:
        """Users at or above `min_risk`, riskiest first."""
        floor = {RiskLevel.LOW: 0.0, RiskLevel.MEDIUM: 0.4, RiskLevel.HIGH: 0.6, RiskLevel.CRITICAL: 0.8}[RiskLevel(min_risk)]
        predictions = self.predict_batch(users)["predictions"]
        risky = [p for p in predictions if p.value >= floor]
        return sorted(risky, key=lambda p: p.value, reverse=True)[:limit]

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(self, samples: Iterable[Union[ChurnTrainingSample, Mapping[str, Any]]]) -> ModelMetrics:
        """
        Fit weights by per-sample gradient steps, then evaluate on the held-out tail.

        Raises:
        -------
        InsufficientDataError if fewer than min_data_points samples; weights are untouched
        """
        data = [s if isinstance(s, ChurnTrainingSample) else ChurnTrainingSample.model_validate(s) for s in samples]
        if len(data) < self.config.min_data_points:
            raise InsufficientDataError(self.config.min_data_points, len(data), "users")

        self._log(f"🔄 Training churn predictor on {len(data):,} samples...")
        names = list(self.weights)
        matrix = np.array([[s.features.value_of(n) for n in names] for s in data], dtype=float)
        labels = np.array([s.churned for s in data], dtype=bool)

        means = matrix.mean(axis=0)
        stds = matrix.std(axis=0)
        stds[stds == 0] = 1.0

        split = int(len(data) * (1 - self.config.validation_split))
        train_x, train_y = matrix[:split], labels[:split]

        directions = np.array([1.0 if self.weights[n].positive else -1.0 for n in names])
        thresholds = [self.weights[n].threshold for n in names]
        normalized = 1.0 / (1.0 + np.exp(-(train_x - means) / stds))
        contribution = np.where(directions > 0, normalized, 1 - normalized)
        active = np.column_stack([
            np.ones(len(train_x), dtype=bool) if t is None
            else (train_x[:, j] >= t if directions[j] > 0 else train_x[:, j] <= t)
            for j, t in enumerate(thresholds)
        ]) if len(train_x) else np.zeros((0, len(names)), dtype=bool)

        w = np.array([self.weights[n].weight for n in names], dtype=float)
        learning_rate = self.hyperparameter("learning_rate")
        for _ in range(int(self.hyperparameter("epochs"))):
            for i in range(len(train_x)):
                predicted = min(1.0, max(0.0, float(np.dot(w, contribution[i] * active[i]))))
                error = float(train_y[i]) - predicted
                w = np.clip(w + learning_rate * error * normalized[i] * directions, 0.0, 1.0)

        total = w.sum()
        if total > 0:
            w = w / total

        new_weights = {n: replace(self.weights[n], weight=float(w[j])) for j, n in enumerate(names)}
        with self._lock:
            self.weights = new_weights
            self.feature_means = {n: float(means[j]) for j, n in enumerate(names)}
            self.feature_stds = {n: float(stds[j]) for j, n in enumerate(names)}

        metrics = self.evaluate(data[split:])
        metrics.training_data_size = len(data)
        self.metrics = metrics
        self._log(f"  ✅ Churn predictor trained: accuracy={metrics.accuracy:.3f}, auc={metrics.auc:.3f}")
        self.save()
        return metrics

    def evaluate(self, samples: Iterable[Union[ChurnTrainingSample, Mapping[str, Any]]]) -> ModelMetrics:
        data = [s if isinstance(s, ChurnTrainingSample) else ChurnTrainingSample.model_validate(s) for s in samples]
        if not data:
            return ModelMetrics(accuracy=0.0, precision=0.0, recall=0.0, f1_score=0.0, auc=0.5,
                                last_trained=utc_now().isoformat())

        cutoff = self.hyperparameter("churn_threshold")
        scores = np.array([self.predict(s.features).value for s in data])
        labels = np.array([s.churned for s in data], dtype=bool)
        predicted = scores >= cutoff
        return ModelMetrics(
            accuracy=float(accuracy_score(labels, predicted)),
            precision=float(precision_score(labels, predicted, zero_division=0)),
            recall=float(recall_score(labels, predicted, zero_division=0)),
            f1_score=float(f1_score(labels, predicted, zero_division=0)),
            auc=pairwise_auc(scores, labels),
            last_trained=utc_now().isoformat(),
        )

    def get_feature_importance(self) -> Dict[str, float]:
        weights, _, _ = self._snapshot()
        return {name.value: spec.weight for name, spec in weights.items()}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def get_state(self) -> Dict[str, Any]:
        return {
            "weights": {n.value: asdict(spec) for n, spec in self.weights.items()},
            "feature_means": {n.value: v for n, v in self.feature_means.items()},
            "feature_stds": {n.value: v for n, v in self.feature_stds.items()},
            "metrics": self.metrics.model_dump() if self.metrics else None,
        }

    def set_state(self, state: Dict[str, Any]) -> None:
        weights = {FeatureName(n): FeatureWeight(**spec) for n, spec in state["weights"].items()}
        means = {FeatureName(n): float(v) for n, v in state.get("feature_means", {}).items()}
        stds = {FeatureName(n): float(v) for n, v in state.get("feature_stds", {}).items()}
        metrics = ModelMetrics.model_validate(state["metrics"]) if state.get("metrics") else None
        with self._lock:
            self.weights = weights
            self.feature_means = means
            self.feature_stds = stds
            self.metrics = metrics
