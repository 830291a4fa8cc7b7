"""
Player Segmentation Module

Two mechanisms side by side:
- rule-based predefined segments (whale, churned, new_user, ...) with a fixed
  priority order for choosing one primary segment per player
- k-means clustering (k-means++ seeding) over standardised behaviour features
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

import numpy as np
from sklearn.metrics import silhouette_score
from sklearn.preprocessing import StandardScaler

from .data_processor import utc_now
from .errors import InsufficientDataError
from .model_store import PersistentModel
from .models import (
    ClusterCenter,
    CriteriaOperator,
    FeatureName,
    ModelConfig,
    ModelMetrics,
    PredefinedSegment,
    SegmentCriteria,
    UserFeatures,
    UserSegment,
)


CLUSTER_FEATURES = [
    FeatureName.SESSION_COUNT_7D,
    FeatureName.WEEKLY_ACTIVE_RATIO,
    FeatureName.AVG_SESSION_LENGTH,
    FeatureName.PROGRESSION_SPEED,
    FeatureName.TOTAL_SPEND,
    FeatureName.PURCHASE_COUNT,
    FeatureName.FAILURE_RATE,
]


@dataclass(frozen=True)
class SegmentDefinition:
    segment: PredefinedSegment
    name: str
    description: str
    priority: int
    criteria: List[SegmentCriteria] = field(default_factory=list)


def _rule(feature: FeatureName, operator: CriteriaOperator, value) -> SegmentCriteria:
    return SegmentCriteria(feature=feature, operator=operator, value=value)


PREDEFINED_SEGMENTS: List[SegmentDefinition] = [
    SegmentDefinition(PredefinedSegment.WHALE, "Whales", "Top spenders (over $100)", 1, [
        _rule(FeatureName.TOTAL_SPEND, CriteriaOperator.GT, 100),
    ]),
    SegmentDefinition(PredefinedSegment.DOLPHIN, "Dolphins", "Repeat mid-tier spenders ($20-$100)", 2, [
        _rule(FeatureName.TOTAL_SPEND, CriteriaOperator.BETWEEN, [20, 100]),
        _rule(FeatureName.PURCHASE_COUNT, CriteriaOperator.GT, 1),
    ]),
    SegmentDefinition(PredefinedSegment.MINNOW, "Minnows", "Light spenders ($1-$20)", 3, [
        _rule(FeatureName.TOTAL_SPEND, CriteriaOperator.BETWEEN, [1, 20]),
    ]),
    SegmentDefinition(PredefinedSegment.NON_PAYER, "Non-Payers", "Players who have never purchased", 4, [
        _rule(FeatureName.IS_PAYER, CriteriaOperator.EQ, 0),
    ]),
    SegmentDefinition(PredefinedSegment.HIGHLY_ENGAGED, "Highly Engaged", "Play most days, many sessions", 5, [
        _rule(FeatureName.WEEKLY_ACTIVE_RATIO, CriteriaOperator.GT, 0.7),
        _rule(FeatureName.SESSION_COUNT_7D, CriteriaOperator.GT, 10),
    ]),
    SegmentDefinition(PredefinedSegment.CASUAL, "Casual", "Infrequent, short sessions", 6, [
        _rule(FeatureName.WEEKLY_ACTIVE_RATIO, CriteriaOperator.LT, 0.3),
        _rule(FeatureName.AVG_SESSION_LENGTH, CriteriaOperator.LT, 10),
    ]),
    SegmentDefinition(PredefinedSegment.AT_RISK, "At Risk", "Activity declining and recently absent", 7, [
        _rule(FeatureName.SESSION_TREND, CriteriaOperator.LT, -0.3),
        _rule(FeatureName.LAST_SESSION_HOURS_AGO, CriteriaOperator.GT, 48),
    ]),
    SegmentDefinition(PredefinedSegment.CHURNED, "Churned", "No session for over a week", 8, [
        _rule(FeatureName.LAST_SESSION_HOURS_AGO, CriteriaOperator.GT, 168),
    ]),
    SegmentDefinition(PredefinedSegment.NEW_USER, "New Users", "First session within the last week", 9, [
        _rule(FeatureName.DAYS_SINCE_FIRST_SESSION, CriteriaOperator.LT, 7),
    ]),
    SegmentDefinition(PredefinedSegment.VETERAN, "Veterans", "Long-tenured, still regularly active", 10, [
        _rule(FeatureName.DAYS_ACTIVE, CriteriaOperator.GT, 30),
        _rule(FeatureName.WEEKLY_ACTIVE_RATIO, CriteriaOperator.GT, 0.4),
    ]),
]

SEGMENTS_BY_ID = {d.segment: d for d in PREDEFINED_SEGMENTS}

TARGETING_RECOMMENDATIONS: Dict[PredefinedSegment, List[str]] = {
    PredefinedSegment.WHALE: ["VIP support and exclusive content", "Early access to premium bundles"],
    PredefinedSegment.DOLPHIN: ["Value bundles to increase purchase size", "Loyalty rewards for repeat purchases"],
    PredefinedSegment.MINNOW: ["Low-price starter packs", "Limited-time discounts"],
    PredefinedSegment.NON_PAYER: ["First-purchase offer", "Rewarded ads for monetisation"],
    PredefinedSegment.HIGHLY_ENGAGED: ["Competitive events and leaderboards", "Season pass offers"],
    PredefinedSegment.CASUAL: ["Daily login rewards", "Short session content"],
    PredefinedSegment.AT_RISK: ["Win-back notifications", "Comeback rewards"],
    PredefinedSegment.CHURNED: ["Re-engagement campaigns", "Highlight new content since last visit"],
    PredefinedSegment.NEW_USER: ["Onboarding quests", "Tutorial completion rewards"],
    PredefinedSegment.VETERAN: ["Endgame content", "Community and guild features"],
}


def matches(features: UserFeatures, criteria: SegmentCriteria) -> bool:
    value = features.value_of(criteria.feature)
    target = criteria.value
    if criteria.operator == CriteriaOperator.GT:
        return value > target
    if criteria.operator == CriteriaOperator.LT:
        return value < target
    if criteria.operator == CriteriaOperator.EQ:
        return value == target
    if criteria.operator == CriteriaOperator.BETWEEN:
        low, high = target
        return low <= value <= high
    if criteria.operator == CriteriaOperator.IN:
        return value in target
    return False


class SegmentationModel(PersistentModel):
    """
    Rule-based and clustered player segmentation.

    Example:
    --------
    >>> model = SegmentationModel(random_state=42)
    >>> model.get_primary_segment(features)
    <PredefinedSegment.WHALE: 'whale'>
    >>> model.train(all_features)
    """

    STORE_KEY = "segmentation_model"
    DEFAULT_CONFIG = ModelConfig(
        min_data_points=100,
        lookback_days=30,
        hyperparameters={"num_clusters": 5, "max_iterations": 100, "convergence_threshold": 0.01},
    )

    def __init__(self, config=None, store=None, random_state: Optional[int] = None, verbose: bool = False):
        super().__init__(config, store, verbose)
        self.random_state = random_state
        self.scaler: Optional[StandardScaler] = None
        self.cluster_centers: List[ClusterCenter] = []
        self._normalized_centers: Optional[np.ndarray] = None

    # ------------------------------------------------------------------
    # Predefined segments
    # ------------------------------------------------------------------

    def assign_predefined_segments(self, features: UserFeatures) -> List[PredefinedSegment]:
        """All predefined segments the user satisfies, in priority order."""
        return [
            d.segment for d in PREDEFINED_SEGMENTS
            if all(matches(features, c) for c in d.criteria)
        ]

    def get_primary_segment(self, features: UserFeatures) -> PredefinedSegment:
        segments = self.assign_predefined_segments(features)
        if segments:
            return min(segments, key=lambda s: SEGMENTS_BY_ID[s].priority)
        return PredefinedSegment.CASUAL if features.weekly_active_ratio > 0.3 else PredefinedSegment.AT_RISK

    def segment_users(self, users: Iterable[UserFeatures]) -> Dict[str, Any]:
        """
        Primary segment per user plus a per-segment summary.

        Returns:
        --------
        dict with `assignments` (user id -> segment) and `segments` (UserSegment list)
        """
        users = list(users)
        assignments = {f.user_id: self.get_primary_segment(f) for f in users}
        total = len(users)

        segments = []
        for definition in PREDEFINED_SEGMENTS:
            members = [f for f in users if assignments[f.user_id] == definition.segment]
            segments.append(UserSegment(
                id=definition.segment.value,
                name=definition.name,
                description=definition.description,
                criteria=list(definition.criteria),
                user_count=len(members),
                percentage=len(members) / total * 100 if total else 0.0,
                characteristics=self._characteristics(members),
            ))
        return {"assignments": assignments, "segments": segments}

    @staticmethod
    def _characteristics(members: List[UserFeatures]) -> Dict[str, float]:
        if not members:
            return {}
        return {
            "avg_total_spend": float(np.mean([f.total_spend for f in members])),
            "avg_sessions_7d": float(np.mean([f.session_count_7d for f in members])),
            "avg_weekly_active_ratio": float(np.mean([f.weekly_active_ratio for f in members])),
            "avg_days_active": float(np.mean([f.days_active for f in members])),
        }

    def get_targeting_recommendations(self, segment: Union[PredefinedSegment, str]) -> List[str]:
        return list(TARGETING_RECOMMENDATIONS[PredefinedSegment(segment)])

    # ------------------------------------------------------------------
    # Clustering
    # ------------------------------------------------------------------

    @staticmethod
    def _matrix(users: List[UserFeatures]) -> np.ndarray:
        return np.array([[f.value_of(n) for n in CLUSTER_FEATURES] for f in users], dtype=float)

    def _normalize(self, matrix: np.ndarray) -> np.ndarray:
        with self._lock:
            scaler = self.scaler
        return scaler.transform(matrix) if scaler is not None else matrix

    def _denormalize(self, centers: np.ndarray) -> np.ndarray:
        with self._lock:
            scaler = self.scaler
        return scaler.inverse_transform(centers) if scaler is not None else centers

    def _kmeans(self, data: np.ndarray, k: int, rng: np.random.Generator):
        n = len(data)
        centers = [data[rng.integers(n)]]
        while len(centers) < k:
            distances = ((data[:, None, :] - np.array(centers)[None, :, :]) ** 2).sum(axis=2).min(axis=1)
            total = distances.sum()
            index = rng.choice(n, p=distances / total) if total > 0 else rng.integers(n)
            centers.append(data[index])
        centers = np.array(centers)

        threshold = self.hyperparameter("convergence_threshold")
        for _ in range(int(self.hyperparameter("max_iterations"))):
            labels = ((data[:, None, :] - centers[None, :, :]) ** 2).sum(axis=2).argmin(axis=1)
            updated = np.array([
                data[labels == j].mean(axis=0) if np.any(labels == j) else data[rng.integers(n)]
                for j in range(k)
            ])
            shift = float(np.sqrt(((updated - centers) ** 2).sum(axis=1)).max())
            centers = updated
            if shift < threshold:
                break

        labels = ((data[:, None, :] - centers[None, :, :]) ** 2).sum(axis=2).argmin(axis=1)
        return centers, labels

    def auto_cluster(self, users: Iterable[UserFeatures], num_clusters: Optional[int] = None) -> Dict[str, Any]:
        """
        k-means over the standardised cluster features.

        Returns:
        --------
        dict with `clusters` (ClusterCenter list, centres in raw feature units)
        and `assignments` (user id -> cluster id)
        """
        users = list(users)
        k = int(num_clusters or self.hyperparameter("num_clusters"))
        if not users or k < 1:
            return {"clusters": [], "assignments": {}}

        rng = np.random.default_rng(self.random_state)
        normalized = self._normalize(self._matrix(users))
        centers, labels = self._kmeans(normalized, k, rng)
        raw_centers = self._denormalize(centers)

        clusters = [
            ClusterCenter(
                cluster_id=j,
                center={n.value: float(raw_centers[j][i]) for i, n in enumerate(CLUSTER_FEATURES)},
                user_count=int(np.sum(labels == j)),
            )
            for j in range(k)
        ]
        with self._lock:
            self.cluster_centers = clusters
            self._normalized_centers = centers
        return {
            "clusters": clusters,
            "assignments": {f.user_id: int(labels[i]) for i, f in enumerate(users)},
        }

    def assign_cluster(self, features: UserFeatures) -> Optional[int]:
        """Nearest trained cluster for one user, or None before clustering."""
        with self._lock:
            centers = self._normalized_centers
        if centers is None:
            return None
        point = self._normalize(self._matrix([features]))[0]
        return int(((centers - point) ** 2).sum(axis=1).argmin())

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(self, users: Iterable[UserFeatures]) -> ModelMetrics:
        """
        Fit scaling statistics and cluster the users.

        Raises:
        -------
        InsufficientDataError if fewer than min_data_points users
        """
        users = list(users)
        if len(users) < self.config.min_data_points:
            raise InsufficientDataError(self.config.min_data_points, len(users), "users")

        self._log(f"🔄 Training segmentation on {len(users):,} users...")
        scaler = StandardScaler().fit(self._matrix(users))
        with self._lock:
            self.scaler = scaler
        result = self.auto_cluster(users)

        metrics = self.evaluate(users, result["assignments"])
        metrics.training_data_size = len(users)
        self.metrics = metrics
        self._log(f"  ✅ Segmentation trained: {len(result['clusters'])} clusters, silhouette={metrics.silhouette:.3f}")
        self.save()
        return metrics

    def evaluate(self, users: Iterable[UserFeatures], assignments: Optional[Dict[str, int]] = None) -> ModelMetrics:
        """Silhouette score of the cluster assignment (0 when undefined)."""
        users = list(users)
        if assignments is None:
            assignments = {f.user_id: self.assign_cluster(f) for f in users}
        labels = np.array([
            -1 if assignments.get(f.user_id) is None else assignments[f.user_id] for f in users
        ])

        silhouette = 0.0
        if 2 <= len(set(labels.tolist())) <= len(users) - 1:
            silhouette = float(silhouette_score(
                self._normalize(self._matrix(users)), labels,
                sample_size=min(len(users), 2000), random_state=self.random_state,
            ))
        return ModelMetrics(silhouette=silhouette, last_trained=utc_now().isoformat())

    def get_feature_importance(self) -> Dict[str, float]:
        return {
            FeatureName.TOTAL_SPEND.value: 0.25,
            FeatureName.SESSION_COUNT_7D.value: 0.20,
            FeatureName.WEEKLY_ACTIVE_RATIO.value: 0.20,
            FeatureName.PURCHASE_COUNT.value: 0.10,
            FeatureName.AVG_SESSION_LENGTH.value: 0.10,
            FeatureName.PROGRESSION_SPEED.value: 0.10,
            FeatureName.FAILURE_RATE.value: 0.05,
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def get_state(self) -> Dict[str, Any]:
        return {
            "scaler": self.scaler,
            "cluster_centers": [c.model_dump() for c in self.cluster_centers],
            "normalized_centers": None if self._normalized_centers is None else self._normalized_centers.tolist(),
            "metrics": self.metrics.model_dump() if self.metrics else None,
        }

    def set_state(self, state: Dict[str, Any]) -> None:
        scaler = state.get("scaler")
        if scaler is not None and not isinstance(scaler, StandardScaler):
            raise TypeError("Stored scaler is not a StandardScaler")
        centers = [ClusterCenter.model_validate(c) for c in state.get("cluster_centers", [])]
        normalized = state.get("normalized_centers")
        metrics = ModelMetrics.model_validate(state["metrics"]) if state.get("metrics") else None
        with self._lock:
            self.scaler = scaler
            self.cluster_centers = centers
            self._normalized_centers = None if normalized is None else np.array(normalized, dtype=float)
            self.metrics = metrics
