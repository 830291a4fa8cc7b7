"""
Anomaly Detection Module

Keeps a statistical profile per metric (EMA mean/std, day-of-week and
hour-of-day means) and flags observations whose z-score against the
seasonally adjusted expectation exceeds the sensitivity threshold. Rolling
windows over a full series additionally surface trend breaks and variance
pattern changes.
"""

import math
import uuid
from collections import Counter, deque
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Union

import numpy as np
import pandas as pd

from .data_processor import to_timestamp, utc_now
from .errors import InsufficientDataError
from .model_store import PersistentModel
from .models import (
    Anomaly,
    AnomalySeverity,
    AnomalyType,
    MetricDataPoint,
    MetricProfile,
    ModelConfig,
    ModelMetrics,
    PredictionRange,
    Sensitivity,
)


SENSITIVITY_THRESHOLDS: Dict[Sensitivity, float] = {
    Sensitivity.LOW: 3.0,
    Sensitivity.MEDIUM: 2.5,
    Sensitivity.HIGH: 2.0,
}

SPIKE_CAUSES = [
    "Possible viral content or marketing campaign",
    "External event driving traffic",
    "Bot activity or data quality issue",
]

DROP_CAUSES = [
    "Technical issue or service disruption",
    "Competitor action or market change",
    "Seasonal or timing-related factor",
]

TREND_CAUSES = {
    "increase": [
        "Successful feature release or update",
        "Marketing campaign taking effect",
        "Organic growth acceleration",
    ],
    "decrease": [
        "User acquisition decline",
        "Retention issues developing",
        "Market or competitive pressure",
    ],
}

PATTERN_CAUSES = {
    "increase": [
        "Increased variability in user behavior",
        "Market conditions becoming unstable",
        "Testing or experimentation effects",
    ],
    "decrease": [
        "User behavior becoming more consistent",
        "Market stabilization",
        "Improved system performance",
    ],
}

PointLike = Union[MetricDataPoint, Mapping[str, Any]]


def severity_for(z_score: float) -> AnomalySeverity:
    """Map an absolute z-score to a severity bucket."""
    if z_score >= 4:
        return AnomalySeverity.CRITICAL
    if z_score >= 3:
        return AnomalySeverity.HIGH
    if z_score >= 2.5:
        return AnomalySeverity.MEDIUM
    return AnomalySeverity.LOW


def _as_point(point: PointLike) -> MetricDataPoint:
    return point if isinstance(point, MetricDataPoint) else MetricDataPoint.model_validate(point)


class AnomalyModel(PersistentModel):
    """
    Online anomaly detector with one evolving profile per metric.

    Example:
    --------
    >>> model = AnomalyModel()
    >>> model.train_metric("dau", history)
    >>> anomaly = model.detect("dau", 2400)
    """

    STORE_KEY = "anomaly_model"
    DEFAULT_CONFIG = ModelConfig(
        min_data_points=14,
        lookback_days=30,
        hyperparameters={"ema_alpha": 0.3, "seasonal_weight": 0.2},
    )
    HISTORY_LIMIT = 100
    SAVED_ANOMALIES = 50
    WINDOW = 14
    MIN_WINDOW = 7

    def __init__(self, config=None, store=None, sensitivity: Sensitivity = Sensitivity.MEDIUM, verbose: bool = False):
        super().__init__(config, store, verbose)
        self.sensitivity = Sensitivity(sensitivity)
        self._profiles: Dict[str, MetricProfile] = {}
        self._history: Deque[Anomaly] = deque(maxlen=self.HISTORY_LIMIT)

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def set_sensitivity(self, sensitivity: Union[Sensitivity, str]) -> None:
        self.sensitivity = Sensitivity(sensitivity)

    @property
    def threshold(self) -> float:
        return SENSITIVITY_THRESHOLDS[self.sensitivity]

    def get_profile(self, metric: str) -> Optional[MetricProfile]:
        return self._profiles.get(metric)

    @property
    def metrics_tracked(self) -> List[str]:
        return list(self._profiles)

    @staticmethod
    def _seed_profile(metric: str, value: float) -> MetricProfile:
        return MetricProfile(
            metric=metric,
            mean=value,
            std=abs(value) * 0.2,
            min=value,
            max=value,
            day_of_week_means=[value] * 7,
            hour_of_day_means=[value] * 24,
            recent_trend=0.0,
            volatility=0.2,
        )

    def _expected_value(self, profile: MetricProfile, ts: pd.Timestamp) -> float:
        weight = self.hyperparameter("seasonal_weight")
        seasonal = profile.day_of_week_means[ts.dayofweek] * 0.5 + profile.hour_of_day_means[ts.hour] * 0.5
        return profile.mean * (1 - weight) + seasonal * weight

    def _fold(self, profile: MetricProfile, value: float, ts: pd.Timestamp) -> MetricProfile:
        """Return a new profile with `value` folded in by EMA."""
        alpha = self.hyperparameter("ema_alpha")
        mean = alpha * value + (1 - alpha) * profile.mean
        std = alpha * abs(value - mean) + (1 - alpha) * profile.std

        dow = list(profile.day_of_week_means)
        dow[ts.dayofweek] = alpha * value + (1 - alpha) * dow[ts.dayofweek]
        hours = list(profile.hour_of_day_means)
        hours[ts.hour] = alpha * value + (1 - alpha) * hours[ts.hour]

        return profile.model_copy(update={
            "mean": mean,
            "std": std,
            "min": min(profile.min, value),
            "max": max(profile.max, value),
            "day_of_week_means": dow,
            "hour_of_day_means": hours,
            "volatility": std / mean if mean > 0 else 0.0,
        })

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect(self, metric: str, value: float, timestamp=None) -> Optional[Anomaly]:
        """
        Score one observation against the metric's profile.

        The first observation of an unseen metric seeds its profile and never
        produces an anomaly. Non-anomalous values are folded into the profile;
        anomalous ones are recorded in the history instead.

        Returns:
        --------
        Anomaly or None
        """
        value = float(value)
        ts = to_timestamp(timestamp) if timestamp is not None else None
        if ts is None:
            ts = utc_now()

        with self._lock:
            profile = self._profiles.get(metric)
            if profile is None:
                self._profiles[metric] = self._seed_profile(metric, value)
                return None

            expected = self._expected_value(profile, ts)
            z_score = abs(value - expected) / profile.std if profile.std > 0 else 0.0

            if z_score < self.threshold:
                self._profiles[metric] = self._fold(profile, value, ts)
                return None

            anomaly_type = AnomalyType.SPIKE if value > expected else AnomalyType.DROP
            anomaly = Anomaly(
                id=self._anomaly_id(metric, ts),
                metric=metric,
                timestamp=ts.isoformat(),
                value=value,
                expected_value=expected,
                expected_range=PredictionRange(
                    low=profile.mean - self.threshold * profile.std,
                    high=profile.mean + self.threshold * profile.std,
                ),
                severity=severity_for(z_score),
                type=anomaly_type,
                deviation=z_score,
                possible_causes=self._causes(anomaly_type),
            )
            self._history.append(anomaly)
            return anomaly

    @staticmethod
    def _anomaly_id(metric: str, ts: pd.Timestamp) -> str:
        return f"{metric}-{int(ts.timestamp() * 1000)}-{uuid.uuid4().hex[:8]}"

    @staticmethod
    def _causes(anomaly_type: AnomalyType) -> List[str]:
        return list(SPIKE_CAUSES if anomaly_type == AnomalyType.SPIKE else DROP_CAUSES)

    def detect_batch(self, points: Iterable[PointLike]) -> List[Anomaly]:
        """Detect over points that each carry their metric name."""
        anomalies = []
        for point in map(_as_point, points):
            if not point.metric:
                raise ValueError("Each batch point needs a metric name")
            anomaly = self.detect(point.metric, point.value, point.timestamp)
            if anomaly is not None:
                anomalies.append(anomaly)
        return anomalies

    def analyze_time_series(self, metric: str, data: Iterable[PointLike]) -> List[Anomaly]:
        """
        Point-detect every observation, then compare the last 14 points with
        the 14 before them for a trend break and a variance pattern change.
        """
        points = [_as_point(p) for p in data]
        if len(points) < 3:
            return []

        anomalies = [
            a for a in (self.detect(metric, p.value, p.timestamp) for p in points)
            if a is not None
        ]

        values = np.array([p.value for p in points], dtype=float)
        recent = values[-self.WINDOW:]
        older = values[-2 * self.WINDOW:-self.WINDOW]
        if len(recent) < self.MIN_WINDOW or len(older) < self.MIN_WINDOW:
            return anomalies

        timestamp = points[-1].timestamp
        recent_mean, older_mean = float(recent.mean()), float(older.mean())
        older_std = float(older.std())

        trend = self._trend_break(metric, timestamp, recent_mean, older_mean, older_std)
        if trend is not None:
            anomalies.append(trend)

        pattern = self._pattern_change(metric, timestamp, float(recent.var()), float(older.var()))
        if pattern is not None:
            anomalies.append(pattern)

        with self._lock:
            self._history.extend(a for a in (trend, pattern) if a is not None)
        return anomalies

    def _trend_break(self, metric, timestamp, recent_mean, older_mean, older_std) -> Optional[Anomaly]:
        if older_std <= 0:
            return None
        deviation = (recent_mean - older_mean) / older_std
        if abs(deviation) <= 2:
            return None
        direction = "increase" if deviation > 0 else "decrease"
        ts = to_timestamp(timestamp) or utc_now()
        return Anomaly(
            id=self._anomaly_id(metric, ts),
            metric=metric,
            timestamp=ts.isoformat(),
            value=recent_mean,
            expected_value=older_mean,
            expected_range=PredictionRange(low=older_mean - 2 * older_std, high=older_mean + 2 * older_std),
            severity=severity_for(abs(deviation)),
            type=AnomalyType.TREND_BREAK,
            deviation=deviation,
            possible_causes=list(TREND_CAUSES[direction]),
        )

    def _pattern_change(self, metric, timestamp, recent_var, older_var) -> Optional[Anomaly]:
        ratio = recent_var / max(older_var, 0.001)
        if 0.33 <= ratio <= 3:
            return None
        ts = to_timestamp(timestamp) or utc_now()
        return Anomaly(
            id=self._anomaly_id(metric, ts),
            metric=metric,
            timestamp=ts.isoformat(),
            value=recent_var,
            expected_value=older_var,
            expected_range=PredictionRange(low=older_var * 0.5, high=older_var * 2),
            severity=AnomalySeverity.HIGH if ratio > 5 or ratio < 0.2 else AnomalySeverity.MEDIUM,
            type=AnomalyType.PATTERN_CHANGE,
            deviation=math.log(max(ratio, 0.001)),
            possible_causes=list(PATTERN_CAUSES["increase" if ratio > 3 else "decrease"]),
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    @property
    def anomaly_history(self) -> List[Anomaly]:
        return list(self._history)

    def get_recent_anomalies(self, hours: float = 24) -> List[Anomaly]:
        cutoff = utc_now() - pd.Timedelta(hours=hours)
        return [a for a in self._history if to_timestamp(a.timestamp) >= cutoff]

    def get_anomaly_summary(self) -> Dict[str, Any]:
        """Counts by severity and type plus the five most affected metrics."""
        history = list(self._history)
        by_severity = {s.value: 0 for s in AnomalySeverity}
        by_type = {t.value: 0 for t in AnomalyType}
        for anomaly in history:
            by_severity[anomaly.severity.value] += 1
            by_type[anomaly.type.value] += 1
        top_metrics = Counter(a.metric for a in history).most_common(5)
        return {
            "total": len(history),
            "by_severity": by_severity,
            "by_type": by_type,
            "top_metrics": [{"metric": m, "count": c} for m, c in top_metrics],
        }

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train_metric(self, metric: str, data: Iterable[PointLike]) -> MetricProfile:
        """
        Build a profile from history, replacing any existing profile.

        Raises:
        -------
        InsufficientDataError if fewer than min_data_points observations
        """
        points = [_as_point(p) for p in data]
        if len(points) < self.config.min_data_points:
            raise InsufficientDataError(self.config.min_data_points, len(points))

        frame = pd.DataFrame({
            "value": [p.value for p in points],
            "timestamp": [to_timestamp(p.timestamp) for p in points],
        })
        frame["timestamp"] = pd.to_datetime(frame["timestamp"])
        values = frame["value"].to_numpy(dtype=float)
        mean = float(values.mean())
        std = float(values.std())

        dated = frame.dropna(subset=["timestamp"])
        dow_means = dated.groupby(dated["timestamp"].dt.dayofweek)["value"].mean()
        hour_means = dated.groupby(dated["timestamp"].dt.hour)["value"].mean()

        last_week = values[-7:]
        prior_week = values[-14:-7]
        recent_trend = 0.0
        if len(prior_week) and mean != 0:
            recent_trend = (float(last_week.mean()) - float(prior_week.mean())) / mean

        profile = MetricProfile(
            metric=metric,
            mean=mean,
            std=std,
            min=float(values.min()),
            max=float(values.max()),
            day_of_week_means=[float(dow_means.get(d, mean)) for d in range(7)],
            hour_of_day_means=[float(hour_means.get(h, mean)) for h in range(24)],
            recent_trend=recent_trend,
            volatility=std / mean if mean > 0 else 0.0,
        )
        with self._lock:
            self._profiles[metric] = profile
        self._log(f"  ✅ Profiled {metric}: mean={mean:.2f}, std={std:.2f} ({len(points)} points)")
        return profile

    def train(self, metrics_data: Mapping[str, Iterable[PointLike]]) -> ModelMetrics:
        """Train every metric with enough history; shorter series are skipped."""
        series = {metric: list(data) for metric, data in metrics_data.items()}
        trained = 0
        for metric, points in series.items():
            if len(points) < self.config.min_data_points:
                self._log(f"  ⚠️ Skipping {metric}: {len(points)} points")
                continue
            self.train_metric(metric, points)
            trained += len(points)

        self.metrics = self.evaluate(series)
        self.metrics.training_data_size = trained
        self.save()
        return self.metrics

    def evaluate(self, test_data: Mapping[str, Iterable[PointLike]]) -> ModelMetrics:
        """
        Replay each series' trailing split through a scratch detector trained on
        the leading part; accuracy is the share of held-out points not flagged.
        """
        flagged = total = 0
        for metric, data in test_data.items():
            points = [_as_point(p) for p in data]
            split = int(len(points) * (1 - self.config.validation_split))
            if split < self.config.min_data_points or split >= len(points):
                continue
            scratch = AnomalyModel(self.config, sensitivity=self.sensitivity)
            scratch.train_metric(metric, points[:split])
            for point in points[split:]:
                flagged += scratch.detect(metric, point.value, point.timestamp) is not None
                total += 1

        return ModelMetrics(
            accuracy=1 - flagged / total if total else None,
            last_trained=utc_now().isoformat(),
        )

    def get_feature_importance(self) -> Dict[str, float]:
        return {
            "z_score": 0.4,
            "day_of_week_seasonality": 0.2,
            "hour_of_day_seasonality": 0.2,
            "trend": 0.1,
            "volatility": 0.1,
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def is_trained(self) -> bool:
        return bool(self._profiles)

    def get_state(self) -> Dict[str, Any]:
        return {
            "profiles": {k: p.model_dump() for k, p in self._profiles.items()},
            "anomalies": [a.model_dump(mode="json") for a in list(self._history)[-self.SAVED_ANOMALIES:]],
            "sensitivity": self.sensitivity.value,
            "metrics": self.metrics.model_dump() if self.metrics else None,
        }

    def set_state(self, state: Dict[str, Any]) -> None:
        profiles = {k: MetricProfile.model_validate(v) for k, v in state["profiles"].items()}
        anomalies = [Anomaly.model_validate(a) for a in state.get("anomalies", [])]
        sensitivity = Sensitivity(state.get("sensitivity", Sensitivity.MEDIUM))
        metrics = ModelMetrics.model_validate(state["metrics"]) if state.get("metrics") else None
        with self._lock:
            self._profiles = profiles
            self._history = deque(anomalies, maxlen=self.HISTORY_LIMIT)
            self.sensitivity = sensitivity
            self.metrics = metrics
