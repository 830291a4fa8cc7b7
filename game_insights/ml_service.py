"""
ML Service Module

This module ties feature extraction to the six prediction models: it trains
them from a raw dataset, caches the extracted features, and serves churn, LTV,
retention, revenue, segmentation and anomaly queries.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, Iterable, List, Optional

import pandas as pd

from .anomaly_model import AnomalyModel, PointLike
from .churn_predictor import ChurnPredictor
from .data_processor import GameDataset
from .errors import InsufficientDataError
from .feature_extractor import FeatureExtractor
from .ltv_predictor import LTVPredictor
from .model_store import InMemoryModelStore, ModelStore, PersistentModel
from .models import (
    AggregateFeatures,
    Anomaly,
    ChurnTrainingSample,
    CohortData,
    LTVTrainingSample,
    MetricDataPoint,
    ModelStatus,
    RetentionCurvePoint,
    RevenueForecast,
    RiskLevel,
    UserChurnPrediction,
    UserFeatures,
    UserLTVPrediction,
    UserSegment,
)
from .retention_predictor import RetentionPredictor
from .revenue_forecaster import RevenueForecaster
from .segmentation_model import SegmentationModel


class MLService:
    """
    Orchestrates training and prediction across all models.

    Each service owns its own model instances; pass a shared ModelStore to
    persist them.

    Example:
    --------
    >>> service = MLService(store=FileModelStore("models"))
    >>> service.initialize()
    >>> service.train_on_data(GameDataset.from_csv("events.csv"))
    >>> service.get_at_risk_users()
    """

    MIN_TRAINING_ROWS = 100
    CHURNED_AFTER_HOURS = 168
    RETENTION_DAYS = 30
    OBSERVED_RETENTION_DAYS = 7
    DEFAULT_OBSERVED_RETENTION = {1: 0.40, 7: 0.15}

    # Below these sizes a model is skipped rather than trained; each model still
    # enforces its own min_data_points and reports a failure if it is not met
    MIN_CHURN_SAMPLES = 100
    MIN_LTV_SAMPLES = 50
    MIN_REVENUE_POINTS = 7
    MIN_ANOMALY_POINTS = 14
    MIN_SEGMENT_USERS = 50

    ANOMALY_METRICS = ("revenue", "dau")

    def __init__(
        self,
        store: Optional[ModelStore] = None,
        game_type: str = "default",
        now: Optional[pd.Timestamp] = None,
        random_state: Optional[int] = None,
        verbose: bool = True,
    ):
        """
        Parameters:
        -----------
        store : ModelStore, optional
            Persistence backend shared by all models. Defaults to an in-memory store.
        game_type : str
            Genre used for retention benchmarks
        now : pd.Timestamp, optional
            Reference time for feature extraction. Defaults to the time of each training run.
        random_state : int, optional
            Seed for clustering
        verbose : bool
            Print progress (default: True)
        """
        self.store = store if store is not None else InMemoryModelStore()
        self.game_type = game_type
        self.now = now
        self.random_state = random_state
        self.verbose = verbose
        self._build_models()
        self._clear_cache()

    def _build_models(self) -> None:
        self.churn_predictor = ChurnPredictor(store=self.store, verbose=self.verbose)
        self.ltv_predictor = LTVPredictor(store=self.store, verbose=self.verbose)
        self.retention_predictor = RetentionPredictor(
            store=self.store, game_type=self.game_type, verbose=self.verbose)
        self.revenue_forecaster = RevenueForecaster(store=self.store, verbose=self.verbose)
        self.anomaly_model = AnomalyModel(store=self.store, verbose=self.verbose)
        self.segmentation_model = SegmentationModel(
            store=self.store, random_state=self.random_state, verbose=self.verbose)

    def _clear_cache(self) -> None:
        self.extractor: Optional[FeatureExtractor] = None
        self.user_features: List[UserFeatures] = []
        self.aggregate_features: Optional[AggregateFeatures] = None
        self.trained_dataset_id: Optional[str] = None
        self.training_errors: Dict[str, str] = {}

    @property
    def models(self) -> Dict[str, PersistentModel]:
        return {
            "retention": self.retention_predictor,
            "churn": self.churn_predictor,
            "ltv": self.ltv_predictor,
            "revenue": self.revenue_forecaster,
            "anomaly": self.anomaly_model,
            "segmentation": self.segmentation_model,
        }

    def _log(self, message: str) -> None:
        if self.verbose:
            print(message)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> Dict[str, bool]:
        """
        Load every model's saved state.

        Returns:
        --------
        Dictionary of model name -> whether state was restored
        """
        self._log("📂 Loading saved models...")
        loaded = {}
        for name, model in self.models.items():
            loaded[name] = model.load()
            self._log(f"  ✅ Loaded: {name}" if loaded[name] else f"  ⚠️ No saved state: {name}")
        return loaded

    def save_all(self) -> None:
        for model in self.models.values():
            model.save()

    def reset(self) -> None:
        """Drop cached features and return every model to its untrained state."""
        self._build_models()
        self._clear_cache()

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train_on_data(self, dataset: GameDataset) -> Dict[str, ModelStatus]:
        """
        Extract features from the dataset and train all models concurrently.

        A failure in one model is recorded in `training_errors` and does not
        stop the others. Training the same dataset id twice is a no-op.

        Raises:
        -------
        InsufficientDataError if the dataset has fewer than MIN_TRAINING_ROWS rows
        """
        if dataset.id == self.trained_dataset_id:
            self._log(f"⚠️ Dataset {dataset.id} already trained, skipping")
            return self.get_status()
        if len(dataset) < self.MIN_TRAINING_ROWS:
            raise InsufficientDataError(self.MIN_TRAINING_ROWS, len(dataset), "rows")

        self._log(f"\n🔄 Extracting features from {len(dataset):,} rows...")
        extractor = FeatureExtractor(dataset, now=self.now)
        features = extractor.extract_all_user_features()
        aggregate = extractor.extract_aggregate_features()
        self._log(f"  📊 Users: {len(features):,}")

        tasks: Dict[str, Callable[[], bool]] = {
            "retention": lambda: self._train_retention(features),
            "churn": lambda: self._train_churn(features),
            "ltv": lambda: self._train_ltv(features),
            "revenue": lambda: self._train_revenue(extractor),
            "anomaly": lambda: self._train_anomaly(extractor),
            "segmentation": lambda: self._train_segmentation(features),
        }

        errors: Dict[str, str] = {}
        with ThreadPoolExecutor(max_workers=len(tasks)) as executor:
            futures = {executor.submit(task): name for name, task in tasks.items()}
            for future in as_completed(futures):
                name = futures[future]
                try:
                    trained = future.result()
                    self._log(f"  ✅ Trained: {name}" if trained else f"  ⚠️ Skipped: {name} (not enough data)")
                except Exception as e:
                    errors[name] = str(e)
                    print(f"  ⚠️ Training failed for {name}: {e}")

        self.extractor = extractor
        self.user_features = features
        self.aggregate_features = aggregate
        self.training_errors = errors
        self.trained_dataset_id = dataset.id
        return self.get_status()

    @classmethod
    def _retained_share(cls, members: List[UserFeatures], day: int) -> float:
        """Share of players old enough for `day` whose activity rate keeps pace with it."""
        retained = sum(
            1 for f in members
            if day <= f.days_since_first_session
            and f.days_active / max(f.days_since_first_session, 1) >= day / cls.RETENTION_DAYS
        )
        return retained / len(members)

    def _train_retention(self, features: List[UserFeatures]) -> bool:
        cohorts: Dict[str, List[UserFeatures]] = {}
        for f in features:
            cohorts.setdefault(f.cohort, []).append(f)

        cohort_data = []
        for cohort, members in sorted(cohorts.items()):
            retention = {0: 1.0}
            for day in range(1, self.RETENTION_DAYS + 1):
                retention[day] = self._retained_share(members, day)
            cohort_data.append(CohortData(cohort_date=cohort, cohort_size=len(members), retention_by_day=retention))

        if not cohort_data:
            return False
        self.retention_predictor.train(cohort_data)
        return True

    def _train_churn(self, features: List[UserFeatures]) -> bool:
        if len(features) < self.MIN_CHURN_SAMPLES:
            return False
        samples = [
            ChurnTrainingSample(features=f, churned=f.last_session_hours_ago > self.CHURNED_AFTER_HOURS)
            for f in features
        ]
        self.churn_predictor.train(samples)
        return True

    def _train_ltv(self, features: List[UserFeatures]) -> bool:
        if len(features) < self.MIN_LTV_SAMPLES:
            return False
        self.ltv_predictor.train([LTVTrainingSample(features=f, actual_ltv=f.total_spend) for f in features])
        return True

    def _train_revenue(self, extractor: FeatureExtractor) -> bool:
        points = extractor.extract_revenue_data_points()
        if len(points) < self.MIN_REVENUE_POINTS:
            return False
        self.revenue_forecaster.train(points)
        return True

    def _train_anomaly(self, extractor: FeatureExtractor) -> bool:
        trained = False
        for metric in self.ANOMALY_METRICS:
            series = extractor.extract_time_series(metric)
            if len(series) >= self.MIN_ANOMALY_POINTS:
                self.anomaly_model.train_metric(
                    metric, [MetricDataPoint(timestamp=p.date, value=p.value, metric=metric) for p in series]
                )
                trained = True
        if trained:
            self.anomaly_model.save()
        return trained

    def _train_segmentation(self, features: List[UserFeatures]) -> bool:
        if len(features) < self.MIN_SEGMENT_USERS:
            return False
        self.segmentation_model.train(features)
        return True

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    def get_churn_predictions(self, limit: Optional[int] = None) -> List[UserChurnPrediction]:
        """Churn predictions for every cached user, riskiest first."""
        predictions = self.churn_predictor.predict_batch(self.user_features)["predictions"]
        predictions.sort(key=lambda p: p.value, reverse=True)
        return predictions[:limit] if limit is not None else predictions

    def get_at_risk_users(self, limit: int = 20) -> List[UserChurnPrediction]:
        return [
            p for p in self.get_churn_predictions()
            if p.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)
        ][:limit]

    def get_ltv_predictions(self, limit: Optional[int] = None) -> List[UserLTVPrediction]:
        predictions = self.ltv_predictor.predict_batch(self.user_features)
        predictions.sort(key=lambda p: p.value, reverse=True)
        return predictions[:limit] if limit is not None else predictions

    def get_all_predictions(self) -> List[Dict[str, Any]]:
        """Churn, LTV and primary segment for every cached user."""
        churn = {p.user_id: p for p in self.churn_predictor.predict_batch(self.user_features)["predictions"]}
        ltv = {p.user_id: p for p in self.ltv_predictor.predict_batch(self.user_features)}
        return [
            {
                "user_id": f.user_id,
                "churn": churn[f.user_id],
                "ltv": ltv[f.user_id],
                "segment": self.segmentation_model.get_primary_segment(f),
            }
            for f in self.user_features
        ]

    def get_retention_forecast(self, days: int = 30) -> List[RetentionCurvePoint]:
        """
        Retention curve from day 0 to `days`.

        Days 1-7 are observed from the cached players; later days are
        extrapolated from them. Day 0 is always 1.0 and is not part of the fit.
        """
        if self.user_features:
            observed = {
                day: self._retained_share(self.user_features, day)
                for day in range(1, self.OBSERVED_RETENTION_DAYS + 1)
            }
        else:
            observed = dict(self.DEFAULT_OBSERVED_RETENTION)
        cohort_size = len(self.user_features) or 1000

        curve = [RetentionCurvePoint(day=0, retention=1.0, predicted=False)]
        for day in range(1, days + 1):
            prediction = self.retention_predictor.predict_retention(observed, day, cohort_size)
            curve.append(RetentionCurvePoint(day=day, retention=prediction.value, predicted=day not in observed))
        return curve

    def get_revenue_forecast(self, days: int = 30) -> List[RevenueForecast]:
        return self.revenue_forecaster.forecast(days)

    def get_user_segments(self) -> Dict[str, List[UserSegment]]:
        """Predefined segments plus clusters from the last training run."""
        predefined = self.segmentation_model.segment_users(self.user_features)["segments"]
        total = len(self.user_features)
        clusters = [
            UserSegment(
                id=f"cluster_{c.cluster_id}",
                name=f"Cluster {c.cluster_id + 1}",
                description="Behavioural cluster found by k-means",
                user_count=c.user_count,
                percentage=c.user_count / total * 100 if total else 0.0,
                characteristics=dict(c.center),
            )
            for c in self.segmentation_model.cluster_centers
        ]
        return {"predefined": predefined, "clusters": clusters}

    def detect_anomalies(self, points: Optional[Iterable[PointLike]] = None) -> List[Anomaly]:
        """
        Detect anomalies in the given metric points, or scan the cached
        dataset's revenue and DAU series when none are given.
        """
        if points is not None:
            return self.anomaly_model.detect_batch(points)
        if self.extractor is None:
            return []

        anomalies = []
        for metric in self.ANOMALY_METRICS:
            series = self.extractor.extract_time_series(metric)
            anomalies.extend(self.anomaly_model.analyze_time_series(
                metric, [MetricDataPoint(timestamp=p.date, value=p.value) for p in series]
            ))
        return anomalies

    def get_aggregate_metrics(self) -> Optional[AggregateFeatures]:
        return self.aggregate_features

    def get_status(self) -> Dict[str, ModelStatus]:
        return {
            name: ModelStatus(
                name=name,
                trained=model.is_trained,
                metrics=model.metrics,
                error=self.training_errors.get(name),
            )
            for name, model in self.models.items()
        }
