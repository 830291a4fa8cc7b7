"""
Retention Prediction Module

Projects retention curves from observed day-N retention. Known days are
returned as observed; unknown days are extrapolated with a power-law fit
(retention ~ a * day^b) or, when too few days are known, from the trained
curve or a genre benchmark.
"""

import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import numpy as np

from .data_processor import utc_now
from .errors import InsufficientDataError
from .model_store import PersistentModel
from .models import (
    BenchmarkComparison,
    CohortData,
    ModelConfig,
    ModelMetrics,
    PredictionFactor,
    PredictionRange,
    RetentionCurvePoint,
    RetentionPrediction,
)


# Benchmark retention at each offset in BENCHMARK_DAYS
BENCHMARK_DAYS = [0, 1, 2, 3, 4, 5, 6, 7, 14, 21, 30, 60, 90]
RETENTION_PATTERNS: Dict[str, List[float]] = {
    "puzzle": [1.0, 0.45, 0.35, 0.28, 0.24, 0.21, 0.18, 0.16, 0.14, 0.13, 0.12, 0.11, 0.10],
    "idle": [1.0, 0.50, 0.40, 0.32, 0.27, 0.24, 0.21, 0.19, 0.17, 0.15, 0.14, 0.13, 0.12],
    "battle_royale": [1.0, 0.40, 0.30, 0.24, 0.20, 0.17, 0.15, 0.13, 0.11, 0.10, 0.09, 0.08, 0.07],
    "match3_meta": [1.0, 0.48, 0.38, 0.30, 0.25, 0.22, 0.19, 0.17, 0.15, 0.14, 0.13, 0.12, 0.11],
    "gacha_rpg": [1.0, 0.42, 0.32, 0.26, 0.22, 0.19, 0.17, 0.15, 0.13, 0.12, 0.11, 0.10, 0.09],
    "default": [1.0, 0.44, 0.34, 0.27, 0.23, 0.20, 0.17, 0.15, 0.13, 0.12, 0.11, 0.10, 0.09],
}

CURVE_DAYS = 30
INTERPOLATION_DECAY = 0.92
MIN_RETENTION = 0.001


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class RetentionPredictor(PersistentModel):
    """
    Retention curve projector.

    Example:
    --------
    >>> predictor = RetentionPredictor(game_type="puzzle")
    >>> predictor.predict_retention({1: 0.42, 3: 0.25, 7: 0.15}, target_day=30)
    """

    STORE_KEY = "retention_predictor_model"
    DEFAULT_CONFIG = ModelConfig(
        min_data_points=100,
        lookback_days=30,
        validation_split=0.5,
        hyperparameters={"default_ltv_decay": 0.15, "max_fit_day": 30},
    )

    def __init__(self, config=None, store=None, game_type: str = "default", verbose: bool = False):
        super().__init__(config, store, verbose)
        self.game_type = game_type if game_type in RETENTION_PATTERNS else "default"
        self.trained_curve: Dict[int, float] = {}

    # ------------------------------------------------------------------
    # Benchmarks
    # ------------------------------------------------------------------

    def benchmark_retention(self, day: int) -> float:
        """Benchmark retention for a day, interpolated linearly between known offsets."""
        pattern = RETENTION_PATTERNS[self.game_type]
        day = max(0, int(day))
        if day >= BENCHMARK_DAYS[-1]:
            return pattern[-1]
        return float(np.interp(day, BENCHMARK_DAYS, pattern))

    def _compare(self, day: int, value: float) -> BenchmarkComparison:
        benchmark = self.benchmark_retention(day)
        if value > benchmark * 1.1:
            return BenchmarkComparison.ABOVE
        if value < benchmark * 0.9:
            return BenchmarkComparison.BELOW
        return BenchmarkComparison.AT

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    @staticmethod
    def _power_law(observed: Mapping[int, float]):
        """Least-squares fit of log(retention) on log(day); None when degenerate."""
        days = np.array([math.log(max(d, 1)) for d in observed], dtype=float)
        values = np.array([math.log(max(r, MIN_RETENTION)) for r in observed.values()], dtype=float)
        n = len(days)
        denominator = n * np.sum(days ** 2) - np.sum(days) ** 2
        if n < 2 or denominator == 0:
            return None
        slope = (n * np.sum(days * values) - np.sum(days) * np.sum(values)) / denominator
        intercept = (np.sum(values) - slope * np.sum(days)) / n
        return float(math.exp(intercept)), float(slope)

    def _extrapolate(self, observed: Mapping[int, float], target_day: int) -> float:
        fit = self._power_law(observed) if len(observed) >= 2 else None
        if fit is None:
            with self._lock:
                trained = self.trained_curve.get(target_day)
            return trained if trained is not None else self.benchmark_retention(target_day)
        scale, exponent = fit
        return _clamp(scale * max(target_day, 1) ** exponent, MIN_RETENTION, 1.0)

    def predict_retention(
        self,
        observed: Mapping[int, float],
        target_day: int,
        cohort_size: int = 1000,
    ) -> RetentionPrediction:
        """
        Retention on `target_day` given observed day-N retention.

        An observed day is returned as-is with full confidence; otherwise the
        confidence decays with the gap past the last observed day.
        """
        observed = {int(d): float(r) for d, r in observed.items()}
        target_day = int(target_day)

        if target_day in observed:
            value = observed[target_day]
            confidence = 1.0
        else:
            value = self._extrapolate(observed, target_day)
            last_day = max(observed) if observed else 0
            gap = max(0, target_day - last_day)
            confidence = min(1.0, len(observed) / 7) * math.exp(-gap / 30) * 0.9

        factors = []
        if 1 in observed:
            d1 = observed[1]
            factors.append(PredictionFactor(
                name="Day 1 Retention", impact=d1 - self.benchmark_retention(1),
                description=f"D1 retention of {d1 * 100:.1f}% across {cohort_size:,} players",
            ))
        if 7 in observed:
            d7 = observed[7]
            factors.append(PredictionFactor(
                name="Week 1 Stickiness", impact=d7 - self.benchmark_retention(7),
                description=f"D7 retention of {d7 * 100:.1f}%",
            ))

        return RetentionPrediction(
            value=value,
            confidence=confidence,
            range=PredictionRange(low=_clamp(value * 0.8), high=_clamp(value * 1.2)),
            factors=factors,
            day=target_day,
            retention_curve=self._curve(observed, target_day, value),
            benchmark_comparison=self._compare(target_day, value),
        )

    @staticmethod
    def _curve(observed: Mapping[int, float], target_day: int, predicted: float) -> List[RetentionCurvePoint]:
        """Observed points, the predicted target, and x0.92 steps across gaps."""
        points: Dict[int, RetentionCurvePoint] = {
            d: RetentionCurvePoint(day=d, retention=r, predicted=False) for d, r in observed.items()
        }
        if target_day not in points:
            points[target_day] = RetentionCurvePoint(day=target_day, retention=predicted, predicted=True)

        days = sorted(points)
        curve = []
        for current, following in zip(days, days[1:] + [None]):
            curve.append(points[current])
            if following is None:
                continue
            retention = points[current].retention
            for day in range(current + 1, following):
                retention = max(points[following].retention, retention * INTERPOLATION_DECAY)
                curve.append(RetentionCurvePoint(day=day, retention=retention, predicted=True))
        return curve

    def predict_d30_from_early(self, d1: float, d7: float) -> RetentionPrediction:
        """Project D30 retention from D1 and D7 using a power-law decay."""
        if d1 > 0 and d7 > 0:
            alpha = math.log(d1 / d7) / math.log(7)
            raw = d1 * 30 ** (-alpha)
            pattern = RETENTION_PATTERNS[self.game_type]
            benchmark_ratio = pattern[BENCHMARK_DAYS.index(7)] / pattern[BENCHMARK_DAYS.index(1)]
            d30 = min(d7 * 0.8, raw * (d7 / d1) / benchmark_ratio)
        else:
            d30 = 0.0
        d30 = _clamp(max(0.01, d30))

        confidence = 0.6
        if 0.2 <= d1 <= 0.7:
            confidence += 0.1
        if 0.05 <= d7 <= 0.4:
            confidence += 0.1
        if d1 > 0 and 0.2 <= d7 / d1 <= 0.6:
            confidence += 0.1
        confidence = min(0.85, confidence)

        observed = {0: 1.0, 1: d1, 7: d7}
        return RetentionPrediction(
            value=d30,
            confidence=confidence,
            range=PredictionRange(low=_clamp(d30 * 0.8), high=_clamp(d30 * 1.2)),
            factors=[
                PredictionFactor(name="Day 1 Retention", impact=d1 - self.benchmark_retention(1),
                                 description=f"D1 retention of {d1 * 100:.1f}%"),
                PredictionFactor(name="Week 1 Stickiness", impact=d7 - self.benchmark_retention(7),
                                 description=f"D7 retention of {d7 * 100:.1f}%"),
            ],
            day=30,
            retention_curve=self._curve(observed, 30, d30),
            benchmark_comparison=self._compare(30, d30),
        )

    def predict_cohort_ltv(
        self,
        retention_curve: Mapping[int, float],
        daily_arpdau: float,
        horizon_days: int = 365,
    ) -> Dict[str, Any]:
        """
        Cumulative revenue per installed user over the horizon.

        Retention beyond the observed curve decays exponentially at a rate
        fitted from the points up to day 30.
        """
        curve = {int(d): float(r) for d, r in retention_curve.items()}
        decay = self.hyperparameter("default_ltv_decay")
        fit_points = sorted((d, r) for d, r in curve.items() if 0 < d <= self.hyperparameter("max_fit_day") and r > 0)
        if len(fit_points) >= 2:
            (first_day, first_r), (last_day, last_r) = fit_points[0], fit_points[-1]
            if last_day > first_day and last_r > 0:
                decay = max(MIN_RETENTION, math.log(first_r / last_r) / (last_day - first_day))

        max_day = max(curve) if curve else 0
        anchor_day = max_day
        anchor = curve.get(max_day, 1.0)
        total = 0.0
        daily = []
        for day in range(horizon_days + 1):
            if day in curve:
                retention = curve[day]
            elif day < max_day:
                known = [d for d in curve if d < day]
                prior = max(known) if known else 0
                retention = curve.get(prior, 1.0) * INTERPOLATION_DECAY ** (day - prior)
            else:
                retention = anchor * math.exp(-decay * (day - anchor_day))
            total += retention * daily_arpdau
            daily.append(total)

        return {
            "ltv": total,
            "decay_rate": decay,
            "confidence": max(0.3, 1 - (horizon_days - max_day) / horizon_days) if horizon_days > 0 else 0.3,
            "ltv_30d": daily[min(30, horizon_days)],
            "ltv_90d": daily[min(90, horizon_days)],
        }

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    @staticmethod
    def _average_curve(cohorts: List[CohortData]) -> Dict[int, float]:
        curve: Dict[int, float] = {0: 1.0}
        for day in range(1, CURVE_DAYS + 1):
            values = [c.retention_by_day[day] for c in cohorts if day in c.retention_by_day]
            if values:
                curve[day] = float(np.mean(values))
        for day in range(1, CURVE_DAYS + 1):
            if day not in curve:
                curve[day] = curve[day - 1] * 0.9
        return curve

    def train(self, cohort_data: Iterable[Union[CohortData, Mapping[str, Any]]]) -> ModelMetrics:
        """
        Average observed cohort curves into a day 0-30 retention curve.

        Raises:
        -------
        InsufficientDataError if there are too few cohorts
        """
        cohorts = [c if isinstance(c, CohortData) else CohortData.model_validate(c) for c in cohort_data]
        required = max(1, self.config.min_data_points // 100)
        if len(cohorts) < required:
            raise InsufficientDataError(required, len(cohorts), "cohorts")

        self._log(f"🔄 Training retention predictor on {len(cohorts)} cohorts...")
        curve = self._average_curve(cohorts)
        with self._lock:
            self.trained_curve = curve

        metrics = self.evaluate(cohorts)
        metrics.training_data_size = sum(c.cohort_size for c in cohorts)
        self.metrics = metrics
        self._log(f"  ✅ Retention curve trained: D1={curve[1]:.3f}, D7={curve[7]:.3f}, D30={curve[30]:.3f}")
        self.save()
        return metrics

    def evaluate(self, cohort_data: Iterable[Union[CohortData, Mapping[str, Any]]]) -> ModelMetrics:
        """Predict the later half of each cohort's observed days from the earlier half."""
        errors = []
        for cohort in cohort_data:
            cohort = cohort if isinstance(cohort, CohortData) else CohortData.model_validate(cohort)
            days = sorted(cohort.retention_by_day)
            if len(days) < 2:
                continue
            half = max(1, int(len(days) * self.config.validation_split))
            known = {d: cohort.retention_by_day[d] for d in days[:half]}
            for day in days[half:]:
                predicted = self.predict_retention(known, day).value
                errors.append(predicted - cohort.retention_by_day[day])

        if not errors:
            return ModelMetrics(mse=0.0, mae=0.0, last_trained=utc_now().isoformat())
        errors_arr = np.array(errors)
        return ModelMetrics(
            mse=float(np.mean(errors_arr ** 2)),
            mae=float(np.mean(np.abs(errors_arr))),
            last_trained=utc_now().isoformat(),
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def get_state(self) -> Dict[str, Any]:
        return {
            "trained_curve": dict(self.trained_curve),
            "game_type": self.game_type,
            "metrics": self.metrics.model_dump() if self.metrics else None,
        }

    def set_state(self, state: Dict[str, Any]) -> None:
        curve = {int(d): float(r) for d, r in state["trained_curve"].items()}
        game_type = state.get("game_type", "default")
        metrics = ModelMetrics.model_validate(state["metrics"]) if state.get("metrics") else None
        with self._lock:
            self.trained_curve = curve
            self.game_type = game_type if game_type in RETENTION_PATTERNS else "default"
            self.metrics = metrics
