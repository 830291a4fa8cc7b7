"""
Revenue Forecasting Module

Additive trend model with seasonal multipliers:
    forecast(day) = (baseline + slope * days_ahead) * dow_multiplier * month_multiplier

The baseline and slope come from a least-squares fit over the daily history,
blended with the trailing 7-day average.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import numpy as np
import pandas as pd
from sklearn.metrics import mean_absolute_error, mean_squared_error

from .data_processor import to_timestamp, utc_now
from .errors import InsufficientDataError
from .model_store import PersistentModel
from .models import (
    ForecastPeriod,
    ModelConfig,
    ModelMetrics,
    PredictionFactor,
    PredictionRange,
    RevenueBreakdown,
    RevenueDataPoint,
    RevenueForecast,
    TrendDirection,
)


DAY = pd.Timedelta(days=1)

# Monday first
DEFAULT_DAY_OF_WEEK = [0.90, 0.85, 0.85, 0.90, 1.05, 1.30, 1.15]
# January first
DEFAULT_MONTH = [1.0, 0.95, 0.95, 0.98, 1.0, 1.0, 0.95, 0.95, 1.0, 1.05, 1.1, 1.2]
DEFAULT_BREAKDOWN = (0.70, 0.25, 0.05)
REACTIVATED_SHARE = 0.05

PERIOD_DAYS = {ForecastPeriod.WEEKLY: 7, ForecastPeriod.MONTHLY: 30}
DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def _as_points(points) -> List[RevenueDataPoint]:
    return [p if isinstance(p, RevenueDataPoint) else RevenueDataPoint.model_validate(p) for p in points]


class RevenueForecaster(PersistentModel):
    """
    Daily revenue forecaster with scenario analysis.

    Example:
    --------
    >>> forecaster = RevenueForecaster()
    >>> forecaster.train(extractor.extract_revenue_data_points())
    >>> week = forecaster.forecast(7)
    """

    STORE_KEY = "revenue_forecaster_model"
    DEFAULT_CONFIG = ModelConfig(
        min_data_points=30,
        lookback_days=90,
        validation_split=0.2,
        hyperparameters={"recent_weight": 0.5, "trend_epsilon": 0.01, "history_days": 90},
    )
    MONTHLY_SEASONALITY_MIN_DAYS = 90

    def __init__(self, config=None, store=None, verbose: bool = False):
        super().__init__(config, store, verbose)
        self.baseline_revenue = 0.0
        self.trend_slope = 0.0
        self.intercept = 0.0
        self.day_of_week_multipliers: List[float] = list(DEFAULT_DAY_OF_WEEK)
        self.month_multipliers: List[float] = list(DEFAULT_MONTH)
        self.history: List[RevenueDataPoint] = []

    # ------------------------------------------------------------------
    # Forecasting
    # ------------------------------------------------------------------

    def _trend(self, slope: float) -> TrendDirection:
        epsilon = self.hyperparameter("trend_epsilon")
        if slope > epsilon:
            return TrendDirection.GROWING
        if slope < -epsilon:
            return TrendDirection.DECLINING
        return TrendDirection.STABLE

    def _new_user_ratio(self, history: List[RevenueDataPoint]) -> Optional[float]:
        recent = history[-7:]
        dau = sum(p.dau for p in recent)
        if not recent or dau == 0:
            return None
        return sum(p.new_users for p in recent) / dau

    def forecast_single_day(
        self,
        date,
        include_breakdown: bool = True,
        days_ahead: Optional[int] = None,
    ) -> RevenueForecast:
        """
        Forecast revenue for one calendar date.

        Parameters:
        -----------
        date : str, datetime or pd.Timestamp
            Target date
        include_breakdown : bool
            Attach the existing/new/reactivated split
        days_ahead : int, optional
            Distance from today; derived from `date` when omitted
        """
        target = to_timestamp(date)
        if target is None:
            raise ValueError(f"Invalid forecast date: {date!r}")
        target = target.normalize()
        if days_ahead is None:
            days_ahead = int((target - utc_now().normalize()) // DAY)

        with self._lock:
            baseline, slope = self.baseline_revenue, self.trend_slope
            dow_mult = self.day_of_week_multipliers[target.dayofweek]
            month_mult = self.month_multipliers[target.month - 1]
            history = self.history

        trend_value = baseline + slope * days_ahead
        adjusted = trend_value * dow_mult * month_mult
        value = max(0.0, adjusted)

        breakdown = None
        if include_breakdown:
            ratio = self._new_user_ratio(history)
            if ratio is None:
                existing, new, reactivated = DEFAULT_BREAKDOWN
            else:
                new, reactivated = ratio, REACTIVATED_SHARE
                existing = max(0.0, 1 - new - reactivated)
            breakdown = RevenueBreakdown(
                from_existing_payers=value * existing,
                from_new_payers=value * new,
                from_reactivated=value * reactivated,
            )

        return RevenueForecast(
            value=value,
            confidence=max(0.3, 0.9 - 0.02 * days_ahead),
            range=PredictionRange(low=max(0.0, adjusted * 0.7), high=max(0.0, adjusted * 1.3)),
            factors=self._factors(target, dow_mult, month_mult, baseline, slope, days_ahead),
            date=target.strftime("%Y-%m-%d"),
            trend=self._trend(slope),
            breakdown=breakdown,
        )

    @staticmethod
    def _factors(target, dow_mult, month_mult, baseline, slope, days_ahead) -> List[PredictionFactor]:
        factors = []
        day_name = DAY_NAMES[target.dayofweek]
        if dow_mult > 1.1:
            factors.append(PredictionFactor(
                name="Weekend Effect", impact=dow_mult - 1,
                description=f"{day_name} revenue runs {(dow_mult - 1) * 100:.0f}% above average",
            ))
        elif dow_mult < 0.9:
            factors.append(PredictionFactor(
                name="Weekday Dip", impact=dow_mult - 1,
                description=f"{day_name} revenue runs {(1 - dow_mult) * 100:.0f}% below average",
            ))
        if month_mult > 1.05:
            factors.append(PredictionFactor(
                name="Seasonal Peak", impact=month_mult - 1,
                description=f"{target.strftime('%B')} is seasonally strong",
            ))
        if slope > 0.01 or slope < -0.01:
            impact = slope * max(days_ahead, 1) / baseline if baseline > 0 else 0.0
            impact = max(-0.5, min(0.5, impact))
            factors.append(PredictionFactor(
                name="Growth Trend" if slope > 0 else "Declining Trend", impact=impact,
                description=f"Revenue {'rising' if slope > 0 else 'falling'} ~{abs(slope):.2f} per day",
            ))
        if days_ahead > 14:
            factors.append(PredictionFactor(
                name="Long-term Forecast", impact=-0.2,
                description="Uncertainty grows with forecast distance",
            ))
        return factors

    def forecast(self, days: int = 30, include_breakdown: bool = True) -> List[RevenueForecast]:
        """Forecasts for each of the next `days` days, starting tomorrow."""
        today = utc_now().normalize()
        return [
            self.forecast_single_day(today + i * DAY, include_breakdown, days_ahead=i)
            for i in range(1, days + 1)
        ]

    def forecast_period(self, period: Union[ForecastPeriod, str] = ForecastPeriod.WEEKLY) -> Dict[str, Any]:
        """Summed forecast over the next week or month."""
        period = ForecastPeriod(period)
        days = PERIOD_DAYS[period]
        daily = self.forecast(days, include_breakdown=False)

        total = sum(f.value for f in daily)
        baseline_total = self.baseline_revenue * days
        if baseline_total > 0 and total > baseline_total * 1.05:
            trend = TrendDirection.GROWING
        elif baseline_total > 0 and total < baseline_total * 0.95:
            trend = TrendDirection.DECLINING
        else:
            trend = TrendDirection.STABLE

        weekend_days = sum(1 for f in daily if to_timestamp(f.date).dayofweek >= 5)
        factors = [PredictionFactor(
            name="Weekend Days", impact=weekend_days / days,
            description=f"{weekend_days} weekend days in the period",
        )]
        if trend != TrendDirection.STABLE:
            factors.append(PredictionFactor(
                name="Period Trend", impact=(total / baseline_total - 1) if baseline_total > 0 else 0.0,
                description=f"Period revenue {trend.value} versus baseline",
            ))

        return {
            "period": period.value,
            "total": total,
            "range": PredictionRange(low=sum(f.range.low for f in daily), high=sum(f.range.high for f in daily)),
            "confidence": sum(f.confidence for f in daily) / days,
            "trend": trend,
            "factors": factors,
            "daily": daily,
        }

    def what_if(
        self,
        dau_change: float = 0.0,
        arpu_change: float = 0.0,
        conversion_change: float = 0.0,
        days: int = 30,
    ) -> Dict[str, float]:
        """
        Scenario analysis with compounding percentage changes.

        Conversion changes count at half weight.
        """
        baseline = sum(f.value for f in self.forecast(days, include_breakdown=False))
        multiplier = (1 + dau_change / 100) * (1 + arpu_change / 100) * (1 + conversion_change / 100 * 0.5)
        projected = baseline * multiplier
        return {
            "baseline": baseline,
            "projected": projected,
            "difference": projected - baseline,
            "percent_change": (projected - baseline) / baseline * 100 if baseline > 0 else 0.0,
        }

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(self, data: Iterable[Union[RevenueDataPoint, Mapping[str, Any]]]) -> ModelMetrics:
        """
        Fit trend and seasonality from daily revenue history.

        Raises:
        -------
        InsufficientDataError if fewer than min_data_points days
        """
        points = sorted(_as_points(data), key=lambda p: p.date)
        if len(points) < self.config.min_data_points:
            raise InsufficientDataError(self.config.min_data_points, len(points), "days")

        self._log(f"🔄 Training revenue forecaster on {len(points)} days...")
        frame = pd.DataFrame({
            "date": pd.to_datetime([p.date for p in points]),
            "revenue": [p.revenue for p in points],
        })
        revenue = frame["revenue"].to_numpy(dtype=float)
        x = np.arange(len(revenue), dtype=float)
        slope, intercept = np.polyfit(x, revenue, 1)

        # Blend the fitted level at the start of history with the last week
        weight = self.hyperparameter("recent_weight")
        baseline = intercept * (1 - weight) + float(revenue[-7:].mean()) * weight

        avg_revenue = float(revenue.mean())
        dow = list(DEFAULT_DAY_OF_WEEK)
        month = list(DEFAULT_MONTH)
        if avg_revenue > 0:
            ratios = frame["revenue"] / avg_revenue
            by_dow = ratios.groupby(frame["date"].dt.dayofweek).mean()
            dow = [float(by_dow.get(d, 1.0)) for d in range(7)]
            if len(points) >= self.MONTHLY_SEASONALITY_MIN_DAYS:
                by_month = ratios.groupby(frame["date"].dt.month).mean()
                month = [float(by_month.get(m + 1, DEFAULT_MONTH[m])) for m in range(12)]

        with self._lock:
            self.intercept = float(intercept)
            self.trend_slope = float(slope)
            self.baseline_revenue = float(baseline)
            self.day_of_week_multipliers = dow
            self.month_multipliers = month
            self.history = points[-int(self.hyperparameter("history_days")):]

        split = int(len(points) * (1 - self.config.validation_split))
        metrics = self.evaluate(points, start=split)
        metrics.training_data_size = len(points)
        self.metrics = metrics
        self._log(f"  ✅ Revenue forecaster trained: slope={slope:.2f}/day, baseline={baseline:.2f}")
        self.save()
        return metrics

    def evaluate(self, data: Iterable[Union[RevenueDataPoint, Mapping[str, Any]]], start: int = 0) -> ModelMetrics:
        """
        Compare fitted values against actuals from index `start` onward.

        r2 is reported as 1 - MAPE over days with non-zero revenue.
        """
        points = sorted(_as_points(data), key=lambda p: p.date)[start:]
        if not points:
            return ModelMetrics(mse=0.0, mae=0.0, r2=0.0, last_trained=utc_now().isoformat())

        actual, predicted = [], []
        for offset, point in enumerate(points, start=start):
            ts = to_timestamp(point.date)
            fitted = (self.intercept + self.trend_slope * offset) \
                * self.day_of_week_multipliers[ts.dayofweek] * self.month_multipliers[ts.month - 1]
            actual.append(point.revenue)
            predicted.append(max(0.0, fitted))

        actual_arr, predicted_arr = np.array(actual), np.array(predicted)
        nonzero = actual_arr != 0
        mape = float(np.mean(np.abs((actual_arr[nonzero] - predicted_arr[nonzero]) / actual_arr[nonzero]))) \
            if nonzero.any() else 0.0
        return ModelMetrics(
            mse=float(mean_squared_error(actual_arr, predicted_arr)),
            mae=float(mean_absolute_error(actual_arr, predicted_arr)),
            r2=1 - mape,
            last_trained=utc_now().isoformat(),
        )

    def get_feature_importance(self) -> Dict[str, float]:
        return {"trend": 0.4, "day_of_week": 0.3, "month": 0.2, "recent_average": 0.1}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def get_state(self) -> Dict[str, Any]:
        return {
            "baseline_revenue": self.baseline_revenue,
            "trend_slope": self.trend_slope,
            "intercept": self.intercept,
            "day_of_week_multipliers": list(self.day_of_week_multipliers),
            "month_multipliers": list(self.month_multipliers),
            "history": [p.model_dump() for p in self.history],
            "metrics": self.metrics.model_dump() if self.metrics else None,
        }

    def set_state(self, state: Dict[str, Any]) -> None:
        dow = [float(v) for v in state["day_of_week_multipliers"]]
        month = [float(v) for v in state["month_multipliers"]]
        if len(dow) != 7 or len(month) != 12:
            raise ValueError("Seasonal multipliers have the wrong length")
        history = _as_points(state.get("history", []))
        metrics = ModelMetrics.model_validate(state["metrics"]) if state.get("metrics") else None
        with self._lock:
            self.baseline_revenue = float(state["baseline_revenue"])
            self.trend_slope = float(state["trend_slope"])
            self.intercept = float(state.get("intercept", 0.0))
            self.day_of_week_multipliers = dow
            self.month_multipliers = month
            self.history = history
            self.metrics = metrics
