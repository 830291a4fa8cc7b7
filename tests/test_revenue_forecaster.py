"""
Tests for RevenueForecaster
"""
import pandas as pd
import pytest

from game_insights.errors import InsufficientDataError
from game_insights.model_store import InMemoryModelStore
from game_insights.models import RevenueDataPoint, TrendDirection
from game_insights.revenue_forecaster import DEFAULT_MONTH, RevenueForecaster


@pytest.fixture
def trained(daily_revenue):
    forecaster = RevenueForecaster()
    forecaster.train(daily_revenue)
    return forecaster


def _linear_history(days=40, start="2025-01-01"):
    first = pd.Timestamp(start)
    return [
        {"date": (first + pd.Timedelta(days=i)).strftime("%Y-%m-%d"), "revenue": 100 + 10 * i, "dau": 100}
        for i in range(days)
    ]


class TestForecast:
    def test_week_forecast(self, trained):
        week = trained.forecast(7)
        assert len(week) == 7
        for day in week:
            assert day.range.low < day.value < day.range.high
        confidences = [day.confidence for day in week]
        assert all(a > b for a, b in zip(confidences, confidences[1:]))

    def test_confidence_floor(self, trained):
        assert trained.forecast(60)[-1].confidence == pytest.approx(0.3)

    def test_breakdown_uses_recent_new_user_share(self, trained):
        day = trained.forecast(1)[0]
        breakdown = day.breakdown
        assert breakdown.from_new_payers == pytest.approx(day.value * 0.1)
        assert breakdown.from_reactivated == pytest.approx(day.value * 0.05)
        total = breakdown.from_existing_payers + breakdown.from_new_payers + breakdown.from_reactivated
        assert total == pytest.approx(day.value)

    def test_untrained_uses_default_breakdown(self):
        day = RevenueForecaster().forecast_single_day("2030-01-07", days_ahead=1)
        assert day.value == 0
        assert day.date == "2030-01-07"
        assert day.breakdown.from_existing_payers == 0

    def test_without_breakdown(self, trained):
        assert trained.forecast(3, include_breakdown=False)[0].breakdown is None

    def test_invalid_date(self, trained):
        with pytest.raises(ValueError):
            trained.forecast_single_day("not a date")

    def test_period_totals(self, trained):
        period = trained.forecast_period("weekly")
        assert period["period"] == "weekly"
        assert len(period["daily"]) == 7
        assert period["total"] == pytest.approx(sum(d.value for d in period["daily"]))
        assert period["factors"][0].name == "Weekend Days"
        assert period["factors"][0].impact == pytest.approx(2 / 7)


class TestWhatIf:
    def test_changes_compound(self, trained):
        result = trained.what_if(dau_change=10, arpu_change=10, conversion_change=20, days=7)
        assert result["projected"] == pytest.approx(result["baseline"] * 1.1 * 1.1 * 1.1)
        assert result["percent_change"] == pytest.approx(33.1)

    def test_zero_baseline(self):
        assert RevenueForecaster().what_if(dau_change=50)["percent_change"] == 0.0


class TestTraining:
    def test_insufficient_history(self, daily_revenue):
        with pytest.raises(InsufficientDataError):
            RevenueForecaster().train(daily_revenue[:10])

    def test_weekend_multiplier_learned(self, trained):
        multipliers = trained.day_of_week_multipliers
        assert min(multipliers[5], multipliers[6]) > max(multipliers[:5])
        assert trained.month_multipliers == DEFAULT_MONTH

    def test_growth_trend(self):
        forecaster = RevenueForecaster()
        forecaster.train(_linear_history())
        assert forecaster.trend_slope == pytest.approx(10)
        day = forecaster.forecast(20)[-1]
        assert day.trend == TrendDirection.GROWING
        names = [f.name for f in day.factors]
        assert "Growth Trend" in names
        assert "Long-term Forecast" in names

    def test_baseline_blends_intercept_with_last_week(self):
        forecaster = RevenueForecaster()
        forecaster.train(_linear_history())
        assert forecaster.intercept == pytest.approx(100)
        assert forecaster.baseline_revenue == pytest.approx(0.5 * 100 + 0.5 * 460)

    def test_monthly_seasonality_needs_long_history(self):
        forecaster = RevenueForecaster()
        forecaster.train(_linear_history(days=120))
        assert forecaster.month_multipliers != DEFAULT_MONTH

    def test_history_trimmed(self):
        forecaster = RevenueForecaster()
        forecaster.train(_linear_history(days=120))
        assert len(forecaster.history) == 90
        assert forecaster.history[-1].revenue == 100 + 10 * 119

    def test_metrics(self, trained):
        assert trained.metrics.training_data_size == 60
        assert trained.metrics.mae >= 0
        assert trained.metrics.r2 <= 1


class TestPersistence:
    def test_round_trip(self, daily_revenue):
        store = InMemoryModelStore()
        forecaster = RevenueForecaster(store=store)
        forecaster.train(daily_revenue)

        restored = RevenueForecaster(store=store)
        assert restored.load()
        assert restored.baseline_revenue == forecaster.baseline_revenue
        assert restored.history == forecaster.history
        assert restored.forecast(3)[0].value == pytest.approx(forecaster.forecast(3)[0].value)

    def test_corrupt_state_is_rejected(self):
        store = InMemoryModelStore()
        store.put(RevenueForecaster.STORE_KEY, {
            "baseline_revenue": 1.0, "trend_slope": 0.0,
            "day_of_week_multipliers": [1.0] * 3, "month_multipliers": [1.0] * 12,
        })
        forecaster = RevenueForecaster(store=store)
        assert not forecaster.load()
        assert forecaster.baseline_revenue == 0.0

    def test_accepts_dicts(self):
        point = RevenueDataPoint.model_validate({"date": "2025-01-01", "revenue": 5})
        assert point.dau == 0
