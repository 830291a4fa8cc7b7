"""
Pydantic data models for feature records, predictions and model configuration

This module contains every record the extractors and predictors produce or consume,
plus the typed feature accessor table shared by the churn and segmentation models.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Callable, Dict, List, Optional, Union
from enum import Enum
from datetime import datetime


# ============================================================================
# Enums
# ============================================================================

class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class LTVSegment(str, Enum):
    WHALE = "whale"
    DOLPHIN = "dolphin"
    MINNOW = "minnow"
    NON_PAYER = "non_payer"


class AnomalySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AnomalyType(str, Enum):
    SPIKE = "spike"
    DROP = "drop"
    TREND_BREAK = "trend_break"
    PATTERN_CHANGE = "pattern_change"


class Sensitivity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TrendDirection(str, Enum):
    GROWING = "growing"
    STABLE = "stable"
    DECLINING = "declining"


class BenchmarkComparison(str, Enum):
    ABOVE = "above"
    AT = "at"
    BELOW = "below"


class PredefinedSegment(str, Enum):
    WHALE = "whale"
    DOLPHIN = "dolphin"
    MINNOW = "minnow"
    NON_PAYER = "non_payer"
    HIGHLY_ENGAGED = "highly_engaged"
    CASUAL = "casual"
    AT_RISK = "at_risk"
    CHURNED = "churned"
    NEW_USER = "new_user"
    VETERAN = "veteran"


class CriteriaOperator(str, Enum):
    GT = "gt"
    LT = "lt"
    EQ = "eq"
    BETWEEN = "between"
    IN = "in"


class UpdateFrequency(str, Enum):
    REALTIME = "realtime"
    HOURLY = "hourly"
    DAILY = "daily"


class ForecastPeriod(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class FeatureName(str, Enum):
    SESSION_COUNT_7D = "session_count_7d"
    SESSION_COUNT_30D = "session_count_30d"
    SESSION_TREND = "session_trend"
    LAST_SESSION_HOURS_AGO = "last_session_hours_ago"
    AVG_SESSION_LENGTH = "avg_session_length"
    TOTAL_PLAY_TIME = "total_play_time"
    CURRENT_LEVEL = "current_level"
    MAX_LEVEL_REACHED = "max_level_reached"
    PROGRESSION_SPEED = "progression_speed"
    FAILURE_RATE = "failure_rate"
    STUCK_AT_LEVEL = "stuck_at_level"
    TOTAL_SPEND = "total_spend"
    PURCHASE_COUNT = "purchase_count"
    AVG_PURCHASE_VALUE = "avg_purchase_value"
    DAYS_SINCE_LAST_PURCHASE = "days_since_last_purchase"
    IS_PAYER = "is_payer"
    DAYS_ACTIVE = "days_active"
    DAYS_SINCE_FIRST_SESSION = "days_since_first_session"
    WEEKLY_ACTIVE_RATIO = "weekly_active_ratio"
    PEAK_PLAY_HOUR = "peak_play_hour"


# ============================================================================
# Input Models
# ============================================================================

class ColumnMapping(BaseModel):
    """Declared mapping from a dataset column to a canonical role"""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    original_name: str = Field(..., alias="originalName", description="Column name in the raw rows")
    canonical_name: str = Field(..., alias="canonicalName", description="Canonical role, e.g. user_id")


class MetricDataPoint(BaseModel):
    """Single observation of a named metric"""
    timestamp: Union[datetime, str]
    value: float
    metric: Optional[str] = None


class TimeSeriesPoint(BaseModel):
    date: str
    value: float


class RevenueDataPoint(BaseModel):
    """Daily revenue observation used to train the forecaster"""
    date: str
    revenue: float
    dau: int = 0
    new_users: int = 0
    payers: int = 0
    arpu: Optional[float] = None
    arppu: Optional[float] = None


class CohortData(BaseModel):
    """Observed retention for one acquisition cohort"""
    cohort_date: str
    cohort_size: int
    retention_by_day: Dict[int, float] = Field(default_factory=dict)


class ChurnTrainingSample(BaseModel):
    features: "UserFeatures"
    churned: bool


class LTVTrainingSample(BaseModel):
    features: "UserFeatures"
    actual_ltv: float


# ============================================================================
# Feature Records
# ============================================================================

class UserFeatures(BaseModel):
    """Immutable per-user feature snapshot"""
    model_config = ConfigDict(frozen=True)

    user_id: str
    cohort: str

    # Activity
    session_count_7d: int = 0
    session_count_30d: int = 0
    session_trend: float = 0.0
    last_session_hours_ago: float = 999.0
    avg_session_length: float = 0.0
    total_play_time: float = 0.0

    # Progression
    current_level: float = 1.0
    max_level_reached: float = 1.0
    progression_speed: float = 0.0
    failure_rate: float = 0.0
    stuck_at_level: bool = False

    # Monetization
    total_spend: float = 0.0
    purchase_count: int = 0
    avg_purchase_value: float = 0.0
    days_since_last_purchase: float = 999.0
    is_payer: bool = False

    # Engagement
    days_active: int = 0
    days_since_first_session: int = 0
    weekly_active_ratio: float = 0.0
    peak_play_hour: int = 12
    feature_usage: Dict[str, int] = Field(default_factory=dict)

    # Social
    friend_count: Optional[int] = None
    guild_member: Optional[bool] = None
    pvp_participation: Optional[float] = None

    def value_of(self, name: Union[FeatureName, str]) -> float:
        """Numeric value of a named feature (booleans as 1/0)."""
        return FEATURE_ACCESSORS[FeatureName(name)](self)


def _numeric(attr: str) -> Callable[[UserFeatures], float]:
    return lambda features: float(getattr(features, attr))


FEATURE_ACCESSORS: Dict[FeatureName, Callable[[UserFeatures], float]] = {
    name: _numeric(name.value) for name in FeatureName
}


class AggregateFeatures(BaseModel):
    """Game-wide metrics for the reference day"""
    date: str
    day_of_week: int
    is_weekend: bool

    dau: int = 0
    wau: int = 0
    mau: int = 0
    new_users: int = 0
    returning_users: int = 0

    d1_retention: float = 0.0
    d7_retention: float = 0.0
    d30_retention: float = 0.0

    revenue: float = 0.0
    arpu: float = 0.0
    arppu: float = 0.0
    payer_conversion_rate: float = 0.0

    avg_session_length: float = 300.0
    avg_sessions_per_user: float = 0.0
    avg_level_reached: float = 1.0


# ============================================================================
# Prediction Models
# ============================================================================

class PredictionFactor(BaseModel):
    name: str
    impact: float
    description: str


class PredictionRange(BaseModel):
    low: float
    high: float


class Prediction(BaseModel):
    """Base prediction envelope"""
    value: float
    confidence: float
    range: PredictionRange
    factors: List[PredictionFactor] = Field(default_factory=list)


class ChurnPrediction(Prediction):
    risk_level: RiskLevel
    days_until_churn: Optional[int] = None
    prevention_actions: List[str] = Field(default_factory=list)


class UserChurnPrediction(ChurnPrediction):
    user_id: str


class LTVPrediction(Prediction):
    segment: LTVSegment
    projected_30d: float
    projected_90d: float
    projected_365d: float


class UserLTVPrediction(LTVPrediction):
    user_id: str


class RetentionCurvePoint(BaseModel):
    day: int
    retention: float
    predicted: bool = False


class RetentionPrediction(Prediction):
    day: int
    retention_curve: List[RetentionCurvePoint] = Field(default_factory=list)
    benchmark_comparison: BenchmarkComparison


class RevenueBreakdown(BaseModel):
    from_existing_payers: float
    from_new_payers: float
    from_reactivated: float


class RevenueForecast(Prediction):
    date: str
    trend: TrendDirection
    breakdown: Optional[RevenueBreakdown] = None


class Anomaly(BaseModel):
    """Detected deviation of a metric from its learned profile"""
    model_config = ConfigDict(frozen=True)

    id: str
    metric: str
    timestamp: str
    value: float
    expected_value: float
    expected_range: PredictionRange
    severity: AnomalySeverity
    type: AnomalyType
    deviation: float
    possible_causes: List[str] = Field(default_factory=list)


class MetricProfile(BaseModel):
    """Learned statistics for one metric; updated by replacement"""
    model_config = ConfigDict(frozen=True)

    metric: str
    mean: float
    std: float
    min: float
    max: float
    day_of_week_means: List[float]
    hour_of_day_means: List[float]
    recent_trend: float = 0.0
    volatility: float = 0.0


class SegmentCriteria(BaseModel):
    """A single condition on a user feature"""
    feature: FeatureName
    operator: CriteriaOperator
    value: Union[float, List[float]]


class UserSegment(BaseModel):
    id: str
    name: str
    description: str
    criteria: List[SegmentCriteria] = Field(default_factory=list)
    user_count: int = 0
    percentage: float = 0.0
    characteristics: Dict[str, float] = Field(default_factory=dict)


class ClusterCenter(BaseModel):
    cluster_id: int
    center: Dict[str, float]
    user_count: int


# ============================================================================
# Model Configuration & Status
# ============================================================================

class ModelConfig(BaseModel):
    """Shared model configuration"""
    min_data_points: int = Field(default=100, ge=0)
    lookback_days: int = Field(default=30, ge=1)
    validation_split: float = Field(default=0.2, gt=0, lt=1)
    confidence_threshold: float = Field(default=0.7, ge=0, le=1)
    update_frequency: UpdateFrequency = UpdateFrequency.DAILY
    hyperparameters: Dict[str, float] = Field(default_factory=dict)


class ModelMetrics(BaseModel):
    """Evaluation metrics; only the fields relevant to a model are populated"""
    accuracy: Optional[float] = None
    precision: Optional[float] = None
    recall: Optional[float] = None
    f1_score: Optional[float] = None
    auc: Optional[float] = None
    mse: Optional[float] = None
    mae: Optional[float] = None
    r2: Optional[float] = None
    silhouette: Optional[float] = None
    last_trained: Optional[str] = None
    training_data_size: Optional[int] = None


class ModelStatus(BaseModel):
    name: str
    trained: bool
    metrics: Optional[ModelMetrics] = None
    error: Optional[str] = None


ChurnTrainingSample.model_rebuild()
LTVTrainingSample.model_rebuild()
