"""
Game Insights - Player Analytics Module

This package turns raw game event rows into per-player features and trains
lightweight statistical models on them.

Modules:
- data_processor: Dataset container, column resolution and value coercion
- feature_extractor: Per-user, aggregate and time-series feature extraction
- churn_predictor: Weighted logistic churn scoring
- ltv_predictor: Lifetime value projection and segmentation
- retention_predictor: Power-law retention curves and genre benchmarks
- revenue_forecaster: Trend and seasonality revenue forecasting
- anomaly_model: Streaming z-score anomaly detection
- segmentation_model: Rule-based segments and k-means clustering
- model_store: Model state persistence
- ml_service: Orchestration of training and predictions
- models: Pydantic data models
"""

from .anomaly_model import AnomalyModel
from .churn_predictor import ChurnPredictor
from .data_processor import ColumnResolver, GameDataset
from .errors import InsufficientDataError
from .feature_extractor import FeatureExtractor, UserFeatureTransformer
from .ltv_predictor import LTVPredictor
from .ml_service import MLService
from .model_store import FileModelStore, InMemoryModelStore, ModelStore
from .models import (
    AnomalySeverity,
    AnomalyType,
    LTVSegment,
    PredefinedSegment,
    RiskLevel,
    Sensitivity,
    UserFeatures,
)
from .retention_predictor import RetentionPredictor
from .revenue_forecaster import RevenueForecaster
from .segmentation_model import SegmentationModel

__version__ = "1.0.0"
__all__ = [
    "AnomalyModel",
    "ChurnPredictor",
    "ColumnResolver",
    "GameDataset",
    "InsufficientDataError",
    "FeatureExtractor",
    "UserFeatureTransformer",
    "LTVPredictor",
    "MLService",
    "FileModelStore",
    "InMemoryModelStore",
    "ModelStore",
    "AnomalySeverity",
    "AnomalyType",
    "LTVSegment",
    "PredefinedSegment",
    "RiskLevel",
    "Sensitivity",
    "UserFeatures",
    "RetentionPredictor",
    "RevenueForecaster",
    "SegmentationModel",
]
