"""Price forecasting: feature extraction, predictors and the forecast ensemble."""

import logging

from .features import (
    FeatureVector,
    extract_features
)

from .predictors import (
    IndicatorReading,
    linear_regression_prediction,
    monte_carlo_simulation,
    pattern_based_prediction,
    technical_indicator_analysis
)

from .ensemble import (
    ForecastEngine,
    ForecastResult,
    MIN_FORECAST_CANDLES,
    calculate_prediction_confidence,
    calculate_risk_metrics,
    classify_prediction,
    ensemble_prediction,
    forecast
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    'FeatureVector',
    'extract_features',
    'IndicatorReading',
    'linear_regression_prediction',
    'monte_carlo_simulation',
    'pattern_based_prediction',
    'technical_indicator_analysis',
    'ForecastEngine',
    'ForecastResult',
    'MIN_FORECAST_CANDLES',
    'calculate_prediction_confidence',
    'calculate_risk_metrics',
    'classify_prediction',
    'ensemble_prediction',
    'forecast'
]
