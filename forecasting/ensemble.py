"""Forecast ensemble combining the individual predictors into one result."""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Union

import numpy as np

from backtesting.backtest_engine import Trade
from backtesting.data_manager import Candle
from dtitrader.exceptions import InsufficientDataError, InvalidInputError

from .features import FeatureVector, TRADING_DAYS_PER_YEAR, extract_features
from .predictors import (
    IndicatorReading,
    LinearPrediction,
    MonteCarloResult,
    PatternPrediction,
    TechnicalAnalysis,
    linear_regression_prediction,
    monte_carlo_simulation,
    pattern_based_prediction,
    technical_indicator_analysis,
)

logger = logging.getLogger(__name__)

MIN_FORECAST_CANDLES = 90
DEFAULT_HORIZON = 30
DEFAULT_ITERATIONS = 1000
DEFAULT_RISK_FREE_RATE = 0.0025

LINEAR_WEIGHT = 0.3
MONTE_CARLO_WEIGHT = 0.4
PATTERN_WEIGHT = 0.3


@dataclass(frozen=True)
class PriceRange:
    low: float
    mid: float
    high: float
    extreme_low: float
    extreme_high: float


@dataclass(frozen=True)
class Classification:
    label: str
    color: str


@dataclass(frozen=True)
class EnsemblePrediction:
    """Weighted combination of the linear, Monte Carlo and pattern prices."""
    predicted_price: float
    expected_return_percent: float
    price_range: PriceRange
    classification: Classification
    weights: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class PredictionConfidence:
    score: float
    level: str
    factors: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class RiskScenario:
    name: str
    price: float
    probability: int
    description: str


@dataclass(frozen=True)
class RiskMetrics:
    value_at_risk_95: float
    expected_shortfall: float
    max_drawdown: float
    sharpe_ratio: float
    scenarios: tuple = ()


def classify_prediction(expected_return: float) -> Classification:
    """Bucket an expected return percent into a labelled outlook."""
    if expected_return > 5:
        return Classification('Strong Bullish', 'green')
    if expected_return > 2:
        return Classification('Moderate Bullish', 'light-green')
    if expected_return < -5:
        return Classification('Strong Bearish', 'red')
    if expected_return < -2:
        return Classification('Moderate Bearish', 'light-red')
    return Classification('Neutral', 'gray')


def ensemble_prediction(linear: LinearPrediction, monte_carlo: MonteCarloResult,
                        pattern: PatternPrediction) -> EnsemblePrediction:
    """Combine the predictors with fit- and confidence-scaled weights.

    Linear carries 0.3 x R2, Monte Carlo a flat 0.4 and the pattern
    predictor 0.3 x confidence/100 when it is available. The weighted sum is
    normalized by the weights actually applied.

    Args:
        linear: Linear trend projection
        monte_carlo: Simulation result
        pattern: Historical trade outcome prediction

    Returns:
        EnsemblePrediction
    """
    weights = {
        'linear': LINEAR_WEIGHT * linear.r2,
        'monte_carlo': MONTE_CARLO_WEIGHT,
    }
    prices = {
        'linear': linear.final_price,
        'monte_carlo': monte_carlo.percentiles.p50,
    }
    if pattern.available:
        weights['pattern'] = PATTERN_WEIGHT * pattern.confidence / 100
        prices['pattern'] = pattern.predicted_price

    total_weight = sum(weights.values())
    if total_weight > 0:
        predicted_price = sum(prices[k] * w for k, w in weights.items()) / total_weight
    else:
        predicted_price = monte_carlo.percentiles.p50

    current_price = monte_carlo.current_price
    expected_return = (predicted_price - current_price) / current_price * 100
    pct = monte_carlo.percentiles

    return EnsemblePrediction(
        predicted_price=predicted_price,
        expected_return_percent=expected_return,
        price_range=PriceRange(
            low=pct.p25,
            mid=predicted_price,
            high=pct.p75,
            extreme_low=pct.p5,
            extreme_high=pct.p95,
        ),
        classification=classify_prediction(expected_return),
        weights=weights,
    )


def calculate_prediction_confidence(features: FeatureVector, linear: LinearPrediction,
                                    technical: TechnicalAnalysis,
                                    candle_count: int) -> PredictionConfidence:
    """Score how much the forecast can be trusted, from 0 to 100."""
    factors = {
        'trend_fit': min(linear.r2 * 25, 25),
        'low_volatility': max(0.0, 20 - features.volatility30 * 2),
        'data_quality': 15 * min(1.0, candle_count / TRADING_DAYS_PER_YEAR),
        'trend_strength': min(abs(features.trend30) * 100, 20),
        'indicator_agreement': abs(technical.bullish_percent - 50) / 50 * 20,
    }
    score = min(sum(factors.values()), 100.0)

    if score > 75:
        level = 'High'
    elif score > 50:
        level = 'Medium'
    else:
        level = 'Low'

    return PredictionConfidence(score=score, level=level, factors=factors)


def calculate_risk_metrics(monte_carlo: MonteCarloResult,
                           risk_free_rate: float = DEFAULT_RISK_FREE_RATE) -> RiskMetrics:
    """Tail-risk and return/volatility statistics of the simulated paths.

    Args:
        monte_carlo: Simulation result with retained terminal prices
        risk_free_rate: Per-horizon risk-free return subtracted in the Sharpe ratio

    Returns:
        RiskMetrics
    """
    current_price = monte_carlo.current_price
    terminal = np.sort(np.asarray(monte_carlo.terminal_prices, dtype=float))

    tail_count = max(1, math.ceil(terminal.size * 0.05))
    tail_mean = float(terminal[:tail_count].mean())
    expected_shortfall = (current_price - tail_mean) / current_price * 100

    max_drawdown = float(np.mean(monte_carlo.path_max_drawdowns))

    terminal_returns = (terminal - current_price) / current_price
    std = float(terminal_returns.std())
    sharpe = (float(terminal_returns.mean()) - risk_free_rate) / std if std > 0 else 0.0

    pct = monte_carlo.percentiles
    scenarios = (
        RiskScenario('Bearish', pct.p5, 5, 'Worst case scenario (5th percentile)'),
        RiskScenario('Moderate', pct.p50, 50, 'Most likely scenario (median)'),
        RiskScenario('Bullish', pct.p95, 95, 'Best case scenario (95th percentile)'),
    )

    return RiskMetrics(
        value_at_risk_95=monte_carlo.value_at_risk_95,
        expected_shortfall=expected_shortfall,
        max_drawdown=max_drawdown,
        sharpe_ratio=sharpe,
        scenarios=scenarios,
    )


@dataclass(frozen=True)
class ForecastResult:
    """Complete forecast for one instrument."""
    linear: LinearPrediction
    monte_carlo: MonteCarloResult
    pattern: PatternPrediction
    technical: TechnicalAnalysis
    ensemble: EnsemblePrediction
    confidence: PredictionConfidence
    risk_metrics: RiskMetrics
    features: FeatureVector
    generated_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        """Summary suitable for JSON; bulk path arrays are omitted."""
        mc = self.monte_carlo
        return {
            'generated_at': self.generated_at.isoformat() if self.generated_at else None,
            'current_price': mc.current_price,
            'ensemble': {
                'predicted_price': self.ensemble.predicted_price,
                'expected_return_percent': self.ensemble.expected_return_percent,
                'price_range': vars(self.ensemble.price_range).copy(),
                'classification': self.ensemble.classification.label,
                'weights': dict(self.ensemble.weights),
            },
            'linear': {
                'final_price': self.linear.final_price,
                'slope': self.linear.slope,
                'r2': self.linear.r2,
                'standard_error': self.linear.standard_error,
                'trend': self.linear.trend,
                'strength': self.linear.strength,
            },
            'monte_carlo': {
                'percentiles': vars(mc.percentiles).copy(),
                'expected_return': mc.expected_return,
                'value_at_risk_95': mc.value_at_risk_95,
            },
            'pattern': {
                'available': self.pattern.available,
                'message': self.pattern.message,
                'predicted_price': self.pattern.predicted_price,
                'confidence': self.pattern.confidence,
                'based_on_trades': self.pattern.based_on_trades,
            },
            'technical': {
                'overall_signal': self.technical.overall_signal,
                'signal_strength': self.technical.signal_strength,
                'bullish_percent': self.technical.bullish_percent,
                'recommendation': self.technical.recommendation,
            },
            'confidence': {
                'score': self.confidence.score,
                'level': self.confidence.level,
                'factors': dict(self.confidence.factors),
            },
            'risk_metrics': {
                'value_at_risk_95': self.risk_metrics.value_at_risk_95,
                'expected_shortfall': self.risk_metrics.expected_shortfall,
                'max_drawdown': self.risk_metrics.max_drawdown,
                'sharpe_ratio': self.risk_metrics.sharpe_ratio,
            },
        }


IndicatorInput = Union[IndicatorReading, float, int, None]


def _coerce_reading(current_indicator: IndicatorInput) -> Optional[IndicatorReading]:
    if current_indicator is None or isinstance(current_indicator, IndicatorReading):
        return current_indicator
    return IndicatorReading(daily=float(current_indicator))


class ForecastEngine:
    """Runs every predictor over a candle history and combines them."""

    def __init__(self, horizon: int = DEFAULT_HORIZON, iterations: int = DEFAULT_ITERATIONS,
                 risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
                 rng: Optional[np.random.Generator] = None):
        if horizon < 1:
            raise InvalidInputError("horizon must be at least 1 day")
        if iterations < 1:
            raise InvalidInputError("iterations must be at least 1")
        self.horizon = horizon
        self.iterations = iterations
        self.risk_free_rate = risk_free_rate
        self.rng = np.random.default_rng(rng)

    def forecast(self, candles: Sequence[Candle], historical_trades: Optional[List[Trade]] = None,
                 current_indicator: IndicatorInput = None,
                 generated_at: Optional[datetime] = None) -> ForecastResult:
        """Produce a forecast for the bar after the last candle.

        Args:
            candles: Date-ordered candles, at least 90
            historical_trades: Past trades for the pattern predictor
            current_indicator: Latest DTI reading, or a bare daily value
            generated_at: Timestamp to stamp on the result, if any

        Returns:
            ForecastResult

        Raises:
            InsufficientDataError: With fewer than 90 candles
        """
        if len(candles) < MIN_FORECAST_CANDLES:
            raise InsufficientDataError(
                f"Forecasting needs at least {MIN_FORECAST_CANDLES} candles, got {len(candles)}"
            )

        closes = [c.close for c in candles]
        features = extract_features(candles)
        reading = _coerce_reading(current_indicator)

        linear = linear_regression_prediction(closes, self.horizon)
        monte_carlo = monte_carlo_simulation(closes, self.horizon, self.iterations, self.rng)
        pattern = pattern_based_prediction(features.current_price, candles[-1].date,
                                           historical_trades or [])
        technical = technical_indicator_analysis(features, reading)

        ensemble = ensemble_prediction(linear, monte_carlo, pattern)
        confidence = calculate_prediction_confidence(features, linear, technical, len(candles))
        risk = calculate_risk_metrics(monte_carlo, self.risk_free_rate)

        logger.info(
            f"Forecast {self.horizon}d: {ensemble.predicted_price:.2f} "
            f"({ensemble.expected_return_percent:+.2f}%, {ensemble.classification.label}), "
            f"confidence {confidence.level}"
        )

        return ForecastResult(
            linear=linear,
            monte_carlo=monte_carlo,
            pattern=pattern,
            technical=technical,
            ensemble=ensemble,
            confidence=confidence,
            risk_metrics=risk,
            features=features,
            generated_at=generated_at,
        )


def forecast(candles: Sequence[Candle], historical_trades: Optional[List[Trade]] = None,
             current_indicator: IndicatorInput = None, *, horizon: int = DEFAULT_HORIZON,
             iterations: int = DEFAULT_ITERATIONS, rng: Optional[np.random.Generator] = None,
             risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
             generated_at: Optional[datetime] = None) -> ForecastResult:
    """Convenience function to forecast ``horizon`` days past ``candles``."""
    engine = ForecastEngine(horizon=horizon, iterations=iterations,
                            risk_free_rate=risk_free_rate, rng=rng)
    return engine.forecast(candles, historical_trades, current_indicator, generated_at)
