"""Independent price predictors combined by the forecast ensemble."""

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from backtesting.backtest_engine import Trade, days_between

from .features import FeatureVector, daily_returns, linear_regression

logger = logging.getLogger(__name__)

REGRESSION_WINDOW = 90
PERCENTILE_LEVELS = (0.05, 0.25, 0.50, 0.75, 0.95)
HISTOGRAM_BUCKETS = 20
SAMPLE_PATHS = 100
PATTERN_LOOKBACK_YEARS = 2


# ---------------------------------------------------------------- linear

@dataclass(frozen=True)
class Band:
    lower: Tuple[float, ...]
    upper: Tuple[float, ...]


@dataclass(frozen=True)
class LinearPrediction:
    """OLS trend projection with residual-based confidence bands."""
    predictions: Tuple[float, ...]
    confidence68: Band
    confidence95: Band
    slope: float
    intercept: float
    r2: float
    standard_error: float
    trend: str
    strength: float

    @property
    def final_price(self) -> float:
        return self.predictions[-1]


def linear_regression_prediction(closes: Sequence[float], days: int = 30,
                                 window: int = REGRESSION_WINDOW) -> LinearPrediction:
    """Project the trailing ``window`` closes forward ``days`` points.

    Bands are +/-1 and +/-2 residual standard errors around each projection.
    """
    recent = np.asarray(closes[-window:], dtype=float)
    slope, intercept, r2 = linear_regression(recent)

    n = recent.size
    future_x = np.arange(n, n + days)
    predictions = intercept + slope * future_x

    fitted = intercept + slope * np.arange(n)
    residuals = recent - fitted
    standard_error = float(np.sqrt((residuals ** 2).sum() / (n - 2))) if n > 2 else 0.0

    if slope > 0:
        trend = 'bullish'
    elif slope < 0:
        trend = 'bearish'
    else:
        trend = 'neutral'

    return LinearPrediction(
        predictions=tuple(predictions.tolist()),
        confidence68=Band(
            lower=tuple((predictions - standard_error).tolist()),
            upper=tuple((predictions + standard_error).tolist()),
        ),
        confidence95=Band(
            lower=tuple((predictions - 2 * standard_error).tolist()),
            upper=tuple((predictions + 2 * standard_error).tolist()),
        ),
        slope=slope,
        intercept=intercept,
        r2=r2,
        standard_error=standard_error,
        trend=trend,
        strength=abs(slope) * days,
    )


# ----------------------------------------------------------- monte carlo

@dataclass(frozen=True)
class Percentiles:
    p5: float
    p25: float
    p50: float
    p75: float
    p95: float


@dataclass(frozen=True)
class HistogramBucket:
    low: float
    high: float
    count: int
    probability: float


@dataclass(frozen=True)
class MonteCarloResult:
    """Distribution of simulated terminal prices."""
    current_price: float
    mean_return: float
    std_return: float
    percentiles: Percentiles
    avg_path: Tuple[float, ...]
    expected_return: float
    value_at_risk_95: float
    histogram: Tuple[HistogramBucket, ...]
    sample_paths: Tuple[Tuple[float, ...], ...]
    terminal_prices: Tuple[float, ...] = field(repr=False)
    path_max_drawdowns: Tuple[float, ...] = field(repr=False)


def box_muller(rng: np.random.Generator, size) -> np.ndarray:
    """Standard normal draws from pairs of uniforms via the Box-Muller transform."""
    # 1 - U keeps u1 in (0, 1] so the log is finite
    u1 = 1.0 - rng.random(size)
    u2 = rng.random(size)
    return np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)


def build_histogram(values: np.ndarray, buckets: int = HISTOGRAM_BUCKETS) -> Tuple[HistogramBucket, ...]:
    counts, edges = np.histogram(values, bins=buckets)
    total = values.size
    return tuple(
        HistogramBucket(
            low=float(edges[i]),
            high=float(edges[i + 1]),
            count=int(counts[i]),
            probability=float(counts[i] / total),
        )
        for i in range(buckets)
    )


def monte_carlo_simulation(closes: Sequence[float], days: int = 30, iterations: int = 1000,
                           rng: Optional[np.random.Generator] = None) -> MonteCarloResult:
    """Simulate ``iterations`` price paths of ``days`` steps.

    Daily returns are drawn from a normal distribution with the historical
    mean and standard deviation of the whole series, and compounded from the
    latest close.

    Args:
        closes: Historical closes
        days: Horizon in trading days
        iterations: Number of independent paths
        rng: Random source; pass a seeded generator for reproducible runs

    Returns:
        MonteCarloResult
    """
    rng = np.random.default_rng(rng)
    returns = daily_returns(closes)
    mean_return = float(returns.mean()) if returns.size else 0.0
    std_return = float(returns.std()) if returns.size else 0.0
    current_price = float(closes[-1])

    simulated = mean_return + box_muller(rng, (iterations, days)) * std_return
    growth = np.cumprod(1.0 + simulated, axis=1)
    paths = current_price * np.hstack([np.ones((iterations, 1)), growth])

    terminal = np.sort(paths[:, -1])
    p5, p25, p50, p75, p95 = (
        float(terminal[min(int(math.floor(iterations * q)), iterations - 1)])
        for q in PERCENTILE_LEVELS
    )

    running_peak = np.maximum.accumulate(paths, axis=1)
    drawdowns = ((running_peak - paths) / running_peak).max(axis=1) * 100

    logger.debug(f"Monte Carlo: {iterations} paths, mu={mean_return:.5f}, sigma={std_return:.5f}")

    return MonteCarloResult(
        current_price=current_price,
        mean_return=mean_return,
        std_return=std_return,
        percentiles=Percentiles(p5=p5, p25=p25, p50=p50, p75=p75, p95=p95),
        avg_path=tuple(paths.mean(axis=0).tolist()),
        expected_return=(p50 - current_price) / current_price * 100,
        value_at_risk_95=(current_price - p5) / current_price * 100,
        histogram=build_histogram(terminal),
        sample_paths=tuple(tuple(p) for p in paths[:SAMPLE_PATHS].tolist()),
        terminal_prices=tuple(terminal.tolist()),
        path_max_drawdowns=tuple(drawdowns.tolist()),
    )


# --------------------------------------------------------------- pattern

@dataclass(frozen=True)
class PatternPrediction:
    """Outcome statistics of recent historical trades."""
    available: bool
    message: str = ""
    predicted_price: Optional[float] = None
    expected_change: Optional[float] = None
    confidence: Optional[float] = None
    based_on_trades: int = 0
    win_rate: Optional[float] = None
    avg_profit: Optional[float] = None
    median_profit: Optional[float] = None
    best_case: Optional[float] = None
    worst_case: Optional[float] = None
    distribution: Dict[str, int] = field(default_factory=dict)


def recent_trades(trades: Iterable[Trade], reference_date: date,
                  years: int = PATTERN_LOOKBACK_YEARS) -> list:
    """Closed trades entered within ``years`` before ``reference_date``."""
    cutoff = (pd.Timestamp(reference_date) - pd.DateOffset(years=years)).date()
    return [
        t for t in trades
        if t.pl_percent is not None and t.exit_date is not None and t.entry_date > cutoff
    ]


def pattern_based_prediction(current_price: float, reference_date: date,
                             trades: Iterable[Trade]) -> PatternPrediction:
    """Predict from the median outcome of recent historical trades.

    Args:
        current_price: Latest close
        reference_date: Date of the latest candle; the lookback ends here
        trades: Historical trades for the instrument

    Returns:
        PatternPrediction, unavailable when no recent closed trades exist
    """
    similar = recent_trades(trades or [], reference_date)
    if not similar:
        return PatternPrediction(
            available=False,
            message='No historical trades in the last 2 years',
        )

    outcomes = np.array([t.pl_percent for t in similar], dtype=float)
    win_rate = float((outcomes > 0).mean())
    median_profit = float(np.median(outcomes))
    avg_holding = float(np.mean([days_between(t.entry_date, t.exit_date) for t in similar]))

    return PatternPrediction(
        available=True,
        message=(
            f"Based on {len(similar)} trades over the last 2 years, "
            f"average holding period was {round(avg_holding)} days"
        ),
        predicted_price=current_price * (1 + median_profit / 100),
        expected_change=median_profit,
        confidence=win_rate * 100,
        based_on_trades=len(similar),
        win_rate=win_rate * 100,
        avg_profit=float(outcomes.mean()),
        median_profit=median_profit,
        best_case=float(outcomes.max()),
        worst_case=float(outcomes.min()),
        distribution={
            'positive': int((outcomes > 0).sum()),
            'negative': int((outcomes < 0).sum()),
            'neutral': int((outcomes == 0).sum()),
        },
    )


# ------------------------------------------------------------- technical

@dataclass(frozen=True)
class IndicatorReading:
    """Latest DTI values supplied by the indicator calculator."""
    daily: float
    weekly: Optional[float] = None


@dataclass(frozen=True)
class Signal:
    indicator: str
    signal: str
    strength: str
    bullish: bool
    points: int


@dataclass(frozen=True)
class TechnicalAnalysis:
    overall_signal: str
    signal_strength: str
    bullish_percent: float
    bearish_percent: float
    signals: Tuple[Signal, ...]
    recommendation: str


def _generate_recommendation(signal: str, strength: str, features: FeatureVector) -> str:
    if signal == 'BULLISH':
        return (
            f"{strength} bullish signal detected. Consider entering a long position with "
            f"stop loss below support at ${features.support:.2f} and "
            f"target near resistance at ${features.resistance:.2f}"
        )
    if signal == 'BEARISH':
        return (
            f"{strength} bearish signal detected. Consider avoiding new positions or "
            f"setting tight stop losses. Wait for better entry conditions."
        )
    return (
        f"Neutral signal - market is consolidating. Wait for a clearer trend to emerge "
        f"before taking a position. Key levels: Support ${features.support:.2f}, "
        f"Resistance ${features.resistance:.2f}"
    )


def technical_indicator_analysis(features: FeatureVector,
                                 reading: Optional[IndicatorReading] = None) -> TechnicalAnalysis:
    """Score independent technical signals into a bullish percentage.

    Strong signals score 2 points and moderate ones 1.
    """
    signals = []

    def add(indicator: str, text: str, strength: str, bullish: bool):
        signals.append(Signal(indicator, text, strength, bullish, 2 if strength == 'Strong' else 1))

    # Trend
    if features.trend30 > 0 and features.trend60 > 0:
        add('Trend', 'Bullish', 'Strong', True)
    elif features.trend30 > 0:
        add('Trend', 'Bullish', 'Moderate', True)
    elif features.trend30 < 0 and features.trend60 < 0:
        add('Trend', 'Bearish', 'Strong', False)
    elif features.trend30 < 0:
        add('Trend', 'Bearish', 'Moderate', False)

    # Moving average stacking
    if features.sma7 > features.sma14 > features.sma30:
        add('MA Alignment', 'Bullish', 'Strong', True)
    elif features.sma7 < features.sma14 < features.sma30:
        add('MA Alignment', 'Bearish', 'Strong', False)

    # RSI
    if features.rsi14 < 30:
        add('RSI', 'Oversold (Bullish)', 'Strong', True)
    elif features.rsi14 < 40:
        add('RSI', 'Oversold (Bullish)', 'Moderate', True)
    elif features.rsi14 > 70:
        add('RSI', 'Overbought (Bearish)', 'Strong', False)
    elif features.rsi14 > 60:
        add('RSI', 'Overbought (Bearish)', 'Moderate', False)

    # DTI
    if reading is not None:
        if reading.daily < 0:
            add('DTI', 'Buy Signal', 'Strong', True)
        if reading.weekly is not None and reading.weekly < 0:
            add('Weekly DTI', 'Buy Signal', 'Strong', True)

    # Volume confirms the prevailing trend
    if features.volume_ratio > 1.5:
        rising = features.trend30 > 0
        add('Volume', f"High volume {'Bullish' if rising else 'Bearish'}", 'Moderate', rising)

    # Price position in 30-day range
    if features.price_position < 0.3:
        add('Price Position', 'Near support (Bullish)', 'Moderate', True)
    elif features.price_position > 0.7:
        add('Price Position', 'Near resistance (Bearish)', 'Moderate', False)

    bullish_points = sum(s.points for s in signals if s.bullish)
    bearish_points = sum(s.points for s in signals if not s.bullish)
    total = bullish_points + bearish_points
    bullish_percent = bullish_points / total * 100 if total > 0 else 50.0

    overall = 'NEUTRAL'
    strength = 'Weak'
    if bullish_percent > 70:
        overall = 'BULLISH'
        strength = 'Very Strong' if bullish_percent > 85 else 'Strong'
    elif bullish_percent < 30:
        overall = 'BEARISH'
        strength = 'Very Strong' if bullish_percent < 15 else 'Strong'
    elif bullish_percent > 60 or bullish_percent < 40:
        strength = 'Moderate'

    return TechnicalAnalysis(
        overall_signal=overall,
        signal_strength=strength,
        bullish_percent=bullish_percent,
        bearish_percent=100 - bullish_percent,
        signals=tuple(signals),
        recommendation=_generate_recommendation(overall, strength, features),
    )
