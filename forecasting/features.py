"""Technical feature extraction for price forecasting."""

import math
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
from scipy import stats

from backtesting.data_manager import Candle

FEATURE_WINDOW = 90
TRADING_DAYS_PER_YEAR = 252


@dataclass(frozen=True)
class FeatureVector:
    """Point-in-time technical snapshot of the most recent candle."""
    current_price: float
    trend30: float
    trend60: float
    trend90: float
    sma7: float
    sma14: float
    sma30: float
    sma50: float
    volatility14: float
    volatility30: float
    rsi14: float
    momentum10: float
    volume_trend: float
    volume_ratio: float
    support: float
    resistance: float
    price_position: float


def linear_regression(values: Sequence[float]) -> Tuple[float, float, float]:
    """Ordinary least squares fit of ``values`` against their index.

    Returns:
        (slope, intercept, r_squared); r_squared is 0 for a flat series
    """
    y = np.asarray(values, dtype=float)
    if y.size < 2:
        return 0.0, float(y[0]) if y.size else 0.0, 0.0

    if np.ptp(y) == 0:
        return 0.0, float(y[0]), 0.0

    x = np.arange(y.size)
    fit = stats.linregress(x, y)
    r_squared = float(fit.rvalue ** 2)
    if not math.isfinite(r_squared):
        r_squared = 0.0
    return float(fit.slope), float(fit.intercept), r_squared


def calculate_slope(values: Sequence[float]) -> float:
    slope, _, _ = linear_regression(values)
    return slope


def sma(values: Sequence[float], period: int) -> float:
    """Mean of the last ``period`` values, or the latest value if too short."""
    if len(values) < period:
        return float(values[-1])
    return float(np.mean(values[-period:]))


def daily_returns(values: Sequence[float]) -> np.ndarray:
    """Simple returns between consecutive values."""
    prices = np.asarray(values, dtype=float)
    if prices.size < 2:
        return np.array([], dtype=float)
    return np.diff(prices) / prices[:-1]


def calculate_volatility(values: Sequence[float]) -> float:
    """Annualized standard deviation of daily returns."""
    returns = daily_returns(values)
    if returns.size == 0:
        return 0.0
    return float(np.std(returns) * math.sqrt(TRADING_DAYS_PER_YEAR))


def calculate_rsi(values: Sequence[float], period: int = 14) -> float:
    """RSI from simple average gain/loss over the last ``period`` changes.

    Returns 50 when there is not enough data and 100 when there are no losses.
    """
    if len(values) < period + 1:
        return 50.0

    changes = np.diff(np.asarray(values[-(period + 1):], dtype=float))
    avg_gain = changes[changes > 0].sum() / period
    avg_loss = -changes[changes < 0].sum() / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return float(100 - (100 / (1 + rs)))


def calculate_momentum(values: Sequence[float], period: int = 10) -> float:
    """Price change over ``period`` bars."""
    if len(values) <= period:
        return 0.0
    return float(values[-1] - values[-period - 1])


def calculate_price_position(close: float, support: float, resistance: float) -> float:
    """Where ``close`` sits in the support-resistance range, 0.5 if the range is empty."""
    if resistance == support:
        return 0.5
    return (close - support) / (resistance - support)


def extract_features(candles: Sequence[Candle]) -> FeatureVector:
    """Extract technical features from the last 90 candles.

    Args:
        candles: Date-ordered candles (at least one)

    Returns:
        FeatureVector for the latest candle
    """
    recent = list(candles[-FEATURE_WINDOW:])
    closes = [c.close for c in recent]
    volumes = [c.volume for c in recent]
    highs = [c.high for c in recent[-30:]]
    lows = [c.low for c in recent[-30:]]

    support = float(min(lows))
    resistance = float(max(highs))

    avg_volume = float(np.mean(volumes[-20:]))
    volume_ratio = volumes[-1] / avg_volume if avg_volume > 0 else 1.0

    return FeatureVector(
        current_price=closes[-1],
        trend30=calculate_slope(closes[-30:]),
        trend60=calculate_slope(closes[-60:]),
        trend90=calculate_slope(closes[-90:]),
        sma7=sma(closes, 7),
        sma14=sma(closes, 14),
        sma30=sma(closes, 30),
        sma50=sma(closes, 50),
        volatility14=calculate_volatility(closes[-14:]),
        volatility30=calculate_volatility(closes[-30:]),
        rsi14=calculate_rsi(closes, 14),
        momentum10=calculate_momentum(closes, 10),
        volume_trend=calculate_slope(volumes[-30:]),
        volume_ratio=volume_ratio,
        support=support,
        resistance=resistance,
        price_position=calculate_price_position(closes[-1], support, resistance),
    )
