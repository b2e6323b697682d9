"""Directional Trend Index (William Blau) with 7-day aggregation."""

import logging
from datetime import date
from typing import Dict, List, Sequence

from backtesting.data_manager import (
    Candle,
    IndicatorPoint,
    IndicatorSeries,
    SevenDayPeriod,
)
from dtitrader.exceptions import InvalidInputError

logger = logging.getLogger(__name__)

PERIOD_LENGTH = 7


def ema(values: Sequence[float], period: int) -> List[float]:
    """Calculate Exponential Moving Average seeded with the first value.

    Args:
        values: Series of values
        period: EMA period

    Returns:
        List of EMA values, same length as input
    """
    if not values:
        raise InvalidInputError("EMA input cannot be empty")
    if period <= 0:
        raise InvalidInputError(f"EMA period must be positive, got {period}")

    k = 2.0 / (period + 1)
    ema_values = [float(values[0])]

    for i in range(1, len(values)):
        ema_values.append(values[i] * k + ema_values[i - 1] * (1 - k))

    return ema_values


def calculate_dti(high: Sequence[float], low: Sequence[float],
                  r: int, s: int, u: int) -> List[float]:
    """Calculate DTI from high/low series.

    Momentum is the higher-high move minus the lower-low move. DTI is the
    ratio of its triple-smoothed value to the triple-smoothed absolute value,
    scaled to [-100, 100].

    Args:
        high: High prices
        low: Low prices
        r: First EMA period
        s: Second EMA period
        u: Third EMA period

    Returns:
        DTI values, one per input bar (first bar is 0)
    """
    if not high or len(high) != len(low):
        raise InvalidInputError("High and low series must be non-empty and equal length")
    if r <= 0 or s <= 0 or u <= 0:
        raise InvalidInputError(f"Invalid EMA periods for DTI: r={r}, s={s}, u={u}")

    x_price = [0.0]
    x_price_abs = [0.0]

    for i in range(1, len(high)):
        hmu = high[i] - high[i - 1] if high[i] - high[i - 1] > 0 else 0.0
        lmd = -(low[i] - low[i - 1]) if low[i] - low[i - 1] < 0 else 0.0
        x_price.append(hmu - lmd)
        x_price_abs.append(abs(hmu - lmd))

    smoothed = ema(ema(ema(x_price, r), s), u)
    smoothed_abs = ema(ema(ema(x_price_abs, r), s), u)

    return [
        100 * num / den if den != 0 else 0.0
        for num, den in zip(smoothed, smoothed_abs)
    ]


def aggregate_to_7day(dates: Sequence[date], high: Sequence[float],
                      low: Sequence[float]) -> List[Dict]:
    """Aggregate daily bars into consecutive 7-bar blocks.

    Blocks are formed by index, not by calendar week. The last block may be
    shorter than 7 bars.

    Returns:
        List of dicts with start/end dates and indices, high and low
    """
    if not dates or len(dates) != len(high) or len(dates) != len(low):
        raise InvalidInputError("Invalid inputs for 7-day aggregation")

    blocks = []
    for start in range(0, len(dates), PERIOD_LENGTH):
        end = min(start + PERIOD_LENGTH, len(dates)) - 1
        blocks.append({
            'start_date': dates[start],
            'end_date': dates[end],
            'start_index': start,
            'end_index': end,
            'high': max(high[start:end + 1]),
            'low': min(low[start:end + 1]),
        })

    return blocks


def calculate_7day_dti(dates: Sequence[date], high: Sequence[float],
                       low: Sequence[float], r: int, s: int, u: int) -> Dict:
    """Calculate DTI on 7-day blocks and map it back onto daily bars.

    Returns:
        Dict with 'blocks', 'block_dti' (one per block) and 'daily' (one per bar)
    """
    blocks = aggregate_to_7day(dates, high, low)
    block_dti = calculate_dti(
        [b['high'] for b in blocks],
        [b['low'] for b in blocks],
        r, s, u
    )

    daily = [0.0] * len(dates)
    for block, value in zip(blocks, block_dti):
        for j in range(block['start_index'], block['end_index'] + 1):
            daily[j] = value

    return {
        'blocks': blocks,
        'block_dti': block_dti,
        'daily': daily,
    }


def build_indicator_series(candles: Sequence[Candle], r: int = 14,
                           s: int = 10, u: int = 5) -> IndicatorSeries:
    """Compute the daily and 7-day DTI for a candle sequence.

    This is the default indicator factory for the optimizer.

    Args:
        candles: Date-ordered candles
        r: First EMA period
        s: Second EMA period
        u: Third EMA period

    Returns:
        IndicatorSeries aligned with ``candles``
    """
    if not candles:
        raise InvalidInputError("Cannot compute DTI for an empty candle sequence")

    dates = [c.date for c in candles]
    high = [c.high for c in candles]
    low = [c.low for c in candles]

    daily = calculate_dti(high, low, r, s, u)
    seven_day = calculate_7day_dti(dates, high, low, r, s, u)

    points = tuple(
        IndicatorPoint(date=d, daily_value=dv, seven_day_value=sv)
        for d, dv, sv in zip(dates, daily, seven_day['daily'])
    )
    periods = tuple(
        SevenDayPeriod(start_index=b['start_index'], end_index=b['end_index'], value=v)
        for b, v in zip(seven_day['blocks'], seven_day['block_dti'])
    )

    logger.debug(f"Built DTI series r={r} s={s} u={u}: {len(points)} days, {len(periods)} periods")
    return IndicatorSeries(points=points, periods=periods)
