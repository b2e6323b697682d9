"""Historical data structures and loaders for backtesting."""

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import pandas as pd

from dtitrader.exceptions import InvalidInputError

logger = logging.getLogger(__name__)

# Alpaca-style bar keys are accepted alongside the long names
COLUMN_ALIASES = {
    't': 'date', 'timestamp': 'date',
    'o': 'open', 'h': 'high', 'l': 'low', 'c': 'close', 'v': 'volume',
}
REQUIRED_COLUMNS = ['date', 'open', 'high', 'low', 'close', 'volume']


@dataclass(frozen=True)
class Candle:
    """Single daily OHLCV bar."""
    date: date
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class IndicatorPoint:
    """Daily DTI value and the 7-day DTI of the block the day belongs to."""
    date: date
    daily_value: float
    seven_day_value: float


@dataclass(frozen=True)
class SevenDayPeriod:
    """One aggregated 7-day block, candle indices inclusive."""
    start_index: int
    end_index: int
    value: float


@dataclass(frozen=True)
class IndicatorSeries:
    """Per-day indicator values aligned with a candle sequence."""
    points: Tuple[IndicatorPoint, ...]
    periods: Tuple[SevenDayPeriod, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.points)

    @property
    def daily_values(self) -> List[float]:
        return [p.daily_value for p in self.points]

    @property
    def seven_day_values(self) -> List[float]:
        return [p.seven_day_value for p in self.points]

    def previous_period_lookup(self) -> List[Optional[float]]:
        """Map every day index to the value of the 7-day period before its own.

        Days in the first period map to None.

        Raises:
            InvalidInputError: If a period falls outside the series or a day
                belongs to no period
        """
        size = len(self.points)
        lookup: List[Optional[float]] = [None] * size
        covered = [False] * size
        for period_index, period in enumerate(self.periods):
            if not 0 <= period.start_index <= period.end_index < size:
                raise InvalidInputError(
                    f"7-day period {period.start_index}-{period.end_index} "
                    f"is outside the {size}-day series"
                )
            previous_value = self.periods[period_index - 1].value if period_index > 0 else None
            for day_index in range(period.start_index, period.end_index + 1):
                lookup[day_index] = previous_value
                covered[day_index] = True

        if not all(covered):
            raise InvalidInputError(f"No 7-day period covers day index {covered.index(False)}")
        return lookup

    def latest(self) -> Optional[IndicatorPoint]:
        return self.points[-1] if self.points else None


def _is_missing(value) -> bool:
    if value is None:
        return True
    try:
        return math.isnan(value)
    except TypeError:
        return True


def validate_alignment(candles: Sequence[Candle], series: IndicatorSeries) -> None:
    """Check that an indicator series provides values for every candle.

    Raises:
        InvalidInputError: If lengths or dates differ, or a value is missing
    """
    if not candles:
        raise InvalidInputError("Candle sequence cannot be empty")

    if len(candles) != len(series.points):
        raise InvalidInputError(
            f"Candle and indicator lengths differ: {len(candles)} != {len(series.points)}"
        )

    for i, (candle, point) in enumerate(zip(candles, series.points)):
        if point.date != candle.date:
            raise InvalidInputError(
                f"Indicator date {point.date} does not match candle date {candle.date} at index {i}"
            )
        if _is_missing(point.daily_value) or _is_missing(point.seven_day_value):
            raise InvalidInputError(f"Missing indicator value at index {i} ({candle.date})")


def candles_from_frame(df: pd.DataFrame) -> List[Candle]:
    """Convert an OHLCV DataFrame into a date-ordered list of candles.

    Args:
        df: DataFrame with date/open/high/low/close/volume columns (or the
            single-letter Alpaca bar keys). A DatetimeIndex is used as the
            date column when no date column is present.

    Returns:
        List of Candle sorted by date ascending
    """
    frame = df.copy()
    frame.columns = [str(col).strip().lower() for col in frame.columns]
    frame = frame.rename(columns=COLUMN_ALIASES)

    if 'date' not in frame.columns and isinstance(frame.index, pd.DatetimeIndex):
        # reset_index puts the index in the first column
        frame = frame.reset_index()
        frame = frame.rename(columns={frame.columns[0]: 'date'})

    missing = [col for col in REQUIRED_COLUMNS if col not in frame.columns]
    if missing:
        raise InvalidInputError(f"Missing candle columns: {', '.join(missing)}")

    frame['date'] = pd.to_datetime(frame['date']).dt.date
    frame = frame.sort_values('date').drop_duplicates(subset='date', keep='last')

    if frame[REQUIRED_COLUMNS[1:]].isna().any().any():
        raise InvalidInputError("Candle data contains missing prices or volumes")

    candles = [
        Candle(
            date=row.date,
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in frame.itertuples(index=False)
    ]
    logger.debug(f"Loaded {len(candles)} candles")
    return candles


def load_candles_csv(path: Union[str, Path]) -> List[Candle]:
    """Load candles from a CSV file with an OHLCV header."""
    path = Path(path)
    if not path.exists():
        raise InvalidInputError(f"Price file not found: {path}")

    df = pd.read_csv(path)
    candles = candles_from_frame(df)
    logger.info(f"Loaded {len(candles)} candles from {path}")
    return candles


def slice_candles(candles: Sequence[Candle], start: date, end: date) -> List[Candle]:
    """Candles with start <= date < end."""
    return [c for c in candles if start <= c.date < end]
