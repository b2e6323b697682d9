"""Shared fixtures for DTI Trader tests."""

from datetime import date, timedelta

import numpy as np
import pytest

from backtesting.backtest_engine import ExitReason, Trade, TradingParameters
from backtesting.data_manager import Candle, IndicatorPoint, IndicatorSeries, SevenDayPeriod

START_DATE = date(2023, 1, 1)


@pytest.fixture
def make_candles():
    """Build one candle per calendar day from a list of closes."""
    def _make(closes, start=START_DATE, volumes=None):
        volumes = volumes if volumes is not None else [1_000_000] * len(closes)
        return [
            Candle(
                date=start + timedelta(days=i),
                open=float(c),
                high=float(c) * 1.01,
                low=float(c) * 0.99,
                close=float(c),
                volume=float(v),
            )
            for i, (c, v) in enumerate(zip(closes, volumes))
        ]
    return _make


@pytest.fixture
def make_series():
    """Build an indicator series aligned with candles from explicit values.

    Without ``periods`` the whole series is one 7-day period, so the filter
    has no previous period to compare against.
    """
    def _make(candles, daily_values, seven_day_values=None, periods=None):
        seven_day_values = seven_day_values if seven_day_values is not None else [0.0] * len(candles)
        points = tuple(
            IndicatorPoint(date=c.date, daily_value=d, seven_day_value=s)
            for c, d, s in zip(candles, daily_values, seven_day_values)
        )
        if periods is None:
            periods = [SevenDayPeriod(0, len(points) - 1, seven_day_values[0])] if points else []
        return IndicatorSeries(points=points, periods=tuple(periods))
    return _make


@pytest.fixture
def make_trade():
    """Build a closed trade with a given P/L percent."""
    def _make(entry_date, exit_date, pl, reason=None, entry_price=100.0):
        if reason is None:
            reason = ExitReason.TAKE_PROFIT if pl > 0 else ExitReason.STOP_LOSS
        trade = Trade(
            entry_date=entry_date,
            entry_price=entry_price,
            entry_indicator_value=-50.0,
            entry_seven_day_value=0.0,
            current_price=entry_price,
        )
        return trade.close(exit_date, entry_price * (1 + pl / 100), reason)
    return _make


@pytest.fixture
def params():
    """Default trading parameters."""
    return TradingParameters(
        entry_threshold=-40,
        take_profit_percent=8,
        stop_loss_percent=5,
        max_holding_days=30,
        seven_day_filter_enabled=True,
    )


@pytest.fixture
def random_walk():
    """Seeded geometric random walk of closes."""
    def _make(n, seed=42, start_price=100.0, drift=0.0005, vol=0.02):
        rng = np.random.default_rng(seed)
        returns = rng.normal(drift, vol, n - 1)
        closes = start_price * np.concatenate([[1.0], np.cumprod(1 + returns)])
        return closes.tolist()
    return _make
