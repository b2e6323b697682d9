"""Tests for the backtest engine."""

import math
from dataclasses import replace
from datetime import date

import pytest

from backtesting.backtest_engine import (
    BacktestEngine,
    ExitReason,
    Trade,
    run_backtest,
    warmup_end,
)
from backtesting.data_manager import SevenDayPeriod
from dti import build_indicator_series
from dtitrader.exceptions import InvalidInputError

ENTRY = 190  # 2023-07-10, after the warm-up


def dip_at(n, *indices):
    """Daily values of 0 with a rising oversold reading at each index."""
    values = [0.0] * n
    for i in indices:
        values[i - 1] = -60.0
        values[i] = -50.0
    return values


def test_flat_prices_produce_no_trades(make_candles, params):
    """Test that a flat 120-day series never enters."""
    candles = make_candles([100.0] * 120)
    series = build_indicator_series(candles)

    result = run_backtest(candles, series, params)

    assert result.completed_trades == ()
    assert result.active_trade is None


def test_dip_and_recover_hits_take_profit(make_candles, make_series, params):
    """Test a single dip entry followed by a 10% rise closes at take profit."""
    closes = [100.0] * 200
    closes[ENTRY + 1:] = [110.0] * (200 - ENTRY - 1)
    candles = make_candles(closes)
    series = make_series(candles, dip_at(200, ENTRY))

    result = run_backtest(candles, series, params)

    assert len(result.completed_trades) == 1
    trade = result.completed_trades[0]
    assert trade.exit_reason == ExitReason.TAKE_PROFIT
    assert trade.pl_percent >= 8
    assert trade.entry_date == candles[ENTRY].date
    assert trade.exit_date == candles[ENTRY + 1].date
    assert trade.entry_indicator_value == -50.0
    assert result.active_trade is None


def test_stop_loss_exit(make_candles, make_series, params):
    """Test that a 6% drop closes at stop loss."""
    closes = [100.0] * 200
    closes[ENTRY + 1:] = [94.0] * (200 - ENTRY - 1)
    candles = make_candles(closes)
    series = make_series(candles, dip_at(200, ENTRY))

    result = run_backtest(candles, series, params)

    assert len(result.completed_trades) == 1
    trade = result.completed_trades[0]
    assert trade.exit_reason == ExitReason.STOP_LOSS
    assert trade.pl_percent == pytest.approx(-6.0)


def test_time_exit_after_max_holding_days(make_candles, make_series, params):
    """Test that a trade going nowhere exits on the max holding day."""
    candles = make_candles([100.0] * 240)
    series = make_series(candles, dip_at(240, ENTRY))

    result = run_backtest(candles, series, params)

    assert len(result.completed_trades) == 1
    trade = result.completed_trades[0]
    assert trade.exit_reason == ExitReason.TIME_EXIT
    assert trade.holding_days == 30
    assert trade.exit_date == candles[ENTRY + 30].date


def test_take_profit_wins_over_time_exit(make_candles, make_series, params):
    """Test exit precedence when profit target and time limit fire together."""
    closes = [100.0] * 200
    closes[ENTRY + 1:] = [110.0] * (200 - ENTRY - 1)
    candles = make_candles(closes)
    series = make_series(candles, dip_at(200, ENTRY))

    result = run_backtest(candles, series, replace(params, max_holding_days=1))

    assert result.completed_trades[0].exit_reason == ExitReason.TAKE_PROFIT


def test_no_entry_on_exit_step(make_candles, make_series, params):
    """Test that an entry signal on the exit day is ignored."""
    closes = [100.0] * 200
    closes[ENTRY + 1:] = [110.0] * (200 - ENTRY - 1)
    candles = make_candles(closes)
    daily = dip_at(200, ENTRY)
    daily[ENTRY + 1] = -45.0  # would qualify: < -40 and rising
    daily[ENTRY + 2] = -42.0  # qualifies on the following day
    series = make_series(candles, daily)

    result = run_backtest(candles, series, params)

    assert len(result.completed_trades) == 1
    assert result.active_trade is not None
    assert result.active_trade.entry_date == candles[ENTRY + 2].date
    assert result.active_trade.is_open


def test_open_trade_is_returned_as_active(make_candles, make_series, params):
    """Test that a trade still open at the end is never in completed_trades."""
    closes = [100.0] * 200
    closes[ENTRY + 1:] = [103.0] * (200 - ENTRY - 1)
    candles = make_candles(closes)
    series = make_series(candles, dip_at(200, ENTRY))

    result = run_backtest(candles, series, params)

    assert result.completed_trades == ()
    active = result.active_trade
    assert active.entry_date == candles[ENTRY].date
    assert active.current_price == 103.0
    assert active.current_pl_percent == pytest.approx(3.0)
    assert active.holding_days == 199 - ENTRY
    assert result.all_trades() == [active]


def test_warmup_blocks_early_entries(make_candles, make_series, params):
    """Test that no entry happens before six months of history."""
    candles = make_candles([100.0] * 200)
    series = make_series(candles, dip_at(200, 100))

    result = run_backtest(candles, series, params)

    assert result.completed_trades == ()
    assert result.active_trade is None
    assert result.warmup.start_date == date(2023, 1, 1)
    assert result.warmup.end_date == date(2023, 7, 1)


def test_entry_allowed_on_warmup_end_date(make_candles, make_series, params):
    """Test that the eligibility date itself allows entry."""
    candles = make_candles([100.0] * 200)
    assert candles[181].date == date(2023, 7, 1)
    series = make_series(candles, dip_at(200, 181))

    result = run_backtest(candles, series, params)

    assert result.active_trade.entry_date == date(2023, 7, 1)


def test_warmup_end_clamps_month_end():
    """Test that six months after Aug 31 lands on the last day of February."""
    assert warmup_end(date(2023, 8, 31)) == date(2024, 2, 29)


def test_seven_day_filter(make_candles, make_series, params):
    """Test that a falling 7-day value blocks entry only when the filter is on."""
    candles = make_candles([100.0] * 200)
    periods = [
        SevenDayPeriod(start_index=0, end_index=183, value=10.0),
        SevenDayPeriod(start_index=184, end_index=199, value=5.0),
    ]
    series = make_series(candles, dip_at(200, ENTRY), [5.0] * 200, periods)

    filtered = run_backtest(candles, series, params)
    unfiltered = run_backtest(candles, series, replace(params, seven_day_filter_enabled=False))

    assert filtered.active_trade is None
    assert unfiltered.active_trade.entry_date == candles[ENTRY].date


def test_seven_day_filter_passes_without_previous_period(make_candles, make_series, params):
    """Test that the first period has no predecessor and does not block."""
    candles = make_candles([100.0] * 200)
    periods = [SevenDayPeriod(start_index=0, end_index=199, value=-20.0)]
    series = make_series(candles, dip_at(200, ENTRY), [-20.0] * 200, periods)

    result = run_backtest(candles, series, params)

    assert result.active_trade.entry_date == candles[ENTRY].date


def test_seven_day_filter_requires_periods(make_candles, make_series, params):
    """Test that a falling 7-day value without periods fails instead of entering."""
    candles = make_candles([100.0] * 200)
    seven_day = [10.0] * 189 + [5.0] * 11
    series = make_series(candles, dip_at(200, ENTRY), seven_day, periods=[])

    with pytest.raises(InvalidInputError, match="No 7-day period covers"):
        run_backtest(candles, series, params)

    unfiltered = run_backtest(candles, series, replace(params, seven_day_filter_enabled=False))
    assert unfiltered.active_trade.entry_date == candles[ENTRY].date


def test_seven_day_filter_blocks_with_index_periods(make_candles, make_series, params):
    """Test the same falling reading is blocked once periods are supplied."""
    candles = make_candles([100.0] * 200)
    seven_day = [10.0] * 189 + [5.0] * 11
    periods = [
        SevenDayPeriod(start_index=0, end_index=188, value=10.0),
        SevenDayPeriod(start_index=189, end_index=199, value=5.0),
    ]
    series = make_series(candles, dip_at(200, ENTRY), seven_day, periods)

    result = run_backtest(candles, series, params)

    assert result.active_trade is None
    assert result.completed_trades == ()


@pytest.mark.parametrize("periods,message", [
    ([SevenDayPeriod(0, 99, 1.0), SevenDayPeriod(101, 199, 2.0)], "covers day index 100"),
    ([SevenDayPeriod(0, 200, 1.0)], "outside"),
])
def test_seven_day_periods_must_cover_series(make_candles, make_series, params, periods, message):
    """Test that gaps or out-of-range periods are rejected."""
    candles = make_candles([100.0] * 200)
    series = make_series(candles, dip_at(200, ENTRY), periods=periods)

    with pytest.raises(InvalidInputError, match=message):
        run_backtest(candles, series, params)


def test_threshold_must_be_crossed_from_below(make_candles, make_series, params):
    """Test that a falling oversold reading does not enter."""
    candles = make_candles([100.0] * 200)
    daily = [0.0] * 200
    daily[ENTRY - 1] = -50.0
    daily[ENTRY] = -60.0
    series = make_series(candles, daily)

    result = run_backtest(candles, series, params)

    assert result.active_trade is None


def test_length_mismatch_raises(make_candles, make_series, params):
    """Test that misaligned inputs fail fast."""
    candles = make_candles([100.0] * 50)
    series = make_series(candles[:49], [0.0] * 49)

    with pytest.raises(InvalidInputError, match="lengths differ"):
        run_backtest(candles, series, params)


def test_date_mismatch_raises(make_candles, make_series, params):
    """Test that indicator dates must match candle dates."""
    candles = make_candles([100.0] * 50)
    shifted = make_candles([100.0] * 50, start=date(2023, 1, 2))
    series = make_series(shifted, [0.0] * 50)

    with pytest.raises(InvalidInputError, match="does not match"):
        run_backtest(candles, series, params)


def test_missing_indicator_value_raises(make_candles, make_series, params):
    """Test that a NaN indicator value is rejected."""
    candles = make_candles([100.0] * 50)
    daily = [0.0] * 50
    daily[10] = math.nan
    series = make_series(candles, daily)

    with pytest.raises(InvalidInputError, match="Missing indicator value"):
        run_backtest(candles, series, params)


def test_empty_candles_raise(make_series, params):
    """Test that an empty candle sequence is rejected."""
    with pytest.raises(InvalidInputError):
        run_backtest([], make_series([], []), params)


@pytest.mark.parametrize("field,value", [
    ('take_profit_percent', 0),
    ('stop_loss_percent', -1),
    ('max_holding_days', 0),
    ('max_holding_days', 2.5),
])
def test_invalid_parameters_raise(params, field, value):
    """Test that invalid trading parameters are rejected up front."""
    with pytest.raises(InvalidInputError):
        BacktestEngine(replace(params, **{field: value}))


def test_closed_trade_cannot_change():
    """Test that closing or refreshing a closed trade raises."""
    trade = Trade(
        entry_date=date(2023, 7, 10),
        entry_price=100.0,
        entry_indicator_value=-50.0,
        entry_seven_day_value=0.0,
        current_price=100.0,
    )
    closed = trade.close(date(2023, 7, 11), 110.0, ExitReason.TAKE_PROFIT)

    assert trade.is_open
    assert not closed.is_open
    with pytest.raises(InvalidInputError):
        closed.close(date(2023, 7, 12), 111.0, ExitReason.TAKE_PROFIT)
    with pytest.raises(InvalidInputError):
        closed.refresh(date(2023, 7, 12), 111.0)


def test_trades_never_overlap(make_candles, random_walk, params):
    """Test lifecycle invariants over a noisy price path."""
    candles = make_candles(random_walk(600, seed=7, vol=0.03))
    series = build_indicator_series(candles, 7, 5, 3)
    loose = replace(params, entry_threshold=-10, seven_day_filter_enabled=False)

    result = run_backtest(candles, series, loose)

    previous_exit = None
    for trade in result.all_trades():
        if previous_exit is not None:
            assert trade.entry_date > previous_exit
        previous_exit = trade.exit_date

    for trade in result.completed_trades:
        if trade.exit_reason == ExitReason.TAKE_PROFIT:
            assert trade.pl_percent >= loose.take_profit_percent
        elif trade.exit_reason == ExitReason.STOP_LOSS:
            assert trade.pl_percent <= -loose.stop_loss_percent
        else:
            assert trade.exit_reason == ExitReason.TIME_EXIT
            assert trade.holding_days >= loose.max_holding_days


def test_result_to_dict(make_candles, make_series, params):
    """Test JSON-ready conversion of a result."""
    closes = [100.0] * 200
    closes[ENTRY + 1:] = [110.0] * (200 - ENTRY - 1)
    candles = make_candles(closes)
    series = make_series(candles, dip_at(200, ENTRY))

    data = run_backtest(candles, series, params).to_dict()

    assert data['warmup'] == {'start_date': '2023-01-01', 'end_date': '2023-07-01'}
    assert data['completed_trades'][0]['exit_reason'] == 'Take Profit'
    assert data['active_trade'] is None
