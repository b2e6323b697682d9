"""Tests for the DTI indicator calculator."""

from datetime import date, timedelta

import pytest

from dti import (
    aggregate_to_7day,
    build_indicator_series,
    calculate_7day_dti,
    calculate_dti,
    ema,
)
from dtitrader.exceptions import InvalidInputError


def test_ema_seeded_with_first_value():
    """Test the EMA recursion from its seed."""
    values = ema([10, 20, 30], 3)

    assert values[0] == 10
    assert values[1] == pytest.approx(15.0)
    assert values[2] == pytest.approx(22.5)


def test_ema_period_one_is_identity():
    assert ema([3, 1, 4, 1, 5], 1) == [3, 1, 4, 1, 5]


def test_ema_invalid_inputs():
    with pytest.raises(InvalidInputError):
        ema([], 5)
    with pytest.raises(InvalidInputError):
        ema([1, 2], 0)


def test_dti_rising_market_is_plus_100():
    """Test that only higher highs give the maximum reading."""
    high = [100 + i for i in range(30)]
    low = [90 + i for i in range(30)]

    dti = calculate_dti(high, low, 14, 10, 5)

    assert dti[0] == 0.0
    assert all(v == pytest.approx(100.0) for v in dti[1:])


def test_dti_falling_market_is_minus_100():
    high = [100 - i for i in range(30)]
    low = [90 - i for i in range(30)]

    dti = calculate_dti(high, low, 14, 10, 5)

    assert all(v == pytest.approx(-100.0) for v in dti[1:])


def test_dti_flat_market_is_zero():
    dti = calculate_dti([100.0] * 20, [99.0] * 20, 14, 10, 5)
    assert dti == [0.0] * 20


def test_dti_is_bounded():
    """Test that mixed moves stay within [-100, 100]."""
    high = [100, 103, 101, 104, 102, 99, 105, 101, 98, 102]
    low = [95, 97, 96, 99, 94, 93, 100, 96, 92, 97]

    dti = calculate_dti(high, low, 3, 2, 2)

    assert all(-100.0 <= v <= 100.0 for v in dti)


def test_dti_invalid_inputs():
    with pytest.raises(InvalidInputError):
        calculate_dti([1, 2], [1], 14, 10, 5)
    with pytest.raises(InvalidInputError):
        calculate_dti([1, 2], [1, 2], 0, 10, 5)


def test_aggregate_to_7day_blocks():
    """Test index-based blocks with a short trailing block."""
    dates = [date(2023, 1, 1) + timedelta(days=i) for i in range(16)]
    high = list(range(100, 116))
    low = list(range(90, 106))

    blocks = aggregate_to_7day(dates, high, low)

    assert len(blocks) == 3
    assert blocks[0]['start_index'] == 0 and blocks[0]['end_index'] == 6
    assert blocks[0]['high'] == 106 and blocks[0]['low'] == 90
    assert blocks[2]['start_index'] == 14 and blocks[2]['end_index'] == 15
    assert blocks[2]['end_date'] == dates[15]


def test_7day_dti_maps_block_value_to_days():
    dates = [date(2023, 1, 1) + timedelta(days=i) for i in range(21)]
    high = [100 + i for i in range(21)]
    low = [90 + i for i in range(21)]

    result = calculate_7day_dti(dates, high, low, 14, 10, 5)

    assert len(result['block_dti']) == 3
    assert len(result['daily']) == 21
    assert result['daily'][:7] == [result['block_dti'][0]] * 7
    assert result['daily'][14:] == [result['block_dti'][2]] * 7


def test_build_indicator_series(make_candles, random_walk):
    """Test alignment and previous-period lookup of a built series."""
    candles = make_candles(random_walk(50))

    series = build_indicator_series(candles, 14, 10, 5)

    assert len(series) == 50
    assert [p.date for p in series.points] == [c.date for c in candles]
    assert len(series.periods) == 8
    assert series.periods[-1].start_index == 49
    lookup = series.previous_period_lookup()
    assert lookup[3] is None
    assert lookup[7] == series.periods[0].value
    assert lookup[20] == series.periods[1].value
    assert lookup[49] == series.periods[6].value
    assert series.latest() == series.points[-1]


def test_build_indicator_series_empty():
    with pytest.raises(InvalidInputError):
        build_indicator_series([])
