"""Tests for grid search and walk-forward optimization."""

import math
from datetime import date

import pytest

from backtesting.backtest_engine import TradingParameters
from backtesting.data_manager import IndicatorPoint, IndicatorSeries, SevenDayPeriod
from backtesting.optimization import (
    DEFAULT_PARAM_RANGES,
    Candidate,
    CandidateResult,
    ParamRanges,
    ParameterOptimizer,
    generate_candidates,
    optimize,
    score_metrics,
    select_best,
    walk_forward_analysis,
)
from backtesting.performance_analyzer import PerformanceMetrics
from dti import build_indicator_series
from dtitrader.exceptions import InsufficientDataError, InvalidInputError

DIP_INDICES = (190, 200, 210, 220, 230, 240)

SMALL_RANGES = ParamRanges(
    r=(14,), s=(10,), u=(5,),
    entry_threshold=(-40,),
    take_profit_percent=(8, 15),
    stop_loss_percent=(5,),
    max_holding_days=(3,),
)


@pytest.fixture
def dip_candles(make_candles):
    """Six dips, each followed by a 10% pop and a return to 100."""
    closes = [100.0] * 260
    for i in DIP_INDICES:
        closes[i + 1] = 110.0
    return make_candles(closes)


def dip_factory(candles, r, s, u):
    """Indicator factory with a rising oversold reading on each dip day."""
    daily = [0.0] * len(candles)
    for i in DIP_INDICES:
        daily[i - 1] = -60.0
        daily[i] = -50.0
    return IndicatorSeries(
        points=tuple(
            IndicatorPoint(date=c.date, daily_value=d, seven_day_value=0.0)
            for c, d in zip(candles, daily)
        ),
        periods=(SevenDayPeriod(0, len(candles) - 1, 0.0),),
    )


def make_result(total_trades, score, index=0):
    trading = TradingParameters(-40, 8, 5, 30, True)
    return CandidateResult(
        candidate=Candidate(r=index, s=10, u=5, trading=trading),
        metrics=PerformanceMetrics(total_trades=total_trades),
        completed_trades=(),
        score=score,
    )


def test_default_grid_size():
    """Test the full default grid is 3^7 combinations."""
    assert DEFAULT_PARAM_RANGES.cardinality() == 2187
    assert len(generate_candidates(DEFAULT_PARAM_RANGES)) == 2187


def test_candidate_order_last_parameter_fastest():
    """Test enumeration order of the Cartesian product."""
    candidates = generate_candidates(DEFAULT_PARAM_RANGES)

    assert [c.trading.max_holding_days for c in candidates[:3]] == [15, 30, 45]
    assert candidates[0].r == 7 and candidates[-1].r == 21
    assert candidates[3].trading.stop_loss_percent == 5


def test_empty_range_raises():
    with pytest.raises(InvalidInputError, match="cannot be empty"):
        generate_candidates(ParamRanges(r=()))


def test_param_ranges_from_dict():
    """Test partial overrides and unknown key rejection."""
    ranges = ParamRanges.from_dict({'r': [7], 'take_profit_percent': [6, 9]})

    assert ranges.r == (7,)
    assert ranges.take_profit_percent == (6, 9)
    assert ranges.s == DEFAULT_PARAM_RANGES.s
    with pytest.raises(InvalidInputError, match="Unknown"):
        ParamRanges.from_dict({'bogus': [1]})


def test_score_formula():
    metrics = PerformanceMetrics(total_trades=5, total_return=20.0, win_rate=60.0, profit_factor=2.0)
    assert score_metrics(metrics) == pytest.approx(24.0)


def test_select_best_requires_min_trades():
    """Test that candidates under five trades never win."""
    results = [make_result(4, 100.0), make_result(3, 50.0)]
    assert select_best(results) is None


def test_select_best_ties_keep_first():
    results = [make_result(5, 10.0, 0), make_result(6, 10.0, 1), make_result(2, 99.0, 2)]
    assert select_best(results).candidate.r == 0


def test_select_best_skips_nan():
    results = [make_result(5, math.nan, 0), make_result(5, -1.0, 1)]
    assert select_best(results).candidate.r == 1


def test_optimize_finds_take_profit_candidate(dip_candles):
    """Test that the profitable target beats the unreachable one."""
    result = optimize(dip_candles, dip_factory, SMALL_RANGES)

    assert len(result.all_results) == 2
    best = result.best
    assert best.candidate.trading.take_profit_percent == 8
    assert best.metrics.total_trades == 6
    assert best.metrics.win_rate == 100.0
    assert len(best.completed_trades) == 6


def test_optimize_best_none_when_too_few_trades(make_candles):
    """Test that flat data produces no qualifying candidate."""
    candles = make_candles([100.0] * 220)
    ranges = ParamRanges(r=(7, 14), s=(10,), u=(5,), entry_threshold=(-40,),
                         take_profit_percent=(8,), stop_loss_percent=(5,),
                         max_holding_days=(30,))

    result = optimize(candles, build_indicator_series, ranges)

    assert result.best is None
    assert len(result.all_results) == 2
    assert all(r.metrics.total_trades == 0 for r in result.all_results)


def test_parallel_matches_sequential(dip_candles):
    """Test that a thread pool keeps enumeration order and results."""
    sequential = optimize(dip_candles, dip_factory, SMALL_RANGES, max_workers=1)
    parallel = optimize(dip_candles, dip_factory, SMALL_RANGES, max_workers=4)

    assert [r.candidate for r in parallel.all_results] == [r.candidate for r in sequential.all_results]
    assert [r.score for r in parallel.all_results] == [r.score for r in sequential.all_results]
    assert parallel.best.candidate == sequential.best.candidate


@pytest.mark.parametrize("min_trades", [0, 1, 4])
def test_trade_floor_cannot_be_lowered(min_trades):
    """Test that selection never accepts fewer than five trades."""
    with pytest.raises(InvalidInputError, match="at least 5"):
        ParameterOptimizer(dip_factory, min_trades=min_trades)
    with pytest.raises(InvalidInputError, match="at least 5"):
        select_best([make_result(2, math.inf)], min_trades=min_trades)


def test_trade_floor_can_be_raised(dip_candles):
    """Test that a stricter floor rejects the six-trade candidate."""
    result = ParameterOptimizer(dip_factory, min_trades=7).optimize(dip_candles, SMALL_RANGES)

    assert result.best is None
    assert len(result.all_results) == 2


def test_invalid_worker_count():
    with pytest.raises(InvalidInputError):
        ParameterOptimizer(dip_factory, max_workers=0)


def test_optimize_empty_candles():
    with pytest.raises(InvalidInputError):
        optimize([], dip_factory, SMALL_RANGES)


def test_walk_forward_windows(make_candles):
    """Test window count and boundaries over two years of data."""
    candles = make_candles([100.0] * 730, start=date(2022, 1, 1))
    ranges = ParamRanges(r=(14,), s=(10,), u=(5,), entry_threshold=(-40,),
                         take_profit_percent=(8,), stop_loss_percent=(5,),
                         max_holding_days=(30,))

    result = walk_forward_analysis(candles, build_indicator_series, ranges,
                                   train_months=12, test_months=3)

    assert len(result.periods) == 4
    first = result.periods[0]
    assert first.train_start == date(2022, 1, 1)
    assert first.train_end == date(2023, 1, 1)
    assert first.test_end == date(2023, 4, 1)
    assert result.periods[1].train_start == date(2022, 4, 1)
    assert all(p.best is None for p in result.periods)
    assert result.summary['total_periods'] == 4
    assert result.summary['periods_with_best'] == 0
    assert first.to_dict()['optimal_params'] is None


def test_walk_forward_insufficient_history(make_candles):
    candles = make_candles([100.0] * 200)

    with pytest.raises(InsufficientDataError):
        walk_forward_analysis(candles, build_indicator_series, SMALL_RANGES)
