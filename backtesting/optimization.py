"""Grid search and walk-forward optimization of DTI strategy parameters."""

import itertools
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from dtitrader.exceptions import InsufficientDataError, InvalidInputError

from .backtest_engine import BacktestResult, Trade, TradingParameters, run_backtest
from .data_manager import Candle, IndicatorSeries, slice_candles
from .performance_analyzer import PerformanceMetrics, compute_metrics

logger = logging.getLogger(__name__)

# Candidates with fewer closed trades cannot be selected as best
MIN_TRADES_FOR_SELECTION = 5

IndicatorFactory = Callable[[Sequence[Candle], int, int, int], IndicatorSeries]


@dataclass(frozen=True)
class ParamRanges:
    """Discrete candidate values for each tunable parameter."""
    r: Tuple[int, ...] = (7, 14, 21)
    s: Tuple[int, ...] = (5, 10, 15)
    u: Tuple[int, ...] = (3, 5, 7)
    entry_threshold: Tuple[float, ...] = (-50, -40, -30)
    take_profit_percent: Tuple[float, ...] = (5, 8, 10)
    stop_loss_percent: Tuple[float, ...] = (3, 5, 7)
    max_holding_days: Tuple[int, ...] = (15, 30, 45)

    @classmethod
    def from_dict(cls, ranges: Dict) -> 'ParamRanges':
        """Build from a mapping of parameter name to list of values."""
        unknown = set(ranges) - set(cls.__dataclass_fields__)
        if unknown:
            raise InvalidInputError(f"Unknown parameter ranges: {', '.join(sorted(unknown))}")
        return cls(**{name: tuple(values) for name, values in ranges.items()})

    def cardinality(self) -> int:
        return math.prod(len(getattr(self, name)) for name in self.__dataclass_fields__)


DEFAULT_PARAM_RANGES = ParamRanges()


@dataclass(frozen=True)
class Candidate:
    """One point of the parameter grid."""
    r: int
    s: int
    u: int
    trading: TradingParameters

    def to_dict(self) -> Dict:
        return {
            'r': self.r,
            's': self.s,
            'u': self.u,
            'entry_threshold': self.trading.entry_threshold,
            'take_profit_percent': self.trading.take_profit_percent,
            'stop_loss_percent': self.trading.stop_loss_percent,
            'max_holding_days': self.trading.max_holding_days,
            'seven_day_filter_enabled': self.trading.seven_day_filter_enabled,
        }


@dataclass(frozen=True)
class CandidateResult:
    """Backtest outcome of a single candidate."""
    candidate: Candidate
    metrics: PerformanceMetrics
    completed_trades: Tuple[Trade, ...]
    score: float


@dataclass(frozen=True)
class OptimizationResult:
    """Best qualifying candidate (or None) and every evaluated candidate."""
    best: Optional[CandidateResult]
    all_results: Tuple[CandidateResult, ...]


def generate_candidates(ranges: ParamRanges,
                        seven_day_filter_enabled: bool = True) -> List[Candidate]:
    """Enumerate the full Cartesian product of ``ranges``.

    The last parameter (max_holding_days) varies fastest.
    """
    for name in ranges.__dataclass_fields__:
        if not getattr(ranges, name):
            raise InvalidInputError(f"Parameter range '{name}' cannot be empty")

    return [
        Candidate(
            r=r, s=s, u=u,
            trading=TradingParameters(
                entry_threshold=threshold,
                take_profit_percent=tp,
                stop_loss_percent=sl,
                max_holding_days=max_days,
                seven_day_filter_enabled=seven_day_filter_enabled,
            ),
        )
        for r, s, u, threshold, tp, sl, max_days in itertools.product(
            ranges.r, ranges.s, ranges.u,
            ranges.entry_threshold,
            ranges.take_profit_percent,
            ranges.stop_loss_percent,
            ranges.max_holding_days,
        )
    ]


def score_metrics(metrics: PerformanceMetrics) -> float:
    """Composite score: total return x win rate x profit factor."""
    return metrics.total_return * (metrics.win_rate / 100) * metrics.profit_factor


def evaluate_candidate(candles: Sequence[Candle], indicator_factory: IndicatorFactory,
                       candidate: Candidate) -> CandidateResult:
    """Recompute the indicator, backtest and score one candidate."""
    series = indicator_factory(candles, candidate.r, candidate.s, candidate.u)
    result = run_backtest(candles, series, candidate.trading)
    metrics = compute_metrics(result.completed_trades)
    return CandidateResult(
        candidate=candidate,
        metrics=metrics,
        completed_trades=result.completed_trades,
        score=score_metrics(metrics),
    )


def select_best(results: Sequence[CandidateResult],
                min_trades: int = MIN_TRADES_FOR_SELECTION) -> Optional[CandidateResult]:
    """Highest-scoring result with at least ``min_trades`` trades; first wins ties."""
    if min_trades < MIN_TRADES_FOR_SELECTION:
        raise InvalidInputError(f"min_trades must be at least {MIN_TRADES_FOR_SELECTION}")
    best = None
    for result in results:
        if result.metrics.total_trades < min_trades or math.isnan(result.score):
            continue
        if best is None or result.score > best.score:
            best = result
    return best


class ParameterOptimizer:
    """Grid-searches DTI and trading parameters over a candle series."""

    def __init__(self, indicator_factory: IndicatorFactory, max_workers: int = 1,
                 min_trades: int = MIN_TRADES_FOR_SELECTION):
        """Initialize with the indicator factory and worker count."""
        if max_workers < 1:
            raise InvalidInputError("max_workers must be at least 1")
        if min_trades < MIN_TRADES_FOR_SELECTION:
            raise InvalidInputError(f"min_trades must be at least {MIN_TRADES_FOR_SELECTION}")
        self.indicator_factory = indicator_factory
        self.max_workers = max_workers
        self.min_trades = min_trades

    def optimize(self, candles: Sequence[Candle], ranges: ParamRanges = DEFAULT_PARAM_RANGES,
                 seven_day_filter_enabled: bool = True) -> OptimizationResult:
        """Evaluate every candidate and select the best.

        Args:
            candles: Date-ordered candles shared read-only by all evaluations
            ranges: Candidate values per parameter
            seven_day_filter_enabled: 7-day filter setting for every candidate

        Returns:
            OptimizationResult; ``best`` is None if no candidate has enough trades
        """
        if not candles:
            raise InvalidInputError("Candle sequence cannot be empty")

        candidates = generate_candidates(ranges, seven_day_filter_enabled)
        logger.info(f"Running grid search over {len(candidates)} parameter combinations")

        def evaluate(candidate: Candidate) -> CandidateResult:
            return evaluate_candidate(candles, self.indicator_factory, candidate)

        if self.max_workers > 1:
            # map() keeps enumeration order, so tie-breaking is unaffected
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                results = list(executor.map(evaluate, candidates))
        else:
            results = [evaluate(candidate) for candidate in candidates]

        best = select_best(results, self.min_trades)
        if best is None:
            logger.warning(f"No candidate produced at least {self.min_trades} trades")
        else:
            logger.info(
                f"Best candidate {best.candidate.to_dict()} score={best.score:.3f} "
                f"trades={best.metrics.total_trades}"
            )

        return OptimizationResult(best=best, all_results=tuple(results))


def optimize(candles: Sequence[Candle], indicator_factory: IndicatorFactory,
             param_ranges: ParamRanges = DEFAULT_PARAM_RANGES, max_workers: int = 1,
             seven_day_filter_enabled: bool = True) -> OptimizationResult:
    """Convenience function to grid-search ``param_ranges`` over ``candles``."""
    optimizer = ParameterOptimizer(indicator_factory, max_workers=max_workers)
    return optimizer.optimize(candles, param_ranges, seven_day_filter_enabled)


@dataclass(frozen=True)
class WalkForwardPeriod:
    """One train/test window pair."""
    train_start: date
    train_end: date
    test_start: date
    test_end: date
    best: Optional[CandidateResult]
    test_result: Optional[BacktestResult] = None
    test_metrics: Optional[PerformanceMetrics] = None

    def to_dict(self) -> Dict:
        return {
            'train_period': f"{self.train_start} to {self.train_end}",
            'test_period': f"{self.test_start} to {self.test_end}",
            'optimal_params': self.best.candidate.to_dict() if self.best else None,
            'train_performance': self.best.metrics.to_dict() if self.best else None,
            'test_performance': self.test_metrics.to_dict() if self.test_metrics else None,
        }


@dataclass(frozen=True)
class WalkForwardResult:
    periods: Tuple[WalkForwardPeriod, ...]
    train_months: int
    test_months: int
    summary: Dict = field(default_factory=dict)


def walk_forward_analysis(candles: Sequence[Candle], indicator_factory: IndicatorFactory,
                          param_ranges: ParamRanges = DEFAULT_PARAM_RANGES,
                          train_months: int = 12, test_months: int = 3,
                          max_workers: int = 1) -> WalkForwardResult:
    """Perform walk-forward analysis of parameter optimization.

    Each window optimizes on ``train_months`` of history, then backtests the
    winning parameters over train+test and keeps the trades entered in the
    following ``test_months``.

    Args:
        candles: Date-ordered candles
        indicator_factory: Indicator calculator
        param_ranges: Candidate values per parameter
        train_months: Months to use for training/optimization
        test_months: Months to use for out-of-sample testing
        max_workers: Worker threads per grid search

    Returns:
        WalkForwardResult with per-period records and a summary
    """
    if train_months < 1 or test_months < 1:
        raise InvalidInputError("train_months and test_months must be positive")
    if not candles:
        raise InvalidInputError("Candle sequence cannot be empty")

    logger.info(f"Starting walk-forward analysis: {train_months}m train, {test_months}m test")

    optimizer = ParameterOptimizer(indicator_factory, max_workers=max_workers)
    end_dt = pd.Timestamp(candles[-1].date)
    current = pd.Timestamp(candles[0].date)
    periods: List[WalkForwardPeriod] = []

    while True:
        train_end = current + pd.DateOffset(months=train_months)
        test_end = train_end + pd.DateOffset(months=test_months)
        if test_end > end_dt + pd.Timedelta(days=1):
            break

        train = slice_candles(candles, current.date(), train_end.date())
        window = slice_candles(candles, current.date(), test_end.date())
        logger.info(f"Train: {current.date()} to {train_end.date()}, Test: {train_end.date()} to {test_end.date()}")

        best = optimizer.optimize(train, param_ranges).best if len(train) > 1 else None
        test_result = None
        test_metrics = None
        if best is not None and len(window) > len(train):
            # Replay train+test so the indicator and warm-up carry into the
            # test window, then score only trades entered out of sample
            series = indicator_factory(window, best.candidate.r, best.candidate.s, best.candidate.u)
            test_result = run_backtest(window, series, best.candidate.trading)
            test_trades = [t for t in test_result.completed_trades if t.entry_date >= train_end.date()]
            test_metrics = compute_metrics(test_trades)

        periods.append(WalkForwardPeriod(
            train_start=current.date(),
            train_end=train_end.date(),
            test_start=train_end.date(),
            test_end=test_end.date(),
            best=best,
            test_result=test_result,
            test_metrics=test_metrics,
        ))

        # Move to next period
        current = current + pd.DateOffset(months=test_months)

    if not periods:
        raise InsufficientDataError(
            f"History from {candles[0].date} to {candles[-1].date} is shorter than "
            f"one {train_months}+{test_months} month window"
        )

    tested = [p.test_metrics for p in periods if p.test_metrics is not None]
    summary = {
        'total_periods': len(periods),
        'periods_with_best': sum(1 for p in periods if p.best is not None),
        'train_months': train_months,
        'test_months': test_months,
        'avg_test_return': sum(m.total_return for m in tested) / len(tested) if tested else 0.0,
        'avg_test_win_rate': sum(m.win_rate for m in tested) / len(tested) if tested else 0.0,
    }

    return WalkForwardResult(
        periods=tuple(periods),
        train_months=train_months,
        test_months=test_months,
        summary=summary,
    )
