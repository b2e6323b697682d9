"""Backtesting framework for the DTI trading strategy."""

import logging

from .backtest_engine import (
    BacktestEngine,
    BacktestResult,
    ExitReason,
    Trade,
    TradingParameters,
    WarmupWindow,
    run_backtest
)

from .data_manager import (
    Candle,
    IndicatorPoint,
    IndicatorSeries,
    SevenDayPeriod,
    candles_from_frame,
    load_candles_csv
)

from .performance_analyzer import (
    PerformanceAnalyzer,
    PerformanceMetrics,
    calculate_trade_metrics,
    compute_metrics
)

from .optimization import (
    DEFAULT_PARAM_RANGES,
    ParamRanges,
    ParameterOptimizer,
    optimize,
    walk_forward_analysis
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    'BacktestEngine',
    'BacktestResult',
    'ExitReason',
    'Trade',
    'TradingParameters',
    'WarmupWindow',
    'run_backtest',
    'Candle',
    'IndicatorPoint',
    'IndicatorSeries',
    'SevenDayPeriod',
    'candles_from_frame',
    'load_candles_csv',
    'PerformanceAnalyzer',
    'PerformanceMetrics',
    'calculate_trade_metrics',
    'compute_metrics',
    'DEFAULT_PARAM_RANGES',
    'ParamRanges',
    'ParameterOptimizer',
    'optimize',
    'walk_forward_analysis'
]
