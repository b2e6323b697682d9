"""Configuration validation and normalization for DTI Trader."""

import copy
import logging
from typing import Any, Dict

from backtesting.backtest_engine import TradingParameters
from backtesting.optimization import DEFAULT_PARAM_RANGES, MIN_TRADES_FOR_SELECTION, ParamRanges

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    'indicator': {
        'r': 14,
        's': 10,
        'u': 5,
    },
    'trading': {
        'entry_threshold': -40,
        'take_profit_percent': 8,
        'stop_loss_percent': 5,
        'max_holding_days': 30,
        'seven_day_filter_enabled': True,
    },
    'optimization': {
        'param_ranges': {
            name: list(getattr(DEFAULT_PARAM_RANGES, name))
            for name in DEFAULT_PARAM_RANGES.__dataclass_fields__
        },
        'max_workers': 1,
        'min_trades': 5,
    },
    'forecast': {
        'horizon_days': 30,
        'iterations': 1000,
        'risk_free_rate': 0.0025,
        'seed': None,
    },
}


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate and normalize the configuration.

    Missing sections and keys are filled with defaults; present values
    are range-checked.

    Args:
        config: Raw configuration dictionary (may be None for an empty file)

    Returns:
        Validated and normalized configuration

    Raises:
        ConfigError: If configuration is invalid
    """
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ConfigError("Configuration must be a mapping of sections")

    for section, defaults in DEFAULT_CONFIG.items():
        value = config.get(section)
        if value is None:
            config[section] = copy.deepcopy(defaults)
        elif not isinstance(value, dict):
            raise ConfigError(f"Configuration section '{section}' must be a mapping")
        else:
            for key, default in defaults.items():
                value.setdefault(key, copy.deepcopy(default))

    config = _validate_indicator(config)
    config = _validate_trading(config)
    config = _validate_optimization(config)
    config = _validate_forecast(config)

    return config


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_indicator(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate DTI smoothing periods."""
    indicator = config['indicator']

    for field in ('r', 's', 'u'):
        if not _is_positive_int(indicator[field]):
            raise ConfigError(f"Indicator period {field} must be a positive integer")

    return config


def _validate_trading(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate entry and exit rules."""
    trading = config['trading']

    if not _is_number(trading['entry_threshold']):
        raise ConfigError("entry_threshold must be a number")

    for field in ('take_profit_percent', 'stop_loss_percent'):
        if not _is_number(trading[field]) or trading[field] <= 0:
            raise ConfigError(f"{field} must be a positive number")

    if not _is_positive_int(trading['max_holding_days']):
        raise ConfigError("max_holding_days must be a positive integer")

    if not isinstance(trading['seven_day_filter_enabled'], bool):
        raise ConfigError("seven_day_filter_enabled must be true or false")

    if trading['entry_threshold'] >= 0:
        logger.warning(
            f"entry_threshold {trading['entry_threshold']} is not negative; "
            "entries will trigger outside the oversold zone"
        )

    return config


def _validate_optimization(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate grid search settings."""
    optimization = config['optimization']

    ranges = optimization['param_ranges']
    if not isinstance(ranges, dict):
        raise ConfigError("param_ranges must be a mapping of parameter to list of values")

    for name, default in DEFAULT_CONFIG['optimization']['param_ranges'].items():
        ranges.setdefault(name, list(default))

    for name, values in ranges.items():
        if name not in DEFAULT_CONFIG['optimization']['param_ranges']:
            raise ConfigError(f"Unknown parameter range: {name}")
        if not isinstance(values, list) or not values:
            raise ConfigError(f"Parameter range {name} must be a non-empty list")
        if not all(_is_number(v) for v in values):
            raise ConfigError(f"Parameter range {name} must contain only numbers")

    for name in ('r', 's', 'u', 'max_holding_days'):
        if not all(_is_positive_int(v) for v in ranges[name]):
            raise ConfigError(f"Parameter range {name} must contain positive integers")

    for name in ('take_profit_percent', 'stop_loss_percent'):
        if any(v <= 0 for v in ranges[name]):
            raise ConfigError(f"Parameter range {name} must contain positive values")

    if not _is_positive_int(optimization['max_workers']):
        raise ConfigError("max_workers must be at least 1")

    min_trades = optimization['min_trades']
    if not _is_positive_int(min_trades) or min_trades < MIN_TRADES_FOR_SELECTION:
        raise ConfigError(f"min_trades must be an integer of at least {MIN_TRADES_FOR_SELECTION}")

    combinations = param_ranges_from_config(config).cardinality()
    logger.debug(f"Optimization grid has {combinations} combinations")

    return config


def _validate_forecast(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate forecast settings."""
    forecast = config['forecast']

    if not _is_positive_int(forecast['horizon_days']):
        raise ConfigError("horizon_days must be a positive integer")

    if not _is_positive_int(forecast['iterations']):
        raise ConfigError("iterations must be a positive integer")

    if not _is_number(forecast['risk_free_rate']):
        raise ConfigError("risk_free_rate must be a number")

    seed = forecast['seed']
    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int) or seed < 0):
        raise ConfigError("seed must be a non-negative integer or null")

    return config


def trading_parameters_from_config(config: Dict[str, Any]) -> TradingParameters:
    """Build the immutable trading parameters from a validated config."""
    trading = config['trading']
    return TradingParameters(
        entry_threshold=trading['entry_threshold'],
        take_profit_percent=trading['take_profit_percent'],
        stop_loss_percent=trading['stop_loss_percent'],
        max_holding_days=trading['max_holding_days'],
        seven_day_filter_enabled=trading['seven_day_filter_enabled'],
    )


def param_ranges_from_config(config: Dict[str, Any]) -> ParamRanges:
    """Build the optimizer grid from a validated config."""
    return ParamRanges.from_dict(config['optimization']['param_ranges'])
