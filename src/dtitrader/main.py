"""Main CLI entry point for DTI Trader."""

import logging
import os
import sys
from datetime import datetime
from typing import Optional

import numpy as np
import typer
import yaml
from dotenv import load_dotenv
from rich.console import Console

from backtesting.backtest_engine import run_backtest
from backtesting.data_manager import load_candles_csv
from backtesting.optimization import ParameterOptimizer
from backtesting.performance_analyzer import PerformanceAnalyzer, compute_metrics
from dti import build_indicator_series
from forecasting.ensemble import ForecastEngine
from forecasting.predictors import IndicatorReading

from .config_validator import (
    param_ranges_from_config,
    trading_parameters_from_config,
    validate_config
)
from .exceptions import (
    ExceptionMapper,
    ConfigError,
    InsufficientDataError,
    InvalidInputError,
    EXIT_SUCCESS,
    EXIT_CONFIG_ERROR,
    EXIT_DATA_ERROR,
    EXIT_INPUT_ERROR
)
from .reporter import Reporter

# Load environment variables
load_dotenv()

CONFIG_ENV_VAR = "DTITRADER_CONFIG"

# Initialize Typer app
app = typer.Typer(
    name="dti-trader",
    help="DTI oscillator backtesting, parameter optimization and price forecasting.",
    add_completion=False
)

# Initialize console for output
console = Console()


# Configure logging
def setup_logging(debug: bool = False):
    """Configure logging based on debug flag."""
    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def resolve_config_path(filepath: Optional[str]) -> Optional[str]:
    """Explicit option first, then the environment, then ./config.yaml if present."""
    if filepath:
        return filepath
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return env_path
    return "config.yaml" if os.path.exists("config.yaml") else None


def load_config(filepath: Optional[str]) -> dict:
    """
    Load and validate configuration file.

    Args:
        filepath: Path to configuration YAML file, or None for defaults

    Returns:
        Validated configuration dictionary

    Raises:
        ConfigError: If configuration is invalid
    """
    if filepath is None:
        return validate_config({})

    try:
        with open(filepath, 'r') as f:
            config = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {filepath}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in configuration file: {e}")

    # Validate and normalize configuration
    return validate_config(config)


def handle_error(e: Exception, debug: bool) -> None:
    """Report an exception and exit with its mapped code."""
    if isinstance(e, ConfigError):
        console.print(f"\n[red]Configuration error: {e}[/red]")
        sys.exit(EXIT_CONFIG_ERROR)

    if isinstance(e, InvalidInputError):
        console.print(f"\n[red]Input error: {e}[/red]")
        sys.exit(EXIT_INPUT_ERROR)

    if isinstance(e, InsufficientDataError):
        console.print(f"\n[red]Data error: {e}[/red]")
        sys.exit(EXIT_DATA_ERROR)

    # Map exception to exit code
    exit_code = ExceptionMapper.map_to_exit_code(e)

    if debug:
        # In debug mode, show full traceback
        console.print_exception()
    else:
        console.print(f"\n[red]Error: {e}[/red]")
        console.print(f"[dim]Exit code: {exit_code}[/dim]")
        console.print("[dim]Run with --debug for more details[/dim]")

    sys.exit(exit_code)


def _load_inputs(csv_file: str, config_file: Optional[str]):
    config_path = resolve_config_path(config_file)
    console.print(f"[dim]Loading configuration from {config_path or 'defaults'}...[/dim]")
    config = load_config(config_path)

    candles = load_candles_csv(csv_file)
    if not candles:
        raise InvalidInputError(f"No candles found in {csv_file}")

    console.print(f"[cyan]Loaded {len(candles)} candles ({candles[0].date} to {candles[-1].date})[/cyan]")
    return config, candles


@app.command()
def backtest(
    csv_file: str = typer.Argument(..., help="Candle CSV with date, open, high, low, close, volume"),
    config_file: Optional[str] = typer.Option(
        None,
        "--config-file", "-c",
        help="Path to configuration file"
    ),
    output_dir: Optional[str] = typer.Option(
        None,
        "--output-dir", "-o",
        help="Write the performance report to this directory"
    ),
    debug: bool = typer.Option(
        False,
        "--debug", "-d",
        help="Enable debug logging"
    )
):
    """
    Backtest the DTI strategy with the configured parameters.
    """
    setup_logging(debug)

    try:
        config, candles = _load_inputs(csv_file, config_file)
        params = trading_parameters_from_config(config)
        indicator = config['indicator']

        series = build_indicator_series(candles, indicator['r'], indicator['s'], indicator['u'])
        result = run_backtest(candles, series, params)
        metrics = compute_metrics(result.completed_trades)

        Reporter(console).display_backtest(metrics, result)

        if output_dir:
            analyzer = PerformanceAnalyzer(result, params)
            report = analyzer.generate_performance_report(output_dir)
            console.print(f"\n[green]✓ Report written to {report['summary']}[/green]")

    except KeyboardInterrupt:
        console.print("\n[yellow]Backtest interrupted by user[/yellow]")
        sys.exit(EXIT_SUCCESS)

    except Exception as e:
        handle_error(e, debug)


@app.command()
def optimize(
    csv_file: str = typer.Argument(..., help="Candle CSV with date, open, high, low, close, volume"),
    config_file: Optional[str] = typer.Option(
        None,
        "--config-file", "-c",
        help="Path to configuration file"
    ),
    top: int = typer.Option(
        10,
        "--top", "-n",
        help="Number of top combinations to list"
    ),
    debug: bool = typer.Option(
        False,
        "--debug", "-d",
        help="Enable debug logging"
    )
):
    """
    Grid-search DTI and trading parameters over the configured ranges.
    """
    setup_logging(debug)

    try:
        config, candles = _load_inputs(csv_file, config_file)
        optimization = config['optimization']
        ranges = param_ranges_from_config(config)

        console.print(f"[dim]Evaluating {ranges.cardinality()} combinations...[/dim]")
        optimizer = ParameterOptimizer(
            build_indicator_series,
            max_workers=optimization['max_workers'],
            min_trades=optimization['min_trades']
        )
        result = optimizer.optimize(
            candles, ranges,
            seven_day_filter_enabled=config['trading']['seven_day_filter_enabled']
        )

        Reporter(console).display_optimization(result, top)

    except KeyboardInterrupt:
        console.print("\n[yellow]Optimization interrupted by user[/yellow]")
        sys.exit(EXIT_SUCCESS)

    except Exception as e:
        handle_error(e, debug)


@app.command()
def forecast(
    csv_file: str = typer.Argument(..., help="Candle CSV with date, open, high, low, close, volume"),
    config_file: Optional[str] = typer.Option(
        None,
        "--config-file", "-c",
        help="Path to configuration file"
    ),
    seed: Optional[int] = typer.Option(
        None,
        "--seed",
        help="Random seed for reproducible Monte Carlo paths"
    ),
    output: Optional[str] = typer.Option(
        None,
        "--output", "-o",
        help="Write the forecast summary to this JSON file"
    ),
    debug: bool = typer.Option(
        False,
        "--debug", "-d",
        help="Enable debug logging"
    )
):
    """
    Forecast the price path using the ensemble of predictors.
    """
    setup_logging(debug)

    try:
        config, candles = _load_inputs(csv_file, config_file)
        params = trading_parameters_from_config(config)
        indicator = config['indicator']
        settings = config['forecast']

        # Historical trades feed the pattern predictor
        series = build_indicator_series(candles, indicator['r'], indicator['s'], indicator['u'])
        history = run_backtest(candles, series, params)
        latest = series.latest()
        reading = IndicatorReading(daily=latest.daily_value, weekly=latest.seven_day_value)

        rng = np.random.default_rng(seed if seed is not None else settings['seed'])
        engine = ForecastEngine(
            horizon=settings['horizon_days'],
            iterations=settings['iterations'],
            risk_free_rate=settings['risk_free_rate'],
            rng=rng
        )
        result = engine.forecast(candles, list(history.completed_trades), reading,
                                 generated_at=datetime.now())

        reporter = Reporter(console)
        reporter.display_forecast(result, settings['horizon_days'])
        if output:
            reporter.save_json(result.to_dict(), output)

    except KeyboardInterrupt:
        console.print("\n[yellow]Forecast interrupted by user[/yellow]")
        sys.exit(EXIT_SUCCESS)

    except Exception as e:
        handle_error(e, debug)


@app.command()
def version():
    """Show version information."""
    from . import __version__
    console.print(f"DTI Trader v{__version__}")


if __name__ == "__main__":
    app()
