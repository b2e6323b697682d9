"""Reporting module for displaying backtest, optimization and forecast results."""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, Optional

from rich.console import Console
from rich.table import Table

from backtesting.backtest_engine import BacktestResult
from backtesting.optimization import OptimizationResult
from backtesting.performance_analyzer import PerformanceMetrics
from forecasting.ensemble import ForecastResult

logger = logging.getLogger(__name__)


def _fmt_factor(value: float) -> str:
    return "inf" if math.isinf(value) else f"{value:.2f}"


class Reporter:
    """
    Handles console display and JSON export of results.

    All user-facing output goes through a rich Console so the library
    packages stay free of print statements.
    """

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def display_backtest(self, metrics: PerformanceMetrics, result: BacktestResult,
                         symbol: str = "") -> None:
        """
        Display backtest metrics and the warm-up window.

        Args:
            metrics: Metrics of the completed trades
            result: Backtest result (for warm-up and open position)
            symbol: Optional instrument label for the title
        """
        title = f"Backtest Results{f' - {symbol}' if symbol else ''}"
        table = Table(title=title, show_header=True, header_style="bold cyan")
        table.add_column("Metric", style="cyan", no_wrap=True)
        table.add_column("Value", justify="right")

        table.add_row("Total Trades", str(metrics.total_trades))
        table.add_row("Winning / Losing", f"{metrics.winning_trades} / {metrics.losing_trades}")
        table.add_row("Win Rate", f"{metrics.win_rate:.1f}%")
        table.add_row("Avg Profit", f"{metrics.avg_profit:.2f}%")
        table.add_row("Total Return", f"{metrics.total_return:.2f}%")
        table.add_row("Profit Factor", _fmt_factor(metrics.profit_factor))
        table.add_row("Max Drawdown", f"{metrics.max_drawdown_percent:.2f}%")
        table.add_row("Avg Holding", f"{metrics.avg_holding_days:.1f} days")
        for reason, count in metrics.exit_reason_counts.items():
            table.add_row(reason.value, str(count))

        self.console.print(table)

        warmup = result.warmup
        self.console.print(f"[dim]Warm-up: {warmup.start_date} to {warmup.end_date} (no entries)[/dim]")

        active = result.active_trade
        if active is not None:
            self.console.print(
                f"[yellow]Open position:[/yellow] entered {active.entry_date} @ "
                f"${active.entry_price:.2f}, {active.current_pl_percent:+.2f}% "
                f"after {active.holding_days} days"
            )

    def display_optimization(self, result: OptimizationResult, top: int = 10) -> None:
        """
        Display the best candidate and the top-scoring qualifying candidates.

        Args:
            result: Grid search result
            top: Number of candidates to list
        """
        self.console.print(f"\n[bold]Evaluated {len(result.all_results)} parameter combinations[/bold]")

        if result.best is None:
            self.console.print("[yellow]No combination produced enough trades to qualify[/yellow]")
            return

        best = result.best.candidate
        self.console.print(
            f"[green]Best:[/green] r={best.r} s={best.s} u={best.u} "
            f"threshold={best.trading.entry_threshold} tp={best.trading.take_profit_percent}% "
            f"sl={best.trading.stop_loss_percent}% max={best.trading.max_holding_days}d "
            f"(score {result.best.score:.2f})"
        )

        ranked = sorted(
            (r for r in result.all_results if not math.isnan(r.score)),
            key=lambda r: r.score,
            reverse=True,
        )[:top]

        table = Table(title=f"Top {len(ranked)} Combinations", show_header=True, header_style="bold cyan")
        for column in ("r", "s", "u", "Threshold", "TP%", "SL%", "Max Days"):
            table.add_column(column, justify="right")
        table.add_column("Trades", justify="right")
        table.add_column("Win Rate", justify="right")
        table.add_column("Return", justify="right")
        table.add_column("Score", justify="right", style="green")

        for r in ranked:
            c = r.candidate
            table.add_row(
                str(c.r), str(c.s), str(c.u),
                f"{c.trading.entry_threshold}",
                f"{c.trading.take_profit_percent}",
                f"{c.trading.stop_loss_percent}",
                str(c.trading.max_holding_days),
                str(r.metrics.total_trades),
                f"{r.metrics.win_rate:.1f}%",
                f"{r.metrics.total_return:.2f}%",
                _fmt_factor(r.score),
            )

        self.console.print(table)

    def display_forecast(self, result: ForecastResult, horizon: int = 30) -> None:
        """
        Display the ensemble forecast with its components and risk.

        Args:
            result: Forecast result
            horizon: Forecast horizon in days, for the title
        """
        ens = result.ensemble
        mc = result.monte_carlo
        pr = ens.price_range

        table = Table(title=f"{horizon}-Day Forecast", show_header=True, header_style="bold cyan")
        table.add_column("Component", style="cyan", no_wrap=True)
        table.add_column("Price", justify="right")
        table.add_column("Weight", justify="right")
        table.add_column("Detail")

        table.add_row("Current", f"${mc.current_price:.2f}", "", "")
        table.add_row(
            "Linear", f"${result.linear.final_price:.2f}",
            f"{ens.weights.get('linear', 0):.3f}",
            f"{result.linear.trend}, R² {result.linear.r2:.2f}",
        )
        table.add_row(
            "Monte Carlo", f"${mc.percentiles.p50:.2f}",
            f"{ens.weights.get('monte_carlo', 0):.3f}",
            f"p5 ${mc.percentiles.p5:.2f} / p95 ${mc.percentiles.p95:.2f}",
        )
        if result.pattern.available:
            table.add_row(
                "Pattern", f"${result.pattern.predicted_price:.2f}",
                f"{ens.weights.get('pattern', 0):.3f}",
                f"{result.pattern.based_on_trades} trades, {result.pattern.win_rate:.0f}% wins",
            )
        else:
            table.add_row("Pattern", "N/A", "-", result.pattern.message)
        table.add_row(
            "[bold]Ensemble[/bold]", f"[bold]${ens.predicted_price:.2f}[/bold]", "",
            f"{ens.expected_return_percent:+.2f}% {ens.classification.label}",
        )

        self.console.print(table)

        self.console.print(
            f"Range: ${pr.low:.2f} - ${pr.high:.2f} "
            f"(extremes ${pr.extreme_low:.2f} - ${pr.extreme_high:.2f})"
        )
        self.console.print(
            f"Confidence: {result.confidence.level} ({result.confidence.score:.0f}/100)"
        )

        tech = result.technical
        self.console.print(
            f"\n[bold]Technical:[/bold] {tech.overall_signal} ({tech.signal_strength}), "
            f"{tech.bullish_percent:.0f}% bullish"
        )
        for signal in tech.signals:
            self.console.print(f"  • {signal.indicator}: {signal.signal} ({signal.strength})")
        self.console.print(f"[dim]{tech.recommendation}[/dim]")

        risk = result.risk_metrics
        self.console.print(f"\n[bold]Risk Metrics:[/bold]")
        self.console.print(f"  • VaR 95%: {risk.value_at_risk_95:.2f}%")
        self.console.print(f"  • Expected Shortfall: {risk.expected_shortfall:.2f}%")
        self.console.print(f"  • Avg Path Drawdown: {risk.max_drawdown:.2f}%")
        self.console.print(f"  • Sharpe Ratio: {risk.sharpe_ratio:.2f}")

    def save_json(self, payload: Dict[str, Any], filepath: str) -> None:
        """
        Save a result payload to a JSON file.

        Args:
            payload: JSON-serializable dictionary
            filepath: Path for the JSON file
        """
        with open(filepath, 'w') as f:
            json.dump(payload, f, indent=2, default=str)

        logger.info(f"Saved results to {filepath}")
        self.console.print(f"\n[green]✓ Results exported to {filepath}[/green]")
