"""Performance analysis tools for backtesting results."""

import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from dtitrader.exceptions import InvalidInputError

from .backtest_engine import BacktestResult, ExitReason, Trade, TradingParameters, days_between

logger = logging.getLogger(__name__)

STARTING_EQUITY = 100.0


def _zero_exit_counts() -> Dict[ExitReason, int]:
    return {reason: 0 for reason in ExitReason}


def _exit_reason(trade: Trade) -> ExitReason:
    try:
        return ExitReason(trade.exit_reason)
    except ValueError:
        raise InvalidInputError(
            f"Unknown exit reason {trade.exit_reason!r} for trade entered {trade.entry_date}"
        ) from None


@dataclass(frozen=True)
class PerformanceMetrics:
    """Aggregate statistics of a closed trade set."""
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    avg_profit: float = 0.0
    total_return: float = 0.0
    profit_factor: float = 0.0
    max_drawdown_percent: float = 0.0
    avg_holding_days: float = 0.0
    exit_reason_counts: Dict[ExitReason, int] = field(default_factory=_zero_exit_counts)
    equity_curve: Tuple[float, ...] = (STARTING_EQUITY,)

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'total_trades': self.total_trades,
            'winning_trades': self.winning_trades,
            'losing_trades': self.losing_trades,
            'win_rate': self.win_rate,
            'avg_profit': self.avg_profit,
            'total_return': self.total_return,
            # JSON has no infinity
            'profit_factor': self.profit_factor if math.isfinite(self.profit_factor) else None,
            'max_drawdown_percent': self.max_drawdown_percent,
            'avg_holding_days': self.avg_holding_days,
            'exit_reason_counts': {r.value: n for r, n in self.exit_reason_counts.items()},
            'equity_curve': list(self.equity_curve),
        }


def closed_trades(trades: Iterable[Trade]) -> List[Trade]:
    """Trades with both an exit date and an exit reason, ordered by exit date."""
    done = [t for t in trades if t.exit_date is not None and t.exit_reason is not None]
    return sorted(done, key=lambda t: t.exit_date)


def equity_curve(returns: Iterable[float]) -> List[float]:
    """Compound per-trade percent returns onto a starting equity of 100."""
    curve = [STARTING_EQUITY]
    for r in returns:
        curve.append(curve[-1] * (1 + r / 100))
    return curve


def max_drawdown_percent(curve: Iterable[float]) -> float:
    """Largest peak-to-trough decline of an equity curve in percent."""
    values = np.asarray(list(curve), dtype=float)
    if values.size == 0:
        return 0.0
    running_peak = np.maximum.accumulate(values)
    drawdowns = np.where(running_peak > 0, (running_peak - values) / running_peak * 100, 0.0)
    return float(drawdowns.max())


def profit_factor(gross_profit: float, gross_loss: float) -> float:
    """Gross profit over gross loss, inf with no losses, 0 with no activity."""
    if gross_loss > 0:
        return gross_profit / gross_loss
    return float('inf') if gross_profit > 0 else 0.0


def compute_metrics(trades: Iterable[Trade]) -> PerformanceMetrics:
    """Reduce a trade set to performance statistics.

    Open trades are ignored. An empty closed set yields zeroed metrics with
    an equity curve of ``(100.0,)``.

    Args:
        trades: Any mix of open and closed trades

    Returns:
        PerformanceMetrics
    """
    completed = closed_trades(trades)
    if not completed:
        return PerformanceMetrics()

    returns = [t.pl_percent for t in completed]
    wins = [r for r in returns if r > 0]
    losses = [r for r in returns if r <= 0]

    gross_profit = sum(wins)
    gross_loss = sum(abs(r) for r in losses)

    counts = _zero_exit_counts()
    for t in completed:
        counts[_exit_reason(t)] += 1

    curve = equity_curve(returns)
    total = len(completed)

    return PerformanceMetrics(
        total_trades=total,
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / total * 100,
        avg_profit=sum(returns) / total,
        total_return=sum(returns),
        profit_factor=profit_factor(gross_profit, gross_loss),
        max_drawdown_percent=max_drawdown_percent(curve),
        avg_holding_days=sum(days_between(t.entry_date, t.exit_date) for t in completed) / total,
        exit_reason_counts=counts,
        equity_curve=tuple(curve),
    )


def calculate_trade_metrics(trades: Iterable[Trade]) -> Dict:
    """Calculate basic trade metrics from trade list as a plain dict."""
    completed = closed_trades(trades)
    metrics = compute_metrics(completed).to_dict()
    if completed:
        returns = [t.pl_percent for t in completed]
        metrics['best_trade'] = max(returns)
        metrics['worst_trade'] = min(returns)
        metrics['median_return'] = float(np.median(returns))
    return metrics


class PerformanceAnalyzer:
    """Analyzes backtest performance and generates reports."""

    def __init__(self, result: BacktestResult, params: Optional[TradingParameters] = None,
                 symbol: str = ""):
        """Initialize with backtest results."""
        self.result = result
        self.params = params
        self.symbol = symbol
        self.metrics = compute_metrics(result.completed_trades)
        self.trades_df = pd.DataFrame([t.to_dict() for t in result.completed_trades])

        if not self.trades_df.empty:
            self.trades_df['entry_date'] = pd.to_datetime(self.trades_df['entry_date'])
            self.trades_df['exit_date'] = pd.to_datetime(self.trades_df['exit_date'])

    def generate_performance_report(self, output_dir: str = "backtest_results") -> Dict:
        """Generate comprehensive performance report.

        Args:
            output_dir: Directory to save reports

        Returns:
            Dict with report paths and key metrics
        """
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        summary = self._generate_summary_report(output_path)
        time_analysis = self._analyze_time_patterns(output_path)
        drawdown_analysis = self._analyze_drawdowns(output_path)

        results_file = output_path / "backtest_results.json"
        payload = {
            'symbol': self.symbol,
            'metrics': self.metrics.to_dict(),
            'result': self.result.to_dict(),
        }
        with open(results_file, 'w') as f:
            json.dump(payload, f, indent=2)

        logger.info(f"Performance report written to {output_path}")
        return {
            'summary': summary,
            'time_analysis': time_analysis,
            'drawdown_analysis': drawdown_analysis,
            'results_file': str(results_file),
            'metrics': self.metrics,
        }

    def _generate_summary_report(self, output_path: Path) -> str:
        """Generate summary performance report."""
        m = self.metrics
        warmup = self.result.warmup
        report_lines = [
            f"# Backtest Performance Summary{f' - {self.symbol}' if self.symbol else ''}",
            f"**Warm-up:** {warmup.start_date} to {warmup.end_date} (no entries)",
            "",
            "## Key Metrics",
            f"- **Total Trades:** {m.total_trades:,}",
            f"- **Win Rate:** {m.win_rate:.1f}%",
            f"- **Average Profit:** {m.avg_profit:.2f}%",
            f"- **Total Return:** {m.total_return:.2f}%",
            f"- **Profit Factor:** {m.profit_factor:.2f}",
            f"- **Max Drawdown:** {m.max_drawdown_percent:.2f}%",
            f"- **Final Equity:** {m.equity_curve[-1]:.2f}",
            ""
        ]

        if not self.trades_df.empty:
            report_lines.extend([
                "## Return Distribution",
                f"- **Best Trade:** {self.trades_df['pl_percent'].max():.2f}%",
                f"- **Worst Trade:** {self.trades_df['pl_percent'].min():.2f}%",
                f"- **Median Return:** {self.trades_df['pl_percent'].median():.2f}%",
                ""
            ])

            report_lines.extend([
                "## Exit Reasons",
                *[f"- **{reason.value}:** {count} trades ({count / m.total_trades:.1%})"
                  for reason, count in m.exit_reason_counts.items()],
                ""
            ])

            report_lines.extend([
                "## Holding Period",
                f"- **Average:** {m.avg_holding_days:.1f} days",
                f"- **Median:** {self.trades_df['holding_days'].median():.0f} days",
                f"- **Range:** {self.trades_df['holding_days'].min()}-{self.trades_df['holding_days'].max()} days",
                ""
            ])

        active = self.result.active_trade
        if active is not None:
            report_lines.extend([
                "## Open Position",
                f"- Entered {active.entry_date} @ {active.entry_price:.2f}, "
                f"now {active.current_pl_percent:+.2f}% after {active.holding_days} days",
                ""
            ])

        if self.params is not None:
            p = self.params
            report_lines.extend([
                "## Configuration",
                f"- **Entry Threshold:** {p.entry_threshold}",
                f"- **Take Profit:** {p.take_profit_percent}%",
                f"- **Stop Loss:** {p.stop_loss_percent}%",
                f"- **Max Holding:** {p.max_holding_days} days",
                f"- **7-Day Filter:** {'on' if p.seven_day_filter_enabled else 'off'}",
                ""
            ])

        report_file = output_path / "performance_summary.md"
        with open(report_file, 'w') as f:
            f.write('\n'.join(report_lines))

        return str(report_file)

    def _analyze_time_patterns(self, output_path: Path) -> str:
        """Analyze performance by entry month."""
        if self.trades_df.empty:
            return ""

        df = self.trades_df.copy()
        df['entry_month'] = df['entry_date'].dt.to_period('M')
        monthly = df.groupby('entry_month')['pl_percent'].agg(['count', 'mean'])
        monthly_win_rates = df.groupby('entry_month')['pl_percent'].apply(lambda x: (x > 0).mean())

        analysis = ["# Time Pattern Analysis\n", "## Monthly Performance\n"]
        for month, stats in monthly.iterrows():
            analysis.extend([
                f"**{month}:**",
                f"- Trades: {int(stats['count'])}, Win Rate: {monthly_win_rates[month]:.1%}, "
                f"Avg Return: {stats['mean']:.2f}%",
                ""
            ])

        time_file = output_path / "time_analysis.md"
        with open(time_file, 'w') as f:
            f.write('\n'.join(analysis))

        return str(time_file)

    def _analyze_drawdowns(self, output_path: Path) -> str:
        """Analyze drawdown periods along the equity curve."""
        if self.trades_df.empty:
            return ""

        sorted_trades = self.trades_df.sort_values('exit_date', kind='stable').copy()
        sorted_trades['equity'] = STARTING_EQUITY * (1 + sorted_trades['pl_percent'] / 100).cumprod()
        running_max = sorted_trades['equity'].expanding().max().clip(lower=STARTING_EQUITY)
        sorted_trades['drawdown'] = (running_max - sorted_trades['equity']) / running_max * 100

        worst = sorted_trades.loc[sorted_trades['drawdown'].idxmax()]
        analysis = [
            "# Drawdown Analysis\n",
            f"**Maximum Drawdown:** {self.metrics.max_drawdown_percent:.2f}%",
            f"**Max DD Date:** {worst['exit_date'].strftime('%Y-%m-%d')}",
            "",
            "## Drawdown Periods",
            ""
        ]

        # Significant drawdown periods (>5%)
        significant = sorted_trades[sorted_trades['drawdown'] > 5]
        if not significant.empty:
            for _, row in significant.iterrows():
                analysis.append(f"- {row['exit_date'].strftime('%Y-%m-%d')}: {row['drawdown']:.2f}%")
        else:
            analysis.append("- No significant drawdown periods (>5%)")

        dd_file = output_path / "drawdown_analysis.md"
        with open(dd_file, 'w') as f:
            f.write('\n'.join(analysis))

        return str(dd_file)
