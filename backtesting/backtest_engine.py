"""Core backtesting engine for the DTI oscillator strategy."""

import logging
from dataclasses import asdict, dataclass, replace
from datetime import date
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from dtitrader.exceptions import InvalidInputError

from .data_manager import Candle, IndicatorSeries, validate_alignment

logger = logging.getLogger(__name__)

# No entries during the first months of history while the indicator settles
WARMUP_MONTHS = 6


@dataclass(frozen=True)
class TradingParameters:
    """Entry and exit rules for a backtest run."""
    entry_threshold: float
    take_profit_percent: float
    stop_loss_percent: float
    max_holding_days: int
    seven_day_filter_enabled: bool

    def validate(self) -> 'TradingParameters':
        """Raise InvalidInputError if any rule is out of range."""
        if self.take_profit_percent is None or self.take_profit_percent <= 0:
            raise InvalidInputError("take_profit_percent must be a positive number")
        if self.stop_loss_percent is None or self.stop_loss_percent <= 0:
            raise InvalidInputError("stop_loss_percent must be a positive number")
        if (isinstance(self.max_holding_days, bool)
                or not isinstance(self.max_holding_days, int)
                or self.max_holding_days <= 0):
            raise InvalidInputError("max_holding_days must be a positive integer")
        if self.entry_threshold is None:
            raise InvalidInputError("entry_threshold is required")
        return self


class ExitReason(str, Enum):
    """Why a trade was closed."""
    TAKE_PROFIT = 'Take Profit'
    STOP_LOSS = 'Stop Loss'
    TIME_EXIT = 'Time Exit'


def days_between(start: date, end: date) -> int:
    """Whole calendar days from start to end."""
    return (end - start).days


def pl_percent(current_price: float, entry_price: float) -> float:
    """Profit/loss of a long position in percent."""
    return (current_price - entry_price) / entry_price * 100


@dataclass(frozen=True)
class Trade:
    """A long position, open until exit_date and exit_reason are set."""
    entry_date: date
    entry_price: float
    entry_indicator_value: float
    entry_seven_day_value: float
    current_price: float
    current_pl_percent: float = 0.0
    holding_days: int = 0
    exit_date: Optional[date] = None
    exit_price: Optional[float] = None
    exit_reason: Optional[ExitReason] = None
    pl_percent: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.exit_date is None or self.exit_reason is None

    def refresh(self, current_date: date, current_price: float) -> 'Trade':
        """Return a copy marked to ``current_price`` on ``current_date``."""
        if not self.is_open:
            raise InvalidInputError(f"Trade entered {self.entry_date} is already closed")
        return replace(
            self,
            current_price=current_price,
            current_pl_percent=pl_percent(current_price, self.entry_price),
            holding_days=days_between(self.entry_date, current_date),
        )

    def close(self, exit_date: date, exit_price: float, reason: ExitReason) -> 'Trade':
        """Return the closed version of this trade."""
        if not self.is_open:
            raise InvalidInputError(f"Trade entered {self.entry_date} is already closed")
        pl = pl_percent(exit_price, self.entry_price)
        return replace(
            self,
            current_price=exit_price,
            current_pl_percent=pl,
            holding_days=days_between(self.entry_date, exit_date),
            exit_date=exit_date,
            exit_price=exit_price,
            exit_reason=ExitReason(reason),
            pl_percent=pl,
        )

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['entry_date'] = self.entry_date.isoformat()
        data['exit_date'] = self.exit_date.isoformat() if self.exit_date else None
        data['exit_reason'] = ExitReason(self.exit_reason).value if self.exit_reason else None
        return data


@dataclass(frozen=True)
class WarmupWindow:
    """Span at the start of the history during which entries are blocked."""
    start_date: date
    end_date: date


@dataclass(frozen=True)
class BacktestResult:
    """Completed trades plus the trade still open at the end of the data."""
    completed_trades: Tuple[Trade, ...]
    active_trade: Optional[Trade]
    warmup: WarmupWindow

    def all_trades(self) -> List[Trade]:
        """Completed trades followed by the active one, if any."""
        trades = list(self.completed_trades)
        if self.active_trade is not None:
            trades.append(self.active_trade)
        return trades

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'completed_trades': [t.to_dict() for t in self.completed_trades],
            'active_trade': self.active_trade.to_dict() if self.active_trade else None,
            'warmup': {
                'start_date': self.warmup.start_date.isoformat(),
                'end_date': self.warmup.end_date.isoformat(),
            },
        }


def warmup_end(first_date: date, months: int = WARMUP_MONTHS) -> date:
    """First date on which entries are allowed."""
    return (pd.Timestamp(first_date) + pd.DateOffset(months=months)).date()


class BacktestEngine:
    """Replays a candle series day by day holding at most one position."""

    def __init__(self, params: TradingParameters):
        """Initialize with validated trading parameters."""
        self.params = params.validate()

    def run(self, candles: Sequence[Candle], series: IndicatorSeries) -> BacktestResult:
        """Run a complete backtest.

        Args:
            candles: Date-ordered candles
            series: Indicator values aligned with ``candles``

        Returns:
            BacktestResult with closed trades, the open trade (if any) and the
            warm-up window

        Raises:
            InvalidInputError: If the series does not line up with the candles,
                or the 7-day filter is on and a day has no 7-day period
        """
        validate_alignment(candles, series)

        warmup = WarmupWindow(
            start_date=candles[0].date,
            end_date=warmup_end(candles[0].date),
        )
        daily = series.daily_values
        seven_day = series.seven_day_values
        if self.params.seven_day_filter_enabled:
            previous_period = series.previous_period_lookup()
        else:
            previous_period = [None] * len(candles)

        completed: List[Trade] = []
        active: Optional[Trade] = None

        for i in range(1, len(candles)):
            candle = candles[i]

            if active is not None:
                # Exit and entry are exclusive within one step
                active = self._process_exit(active, candle)
                if not active.is_open:
                    completed.append(active)
                    logger.debug(
                        f"Exit {active.exit_date} @ {active.exit_price:.2f} "
                        f"({active.exit_reason.value}, {active.pl_percent:.2f}%)"
                    )
                    active = None
            elif self._entry_signal(
                candle.date, warmup.end_date,
                daily[i], daily[i - 1],
                seven_day[i], previous_period[i]
            ):
                active = Trade(
                    entry_date=candle.date,
                    entry_price=candle.close,
                    entry_indicator_value=daily[i],
                    entry_seven_day_value=seven_day[i],
                    current_price=candle.close,
                )
                logger.debug(f"Entry {candle.date} @ {candle.close:.2f} (DTI {daily[i]:.2f})")

        logger.info(
            f"Backtest complete: {len(completed)} closed trades, "
            f"{'1 open' if active else 'no open'} position"
        )
        return BacktestResult(
            completed_trades=tuple(completed),
            active_trade=active,
            warmup=warmup,
        )

    def _process_exit(self, trade: Trade, candle: Candle) -> Trade:
        """Close the trade if an exit rule fires, otherwise mark it to market."""
        updated = trade.refresh(candle.date, candle.close)
        pl = updated.current_pl_percent

        # Fixed precedence: target, stop, time
        if pl >= self.params.take_profit_percent:
            reason = ExitReason.TAKE_PROFIT
        elif pl <= -self.params.stop_loss_percent:
            reason = ExitReason.STOP_LOSS
        elif updated.holding_days >= self.params.max_holding_days:
            reason = ExitReason.TIME_EXIT
        else:
            return updated

        return trade.close(candle.date, candle.close, reason)

    def _entry_signal(self, current_date: date, eligible_from: date,
                      current_dti: float, previous_dti: float,
                      current_7day: float, previous_7day: Optional[float]) -> bool:
        """Check whether entry conditions are met with no position open."""
        if current_date < eligible_from:
            return False

        seven_day_ok = True
        if self.params.seven_day_filter_enabled and previous_7day is not None:
            seven_day_ok = current_7day > previous_7day

        return (
            current_dti < self.params.entry_threshold
            and current_dti > previous_dti
            and seven_day_ok
        )


def run_backtest(candles: Sequence[Candle], series: IndicatorSeries,
                 params: TradingParameters) -> BacktestResult:
    """Run a backtest of ``params`` over ``candles``."""
    return BacktestEngine(params).run(candles, series)
