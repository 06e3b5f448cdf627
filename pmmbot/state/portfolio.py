"""
Portfolio tracking: value in quote terms, cumulative PnL and trade stats.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pmmbot.core.models import HUNDRED, ZERO, Balances, Instrument, Side, Trade


@dataclass(frozen=True)
class PortfolioStats:
    initial_value: Decimal
    current_value: Decimal
    pnl: Decimal
    pnl_pct: Decimal
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate_pct: Decimal
    largest_win: Decimal
    largest_loss: Decimal
    total_volume: Decimal
    session_start: float
    session_duration_sec: float

    def to_dict(self) -> Dict[str, Any]:
        return {k: getattr(self, k) for k in self.__dataclass_fields__}


class PortfolioTracker:

    def __init__(self, instrument: Instrument, max_trades: int = 1000) -> None:
        self.instrument = instrument
        self.max_trades = max_trades
        self.initial_value: Optional[Decimal] = None
        self.current_value: Decimal = ZERO
        self.trades: List[Trade] = []
        self.total_trades: int = 0
        self.session_start = time.time()

    def value_of(self, balances: Balances, mid: Decimal) -> Decimal:
        base = balances.total(self.instrument.base_asset)
        quote = balances.total(self.instrument.quote_asset)
        return base * mid + quote

    def initialize(self, balances: Balances, mid: Optional[Decimal]) -> None:
        """Capture the starting value once; a restored value wins."""
        if mid is None:
            return
        value = self.value_of(balances, mid)
        if self.initial_value is None:
            self.initial_value = value
        self.current_value = value

    def update(self, balances: Balances, mid: Optional[Decimal]) -> None:
        if mid is None:
            return
        self.current_value = self.value_of(balances, mid)
        if self.initial_value is None:
            self.initial_value = self.current_value

    @property
    def pnl(self) -> Decimal:
        if self.initial_value is None:
            return ZERO
        return self.current_value - self.initial_value

    def record_trade(self, trade: Trade) -> None:
        self.trades.append(trade)
        self.total_trades += 1
        if len(self.trades) > self.max_trades:
            del self.trades[: len(self.trades) - self.max_trades]

    def restore(self, initial_value: Optional[Decimal], trades: List[Trade], total_trades: int) -> None:
        self.initial_value = initial_value
        self.trades = list(trades)[-self.max_trades:]
        self.total_trades = max(total_trades, len(self.trades))

    def stats(self) -> PortfolioStats:
        closing = [t for t in self.trades if t.side is Side.SELL]
        wins = [t.pnl for t in closing if t.pnl > 0]
        losses = [t.pnl for t in closing if t.pnl < 0]
        initial = self.initial_value if self.initial_value is not None else ZERO
        pnl = self.pnl
        return PortfolioStats(
            initial_value=initial,
            current_value=self.current_value,
            pnl=pnl,
            pnl_pct=(pnl / initial * HUNDRED) if initial > 0 else ZERO,
            total_trades=self.total_trades,
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate_pct=(Decimal(len(wins)) / Decimal(len(closing)) * HUNDRED) if closing else ZERO,
            largest_win=max(wins, default=ZERO),
            largest_loss=min(losses, default=ZERO),
            total_volume=sum((t.quote_amount for t in self.trades), ZERO),
            session_start=self.session_start,
            session_duration_sec=time.time() - self.session_start,
        )
