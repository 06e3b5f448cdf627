"""
State persistence: crash-recovery bookkeeping snapshot.

The snapshot is informational on restart. Trade history and the initial
portfolio value are restored; resting orders are always reconciled fresh
from the exchange.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from pmmbot.core.json_utils import dumps, dumps_pretty, loads
from pmmbot.core.models import RestingOrder, Trade

log = logging.getLogger("pmmbot")

STATE_VERSION = 1


@dataclass
class BotState:
    symbol: str
    timestamp: float = field(default_factory=time.time)
    active_orders: List[RestingOrder] = field(default_factory=list)
    trade_history: List[Trade] = field(default_factory=list)
    initial_portfolio_value: Optional[Decimal] = None
    cumulative_pnl: Decimal = Decimal("0")
    total_trades: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "symbol": self.symbol,
            "timestamp": self.timestamp,
            "active_orders": [o.to_dict() for o in self.active_orders],
            "trade_history": [t.to_dict() for t in self.trade_history],
            "initial_portfolio_value": (
                str(self.initial_portfolio_value) if self.initial_portfolio_value is not None else None
            ),
            "cumulative_pnl": str(self.cumulative_pnl),
            "total_trades": self.total_trades,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotState":
        initial = data.get("initial_portfolio_value")
        return cls(
            symbol=str(data["symbol"]),
            timestamp=float(data.get("timestamp", 0.0)),
            active_orders=[RestingOrder.from_dict(o) for o in data.get("active_orders", [])],
            trade_history=[Trade.from_dict(t) for t in data.get("trade_history", [])],
            initial_portfolio_value=Decimal(initial) if initial is not None else None,
            cumulative_pnl=Decimal(data.get("cumulative_pnl", "0")),
            total_trades=int(data.get("total_trades", 0)),
        )


class StateStore:
    """One JSON file per symbol, replaced atomically via a tmp file."""

    def __init__(self, symbol: str, state_dir: str) -> None:
        safe = symbol.replace(":", "_").replace("/", "_")
        self.symbol = symbol
        self.path = Path(state_dir) / f"pmm_state_{safe}.json"
        self.tmp = self.path.with_suffix(".tmp")
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Optional[BotState]:
        if not self.path.exists():
            return None
        try:
            state = BotState.from_dict(loads(self.path.read_bytes()))
        except (OSError, ValueError, KeyError, TypeError, ArithmeticError) as exc:
            log.error(dumps({"event": "state_load_error", "path": str(self.path), "err": str(exc)}))
            return None
        if state.symbol != self.symbol:
            log.warning(dumps({"event": "state_symbol_mismatch", "expected": self.symbol, "found": state.symbol}))
            return None
        return state

    def save(self, state: BotState) -> None:
        try:
            self.tmp.write_bytes(dumps_pretty(state.to_dict()))
            self.tmp.replace(self.path)
        except OSError as exc:
            log.error(dumps({"event": "state_save_error", "path": str(self.path), "err": str(exc)}))


class AtomicStateStore:
    """
    Async wrapper: file IO runs in an executor, serialised by an asyncio.Lock
    so concurrent saves never interleave.
    """

    def __init__(self, symbol: str, state_dir: str) -> None:
        self._store = StateStore(symbol, state_dir)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._store.path

    async def load(self) -> Optional[BotState]:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._store.load)

    async def save(self, state: BotState) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, lambda: self._store.save(state))
