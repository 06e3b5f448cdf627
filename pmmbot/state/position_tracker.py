"""
PositionManager: the long-only inventory model for one instrument.

At most one open Position at a time. A buy fill opens it, sell fills
reduce it, and it is replaced with "no position" once fully sold.
Opening while one is already open force-closes the previous one first;
that is an anomaly and is logged as such.

Not locked internally; the control loop's mutex serialises access.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Optional

from pmmbot.core.json_utils import dumps
from pmmbot.core.models import HUNDRED, ZERO, Position
from pmmbot.core.rounding import round_up, step_for

log = logging.getLogger("pmmbot")

ONE = Decimal("1")


@dataclass
class ReduceResult:
    """Outcome of applying a sell quantity to the position."""
    quantity: Decimal  # quantity taken out of the position
    realized_pnl: Decimal
    closed: bool


class PositionManager:

    def __init__(
        self,
        symbol: str,
        target_spread_pct: Decimal,
        price_decimals: int,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.symbol = symbol
        self.target_spread_pct = target_spread_pct
        self.price_decimals = price_decimals
        self._position: Optional[Position] = None
        self._opened_by: Optional[str] = None
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, dumps({"event": event, "symbol": self.symbol, **kwargs}))

    @property
    def position(self) -> Optional[Position]:
        """The open position, or None."""
        return self._position

    @property
    def has_open_position(self) -> bool:
        return self._position is not None

    @property
    def opened_by(self) -> Optional[str]:
        """Order id of the buy that opened the current position."""
        return self._opened_by

    def target_for(self, entry_price: Decimal) -> Decimal:
        """entry * (1 + target_spread/100), rounded up, at least one tick above entry."""
        target = round_up(entry_price * (ONE + self.target_spread_pct / HUNDRED), self.price_decimals)
        if target <= entry_price:
            target = round_up(entry_price, self.price_decimals) + step_for(self.price_decimals)
        return target

    def open_position(self, entry_price: Decimal, quantity: Decimal, order_id: Optional[str] = None) -> Position:
        if self._position is not None:
            prev = self._position
            self._log_event(
                "position_force_closed",
                level=logging.WARNING,
                reason="open_while_open",
                prev_entry=prev.entry_price,
                prev_qty=prev.quantity,
                prev_order_id=self._opened_by,
                new_order_id=order_id,
            )
            self.close_position(reason="superseded")

        self._position = Position(
            symbol=self.symbol,
            entry_price=entry_price,
            quantity=quantity,
            target_exit_price=self.target_for(entry_price),
        )
        self._opened_by = order_id
        self._log_event(
            "position_opened",
            entry=entry_price,
            qty=quantity,
            target=self._position.target_exit_price,
            order_id=order_id,
        )
        return self._position

    def add_to_position(self, price: Decimal, quantity: Decimal) -> Position:
        """Grow the open position from a further fill of the same buy order."""
        pos = self._position
        if pos is None:
            raise ValueError("no open position to add to")
        total = pos.quantity + quantity
        entry = (pos.entry_price * pos.quantity + price * quantity) / total
        self._position = Position(
            symbol=self.symbol,
            entry_price=entry,
            quantity=total,
            target_exit_price=max(pos.target_exit_price, self.target_for(entry)),
            opened_at=pos.opened_at,
        )
        self._log_event("position_increased", entry=entry, qty=total)
        return self._position

    def reduce_position(self, quantity: Decimal, price: Decimal) -> ReduceResult:
        """Apply a sell. Closes the position when nothing is left."""
        pos = self._position
        if pos is None:
            return ReduceResult(quantity=ZERO, realized_pnl=ZERO, closed=False)
        taken = min(quantity, pos.quantity)
        pnl = (price - pos.entry_price) * taken
        remaining = pos.quantity - taken
        if remaining <= 0:
            self.close_position(exit_price=price, reason="sold")
            return ReduceResult(quantity=taken, realized_pnl=pnl, closed=True)
        pos.quantity = remaining
        self._log_event("position_reduced", sold=taken, remaining=remaining, pnl=pnl)
        return ReduceResult(quantity=taken, realized_pnl=pnl, closed=False)

    def close_position(self, exit_price: Optional[Decimal] = None, reason: str = "closed") -> Optional[Position]:
        pos = self._position
        if pos is None:
            return None
        pos.is_open = False
        pos.closed_at = time.time()
        self._position = None
        self._opened_by = None
        self._log_event("position_closed", reason=reason, entry=pos.entry_price, exit=exit_price, qty=pos.quantity)
        return pos

    def update_target_exit_price(self, target: Decimal) -> Position:
        """
        Move the target exit price.

        Raises:
            ValueError: no open position, or target not strictly above entry
        """
        pos = self._position
        if pos is None:
            raise ValueError("no open position")
        if target <= pos.entry_price:
            raise ValueError(f"target exit {target} must be > entry {pos.entry_price}")
        pos.target_exit_price = target
        self._log_event("position_target_updated", target=target)
        return pos
