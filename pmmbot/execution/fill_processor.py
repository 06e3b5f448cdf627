"""
FillProcessor: applies order updates to the order map, Position and trade history.

Delivery is at-least-once and may repeat. Handling is idempotent:
- a terminal update for an order id already finalised is a no-op
- fill quantity is applied as a delta against what was already applied
  for that order, so a repeated partial-fill update changes nothing

Thread Safety:
    Not locked internally. The caller holds the control loop's mutex.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

from pmmbot.core.json_utils import dumps
from pmmbot.core.models import ZERO, Instrument, OrderUpdate, Side, Trade
from pmmbot.core.utils import BoundedSet
from pmmbot.execution.order_manager import OrderManager
from pmmbot.state.portfolio import PortfolioTracker
from pmmbot.state.position_tracker import PositionManager

if TYPE_CHECKING:
    from pmmbot.monitoring.metrics import MarketMakerMetrics

log = logging.getLogger("pmmbot")


class FillOutcome(str, Enum):
    APPLIED = "applied"          # inventory changed
    STATUS_ONLY = "status_only"  # map updated, no new fill quantity
    DUPLICATE = "duplicate"      # terminal update already handled


@dataclass
class FillResult:
    outcome: FillOutcome
    order_id: str
    side: Side
    fill_delta: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    position_opened: bool = False
    position_closed: bool = False

    @property
    def applied(self) -> bool:
        return self.outcome is FillOutcome.APPLIED


class FillProcessor:

    def __init__(
        self,
        instrument: Instrument,
        order_manager: OrderManager,
        positions: PositionManager,
        portfolio: PortfolioTracker,
        metrics: Optional["MarketMakerMetrics"] = None,
        log_event: Optional[Callable[..., None]] = None,
        max_finalised: int = 5000,
    ) -> None:
        self.instrument = instrument
        self.order_manager = order_manager
        self.positions = positions
        self.portfolio = portfolio
        self.metrics = metrics
        self._finalised = BoundedSet(maxlen=max_finalised)
        self._applied: Dict[str, Decimal] = {}
        self.last_fill_at: float = 0.0
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, dumps({"event": event, "symbol": self.instrument.symbol, **kwargs}))

    def is_finalised(self, order_id: str) -> bool:
        return order_id in self._finalised

    def apply(self, update: OrderUpdate) -> FillResult:
        oid = update.order_id
        if oid in self._finalised:
            self.order_manager.settle(oid)
            self._log_event("order_update_duplicate", level=logging.DEBUG, order_id=oid, status=update.status.value)
            return FillResult(FillOutcome.DUPLICATE, oid, update.side)

        order = self.order_manager.lookup(oid)
        already = self._applied.get(oid, ZERO)
        delta = update.filled_quantity - already
        result = FillResult(FillOutcome.STATUS_ONLY, oid, update.side)

        if delta > 0:
            result = self._apply_fill(update, delta)
            self._applied[oid] = update.filled_quantity

        if update.status.is_terminal:
            self.order_manager.settle(oid)
            self._applied.pop(oid, None)
            self._finalised.add(oid)
            self._log_event(
                "order_final",
                order_id=oid,
                status=update.status.value,
                filled=update.filled_quantity,
                known=order is not None,
            )
        elif order is not None and update.filled_quantity >= order.filled_quantity:
            order.apply_fill(min(update.filled_quantity, order.quantity), update.status, update.ts)

        return result

    def _apply_fill(self, update: OrderUpdate, delta: Decimal) -> FillResult:
        oid = update.order_id
        price = update.price
        result = FillResult(FillOutcome.APPLIED, oid, update.side, fill_delta=delta)
        pnl = ZERO

        if update.side is Side.BUY:
            if self.positions.has_open_position and self.positions.opened_by == oid:
                self.positions.add_to_position(price, delta)
            else:
                self.positions.open_position(price, delta, order_id=oid)
                result.position_opened = True
        else:
            if self.positions.has_open_position:
                reduced = self.positions.reduce_position(delta, price)
                pnl = reduced.realized_pnl
                result.position_closed = reduced.closed
            else:
                self._log_event("sell_without_position", level=logging.WARNING, order_id=oid, qty=delta, price=price)

        result.realized_pnl = pnl
        self.portfolio.record_trade(Trade(
            order_id=oid,
            side=update.side,
            price=price,
            quantity=delta,
            pnl=pnl,
            timestamp=update.ts,
        ))
        self.last_fill_at = time.time()
        self._log_event(
            "fill",
            order_id=oid,
            side=update.side.value,
            price=price,
            qty=delta,
            cum_filled=update.filled_quantity,
            status=update.status.value,
            pnl=pnl,
        )
        if self.metrics:
            self.metrics.fills_total.labels(symbol=self.instrument.symbol, side=update.side.value).inc()
            pos = self.positions.position
            self.metrics.position_qty.labels(symbol=self.instrument.symbol).set(float(pos.quantity) if pos else 0.0)
        return result
