"""
OrderUpdatePoller: REST fallback for order-status delivery.

For venues without a push channel (or when it has gaps) this diffs the
local order map against the exchange:
- an order still open with more fill than we know -> PARTIALLY_FILLED update
- an order no longer open -> its final status from an order query
- a cancelled order parked as unresolved -> its final fill from an order query

Thread Safety:
    Reads the order map; the caller holds the control loop's mutex and
    applies the returned updates itself.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from pmmbot.core.json_utils import dumps
from pmmbot.core.models import Instrument, OrderStatus, OrderUpdate, RestingOrder
from pmmbot.exchange.errors import ExchangeRejectedError
from pmmbot.execution.order_manager import OrderManager

if TYPE_CHECKING:
    from pmmbot.exchange.base import ExchangeClient

log = logging.getLogger("pmmbot")


@dataclass
class OrderPollerConfig:
    poll_interval_sec: float = 5.0


@dataclass
class PollResult:
    updates: List[OrderUpdate] = field(default_factory=list)
    duration_ms: float = 0.0


class OrderUpdatePoller:

    def __init__(
        self,
        instrument: Instrument,
        exchange: "ExchangeClient",
        order_manager: OrderManager,
        config: Optional[OrderPollerConfig] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.instrument = instrument
        self.exchange = exchange
        self.order_manager = order_manager
        self.config = config or OrderPollerConfig()
        self._last_poll_time: float = 0.0
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, dumps({"event": event, "symbol": self.instrument.symbol, **kwargs}))

    @property
    def is_poll_due(self) -> bool:
        return time.time() - self._last_poll_time >= self.config.poll_interval_sec

    async def poll_if_due(self, force: bool = False) -> PollResult:
        if not force and not self.is_poll_due:
            return PollResult()
        return await self.poll()

    async def poll(self) -> PollResult:
        """
        Raises:
            ExchangeError: transport/auth failure on a read (nothing is synthesised)
        """
        started = time.perf_counter()
        self._last_poll_time = time.time()
        local = self.order_manager.all_orders()
        parked = self.order_manager.unresolved_orders()
        if not local and not parked:
            return PollResult()

        updates: List[OrderUpdate] = []
        for order in parked:
            resolved = await self._resolve_vanished(order)
            if resolved is not None:
                updates.append(resolved)

        remote: Dict[str, RestingOrder] = {}
        if local:
            remote = {o.order_id: o for o in await self.exchange.get_open_orders(self.instrument.symbol)}
        for order in local:
            live = remote.get(order.order_id)
            if live is not None:
                if live.filled_quantity > order.filled_quantity:
                    updates.append(self._to_update(live, OrderStatus.PARTIALLY_FILLED))
                continue
            resolved = await self._resolve_vanished(order)
            if resolved is not None:
                updates.append(resolved)

        duration_ms = (time.perf_counter() - started) * 1000
        if updates:
            self._log_event(
                "order_poll",
                updates=[(u.order_id, u.status.value, u.filled_quantity) for u in updates],
                duration_ms=round(duration_ms, 2),
            )
        return PollResult(updates=updates, duration_ms=duration_ms)

    async def _resolve_vanished(self, order: RestingOrder) -> Optional[OrderUpdate]:
        try:
            final = await self.exchange.get_order(self.instrument.symbol, order.order_id)
        except ExchangeRejectedError as exc:
            # Venue no longer knows the order; keep the fill we last saw
            self._log_event(
                "order_vanished",
                level=logging.WARNING,
                order_id=order.order_id,
                err=str(exc),
            )
            return self._to_update(order, OrderStatus.CANCELED)
        if not final.status.is_terminal:
            # Open-orders snapshot raced the order query; still live
            return None
        return self._to_update(final, final.status)

    @staticmethod
    def _to_update(order: RestingOrder, status: OrderStatus) -> OrderUpdate:
        return OrderUpdate(
            order_id=order.order_id,
            side=order.side,
            price=order.price,
            filled_quantity=order.filled_quantity,
            status=status,
        )
