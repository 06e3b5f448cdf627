"""
ExecutionGateway: order lifecycle executor for one instrument.

Single entry point for every mutating order operation:
- place / cancel a single order
- modify, defined as cancel(old) then place(new)
- cancel all (best effort)
- reconcile the local map with the exchange's open orders

A successful cancel is also a final order state. Its cumulative fill is
handed to on_order_final (the fill processor, wired by the control loop)
so inventory bought or sold before the cancel is never dropped. When the
venue does not report the fill, the order is parked for the poller.

Failure semantics:
    Business rejections come back as result objects. Transport and auth
    failures (ExchangeError) propagate to the caller; nothing here
    retries or backs off. The one exception is modify: once the cancel
    has succeeded, a failing place is reported as REPLACEMENT_LOST so
    the caller knows the side is now unquoted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, List, Optional, TYPE_CHECKING

from pmmbot.core.json_utils import dumps
from pmmbot.core.models import Instrument, OrderStatus, OrderType, OrderUpdate, RestingOrder, Side
from pmmbot.exchange.errors import ExchangeError
from pmmbot.execution.order_manager import OrderManager

if TYPE_CHECKING:
    from pmmbot.exchange.base import ExchangeClient
    from pmmbot.monitoring.metrics import MarketMakerMetrics

log = logging.getLogger("pmmbot")


class ModifyOutcome(str, Enum):
    REPLACED = "replaced"
    FAILED = "failed"  # nothing changed on the exchange
    REPLACEMENT_LOST = "replacement_lost"  # old order cancelled, new one not placed


@dataclass
class PlaceResult:
    """Result of order placement."""
    success: bool
    order: Optional[RestingOrder] = None
    error: Optional[str] = None

    @property
    def order_id(self) -> Optional[str]:
        return self.order.order_id if self.order else None


@dataclass
class CancelResult:
    """Result of a single cancellation."""
    success: bool
    order_id: str
    order: Optional[RestingOrder] = None
    final: Optional[OrderUpdate] = None
    error: Optional[str] = None


@dataclass
class ModifyResult:
    outcome: ModifyOutcome
    old_order_id: str
    new_order: Optional[RestingOrder] = None
    error: Optional[str] = None

    @property
    def replacement_lost(self) -> bool:
        return self.outcome is ModifyOutcome.REPLACEMENT_LOST


@dataclass
class CancelAllResult:
    success: bool
    cancelled: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def cancelled_count(self) -> int:
        return len(self.cancelled)


@dataclass
class ReconcileResult:
    open_count: int
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


@dataclass
class ExecutionGatewayConfig:
    order_type: OrderType = OrderType.LIMIT


class ExecutionGateway:
    """
    Owns the authoritative map of resting orders (via OrderManager).

    Callers must hold the control loop's mutex around every call.
    """

    def __init__(
        self,
        instrument: Instrument,
        exchange: "ExchangeClient",
        order_manager: Optional[OrderManager] = None,
        metrics: Optional["MarketMakerMetrics"] = None,
        config: Optional[ExecutionGatewayConfig] = None,
        log_event: Optional[Callable[..., None]] = None,
        on_order_final: Optional[Callable[[OrderUpdate], Any]] = None,
    ) -> None:
        self.instrument = instrument
        self.exchange = exchange
        self.order_manager = order_manager or OrderManager()
        self.metrics = metrics
        self.config = config or ExecutionGatewayConfig()
        self.on_order_final = on_order_final
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, dumps({"event": event, "symbol": self.instrument.symbol, **kwargs}))

    @property
    def symbol(self) -> str:
        return self.instrument.symbol

    def _update_gauges(self) -> None:
        if self.metrics:
            for side, count in self.order_manager.count_by_side().items():
                self.metrics.resting_orders.labels(symbol=self.symbol, side=side).set(count)

    # ========== Place / Cancel ==========

    async def place(self, side: Side, price: Decimal, quantity: Decimal) -> PlaceResult:
        """
        Submit a limit order.

        On success the order is inserted into the map under the exchange id.
        On rejection nothing is inserted and the reason is returned.

        Raises:
            ExchangeError: transport/auth failure (map untouched)
        """
        res = await self.exchange.place_order(self.symbol, side, self.config.order_type, quantity, price)
        if not res.success or not res.order_id:
            error = res.error or "place rejected"
            self._log_event("order_rejected", level=logging.WARNING, side=side.value, price=price, qty=quantity, err=error)
            if self.metrics:
                self.metrics.orders_rejected.labels(symbol=self.symbol, side=side.value).inc()
            return PlaceResult(success=False, error=error)

        order = res.order or RestingOrder(order_id=res.order_id, side=side, price=price, quantity=quantity)
        self.order_manager.register(order)
        self._log_event("order_placed", order_id=order.order_id, side=side.value, price=price, qty=quantity)
        if self.metrics:
            self.metrics.orders_placed.labels(symbol=self.symbol, side=side.value).inc()
        self._update_gauges()
        return PlaceResult(success=True, order=order)

    async def cancel(self, order_id: str, reason: str = "requote") -> CancelResult:
        """
        Cancel a known order.

        On success the entry is removed from the map and the final update
        (cumulative fill, CANCELED) goes to on_order_final. On failure the
        entry stays (the order may still be resting).

        Raises:
            ExchangeError: transport/auth failure (map untouched)
        """
        res = await self.exchange.cancel_order(self.symbol, order_id)
        if not res.success:
            error = res.error or "cancel rejected"
            self._log_event("cancel_failed", level=logging.WARNING, order_id=order_id, reason=reason, err=error)
            return CancelResult(success=False, order_id=order_id, error=error)

        order = self.order_manager.pop(order_id)
        final = self._final_update(order, res.order)
        if final is None and order is not None:
            self.order_manager.park_unresolved(order)
        self._log_event(
            "order_cancelled",
            order_id=order_id,
            reason=reason,
            filled=final.filled_quantity if final else None,
        )
        if self.metrics:
            self.metrics.orders_cancelled.labels(symbol=self.symbol, reason=reason).inc()
        self._update_gauges()
        if final is not None and self.on_order_final is not None:
            self.on_order_final(final)
        return CancelResult(success=True, order_id=order_id, order=order, final=final)

    @staticmethod
    def _final_update(local: Optional[RestingOrder], reported: Optional[RestingOrder]) -> Optional[OrderUpdate]:
        if reported is None:
            return None
        filled = reported.filled_quantity
        if local is not None:
            filled = max(filled, local.filled_quantity)
        status = reported.status if reported.status.is_terminal else OrderStatus.CANCELED
        return OrderUpdate(
            order_id=reported.order_id,
            side=reported.side,
            price=reported.price,
            filled_quantity=filled,
            status=status,
        )

    # ========== Modify ==========

    async def modify(self, order_id: str, price: Decimal, quantity: Decimal) -> ModifyResult:
        """
        Replace an order: cancel first, then place.

        Never place-before-cancel, so the map never holds two orders this
        gateway placed for the same slot.

        Raises:
            ExchangeError: only if the cancel leg fails in transport (state unknown)
        """
        existing = self.order_manager.lookup(order_id)
        if existing is None:
            return ModifyResult(ModifyOutcome.FAILED, order_id, error="unknown order")
        side = existing.side

        cancel = await self.cancel(order_id, reason="modify")
        if not cancel.success:
            self._record_modify(ModifyOutcome.FAILED)
            return ModifyResult(ModifyOutcome.FAILED, order_id, error=cancel.error)

        try:
            placed = await self.place(side, price, quantity)
            error = placed.error
        except ExchangeError as exc:
            placed = PlaceResult(success=False, error=str(exc))
            error = f"{type(exc).__name__}: {exc}"

        if not placed.success:
            self._log_event(
                "replacement_lost",
                level=logging.ERROR,
                old_order_id=order_id,
                side=side.value,
                price=price,
                qty=quantity,
                err=error,
            )
            self._record_modify(ModifyOutcome.REPLACEMENT_LOST)
            return ModifyResult(ModifyOutcome.REPLACEMENT_LOST, order_id, error=error)

        self._record_modify(ModifyOutcome.REPLACED)
        return ModifyResult(ModifyOutcome.REPLACED, order_id, new_order=placed.order)

    def _record_modify(self, outcome: ModifyOutcome) -> None:
        if self.metrics:
            self.metrics.modify_outcomes.labels(symbol=self.symbol, outcome=outcome.value).inc()

    # ========== Bulk ==========

    async def cancel_all(self, reason: str = "cancel_all", sweep_exchange: bool = False) -> CancelAllResult:
        """
        Best-effort cancel of every resting order.

        Errors are logged and collected, never raised. With sweep_exchange,
        orders the exchange reports open but the map does not know are
        cancelled too.
        """
        errors: List[str] = []
        cancelled: List[str] = []
        targets = [o.order_id for o in self.order_manager.all_orders()]

        if sweep_exchange:
            try:
                for o in await self.exchange.get_open_orders(self.symbol):
                    if o.order_id not in targets:
                        targets.append(o.order_id)
            except ExchangeError as exc:
                errors.append(f"open_orders: {exc}")

        for order_id in targets:
            try:
                res = await self.cancel(order_id, reason=reason)
            except ExchangeError as exc:
                errors.append(f"{order_id}: {exc}")
                continue
            if res.success:
                cancelled.append(order_id)
            else:
                errors.append(f"{order_id}: {res.error}")

        self._log_event(
            "cancel_all",
            level=logging.WARNING if errors else logging.INFO,
            reason=reason,
            cancelled=len(cancelled),
            remaining=self.order_manager.open_count(),
            errors=errors,
        )
        return CancelAllResult(success=not errors, cancelled=cancelled, errors=errors)

    async def reconcile(self) -> ReconcileResult:
        """
        Replace the whole map with the exchange's open orders.

        Raises:
            ExchangeError: map untouched when the read fails
        """
        remote = await self.exchange.get_open_orders(self.symbol)
        before = set(self.order_manager.orders_by_id)
        self.order_manager.replace_all(remote)
        after = set(self.order_manager.orders_by_id)
        result = ReconcileResult(
            open_count=len(after),
            added=sorted(after - before),
            removed=sorted(before - after),
        )
        self._log_event("reconciled", open=result.open_count, added=result.added, removed=result.removed)
        self._update_gauges()
        return result
