"""
Paper venue: in-memory simulated exchange.

Holds balances, rests limit orders with locked funds, and fills an order
in full when the book trades through its price (tests can also fill part
of one with fill_partial). Order updates are pushed to an asyncio queue,
mirroring a venue's user-data stream.

The book is either set directly (tests) or pulled from a live public
feed on every read (paper trading on real prices).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Dict, List, Optional, Union

from pmmbot.core.json_utils import dumps
from pmmbot.core.models import (
    ZERO,
    Balance,
    BookSnapshot,
    Instrument,
    OrderStatus,
    OrderType,
    OrderUpdate,
    RestingOrder,
    Side,
)
from pmmbot.exchange.base import CancelOrderResult, ExchangeClient, OrderResult
from pmmbot.exchange.errors import ExchangeRejectedError, ExchangeTransportError

log = logging.getLogger("pmmbot")

Failure = Union[str, Exception]


@dataclass
class _Wallet:
    available: Decimal = ZERO
    locked: Decimal = ZERO


class PaperExchange:
    """
    Simulated single-instrument venue.

    Failure injection: fail(op, error, times) makes the next `times` calls
    of `op` ("place", "cancel", "book", "balances", "open_orders",
    "get_order") fail. A string error becomes a business rejection for
    place/cancel and an ExchangeTransportError for reads; an exception
    instance is raised as-is.
    """

    def __init__(
        self,
        instrument: Instrument,
        balances: Optional[Dict[str, Decimal]] = None,
        book: Optional[BookSnapshot] = None,
        book_source: Optional[ExchangeClient] = None,
    ) -> None:
        self.instrument = instrument
        self._wallets: Dict[str, _Wallet] = {
            asset: _Wallet(available=amount) for asset, amount in (balances or {}).items()
        }
        self._book = book
        self._book_source = book_source
        self._open: Dict[str, RestingOrder] = {}
        self._history: Dict[str, RestingOrder] = {}
        self._ids = itertools.count(1)
        self._failures: Dict[str, List[Failure]] = {}
        self._updates: asyncio.Queue = asyncio.Queue()
        self.calls: List[str] = []

    # ─────────────────────────────────────────────────────────────────────
    # Test hooks
    # ─────────────────────────────────────────────────────────────────────

    def fail(self, op: str, error: Failure = "injected failure", times: int = 1) -> None:
        self._failures.setdefault(op, []).extend([error] * times)

    def _take_failure(self, op: str) -> Optional[Failure]:
        queue = self._failures.get(op)
        if queue:
            return queue.pop(0)
        return None

    def _raise_read_failure(self, op: str) -> None:
        failure = self._take_failure(op)
        if failure is None:
            return
        if isinstance(failure, Exception):
            raise failure
        raise ExchangeTransportError(f"{op}: {failure}")

    def set_book(self, book: BookSnapshot) -> None:
        self._book = book
        self._match()

    def set_balance(self, asset: str, available: Decimal) -> None:
        self._wallets.setdefault(asset, _Wallet()).available = available

    @property
    def open_orders(self) -> List[RestingOrder]:
        return list(self._open.values())

    # ─────────────────────────────────────────────────────────────────────
    # Matching
    # ─────────────────────────────────────────────────────────────────────

    def _wallet(self, asset: str) -> _Wallet:
        return self._wallets.setdefault(asset, _Wallet())

    def _crosses(self, order: RestingOrder) -> bool:
        book = self._book
        if book is None:
            return False
        if order.side is Side.BUY:
            return book.best_ask is not None and book.best_ask <= order.price
        return book.best_bid is not None and book.best_bid >= order.price

    def _match(self) -> None:
        for order in [o for o in self._open.values() if self._crosses(o)]:
            self._fill(order)

    def _fill(self, order: RestingOrder) -> None:
        base = self._wallet(self.instrument.base_asset)
        quote = self._wallet(self.instrument.quote_asset)
        qty = order.remaining
        if order.side is Side.BUY:
            quote.locked -= order.price * qty
            base.available += qty
        else:
            base.locked -= qty
            quote.available += order.price * qty
        order.apply_fill(order.quantity, OrderStatus.FILLED)
        self._close(order)
        log.info(dumps({
            "event": "paper_fill",
            "symbol": self.instrument.symbol,
            "order_id": order.order_id,
            "side": order.side.value,
            "price": order.price,
            "qty": qty,
        }))

    def fill_partial(self, order_id: str, quantity: Decimal, push: bool = True) -> RestingOrder:
        """
        Fill part of a resting order at its price; it stays open.

        With push=False no update is queued, as on a venue that only
        reports fills through order queries.
        """
        order = self._open[order_id]
        qty = min(quantity, order.remaining)
        base = self._wallet(self.instrument.base_asset)
        quote = self._wallet(self.instrument.quote_asset)
        if order.side is Side.BUY:
            quote.locked -= order.price * qty
            base.available += qty
        else:
            base.locked -= qty
            quote.available += order.price * qty
        order.apply_fill(order.filled_quantity + qty, OrderStatus.PARTIALLY_FILLED)
        if push:
            self._updates.put_nowait(OrderUpdate(
                order_id=order.order_id,
                side=order.side,
                price=order.price,
                filled_quantity=order.filled_quantity,
                status=order.status,
            ))
        return self._copy(order)

    def _close(self, order: RestingOrder) -> None:
        self._open.pop(order.order_id, None)
        self._history[order.order_id] = order
        self._updates.put_nowait(OrderUpdate(
            order_id=order.order_id,
            side=order.side,
            price=order.price,
            filled_quantity=order.filled_quantity,
            status=order.status,
        ))

    def _copy(self, order: RestingOrder) -> RestingOrder:
        return RestingOrder(**{k: getattr(order, k) for k in order.__dataclass_fields__})

    # ─────────────────────────────────────────────────────────────────────
    # ExchangeClient
    # ─────────────────────────────────────────────────────────────────────

    async def get_instrument(self, symbol: str) -> Instrument:
        return self.instrument

    async def get_top_of_book(self, symbol: str, depth: int = 5) -> BookSnapshot:
        self.calls.append("book")
        self._raise_read_failure("book")
        if self._book_source is not None:
            self.set_book(await self._book_source.get_top_of_book(symbol, depth))
        if self._book is None:
            raise ExchangeTransportError("paper book not initialised")
        return self._book

    async def get_balances(self) -> List[Balance]:
        self.calls.append("balances")
        self._raise_read_failure("balances")
        return [Balance(asset, w.available, w.locked) for asset, w in self._wallets.items()]

    async def get_open_orders(self, symbol: str) -> List[RestingOrder]:
        self.calls.append("open_orders")
        self._raise_read_failure("open_orders")
        return [self._copy(o) for o in self._open.values()]

    async def get_order(self, symbol: str, order_id: str) -> RestingOrder:
        self.calls.append("get_order")
        self._raise_read_failure("get_order")
        order = self._open.get(order_id) or self._history.get(order_id)
        if order is None:
            raise ExchangeRejectedError(f"Unknown order {order_id}", code=-2013)
        return self._copy(order)

    async def place_order(
        self,
        symbol: str,
        side: Side,
        order_type: OrderType,
        quantity: Decimal,
        price: Optional[Decimal] = None,
    ) -> OrderResult:
        self.calls.append("place")
        failure = self._take_failure("place")
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            return OrderResult(success=False, error=failure)
        if order_type is OrderType.MARKET or price is None:
            return OrderResult(success=False, error="paper venue accepts limit orders only")
        if quantity <= 0 or price <= 0:
            return OrderResult(success=False, error=f"invalid order {quantity} @ {price}")

        if side is Side.BUY:
            wallet, need = self._wallet(self.instrument.quote_asset), price * quantity
        else:
            wallet, need = self._wallet(self.instrument.base_asset), quantity
        if wallet.available < need:
            return OrderResult(success=False, error=f"Insufficient balance: need {need}, available {wallet.available}")

        if order_type is OrderType.LIMIT_MAKER and self._book is not None:
            probe = RestingOrder(order_id="probe", side=side, price=price, quantity=quantity)
            if self._crosses(probe):
                return OrderResult(success=False, error="Order would immediately match and take")

        wallet.available -= need
        wallet.locked += need
        order_id = f"paper-{next(self._ids)}"
        order = RestingOrder(order_id=order_id, side=side, price=price, quantity=quantity, created_at=time.time())
        self._open[order_id] = order
        result = OrderResult(success=True, order_id=order_id, order=self._copy(order))
        self._match()
        return result

    async def cancel_order(self, symbol: str, order_id: str) -> CancelOrderResult:
        self.calls.append("cancel")
        failure = self._take_failure("cancel")
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            return CancelOrderResult(success=False, order_id=order_id, error=failure)

        order = self._open.get(order_id)
        if order is None:
            return CancelOrderResult(success=False, order_id=order_id, error=f"Unknown order {order_id}")
        if order.side is Side.BUY:
            released, wallet = order.price * order.remaining, self._wallet(self.instrument.quote_asset)
        else:
            released, wallet = order.remaining, self._wallet(self.instrument.base_asset)
        wallet.locked -= released
        wallet.available += released
        order.apply_fill(order.filled_quantity, OrderStatus.CANCELED)
        self._close(order)
        return CancelOrderResult(success=True, order_id=order_id, order=self._copy(order))

    async def order_updates(self) -> AsyncIterator[OrderUpdate]:
        """Push channel: yields order updates as they happen."""
        while True:
            yield await self._updates.get()

    def drain_updates(self) -> List[OrderUpdate]:
        out = []
        while not self._updates.empty():
            out.append(self._updates.get_nowait())
        return out

    async def close(self) -> None:
        if self._book_source is not None:
            await self._book_source.close()
