"""
Exchange collaborator contract consumed by the control loop.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Protocol, runtime_checkable

from pmmbot.core.models import Balance, BookSnapshot, Instrument, OrderType, RestingOrder, Side


@dataclass
class OrderResult:
    """Outcome of a place request as reported by the venue."""
    success: bool
    order_id: Optional[str] = None
    order: Optional[RestingOrder] = None
    error: Optional[str] = None


@dataclass
class CancelOrderResult:
    """
    Outcome of a cancel request.

    order carries the final state (cumulative fill, status) when the venue
    reports it in the cancel response; None when it does not.
    """
    success: bool
    order_id: Optional[str] = None
    order: Optional[RestingOrder] = None
    error: Optional[str] = None


@runtime_checkable
class ExchangeClient(Protocol):
    async def get_instrument(self, symbol: str) -> Instrument: ...

    async def get_top_of_book(self, symbol: str, depth: int = 5) -> BookSnapshot: ...

    async def get_balances(self) -> List[Balance]: ...

    async def get_open_orders(self, symbol: str) -> List[RestingOrder]: ...

    async def get_order(self, symbol: str, order_id: str) -> RestingOrder: ...

    async def place_order(
        self,
        symbol: str,
        side: Side,
        order_type: OrderType,
        quantity: Decimal,
        price: Optional[Decimal] = None,
    ) -> OrderResult: ...

    async def cancel_order(self, symbol: str, order_id: str) -> CancelOrderResult: ...

    async def close(self) -> None: ...
