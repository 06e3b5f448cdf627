"""
OrderManager: the in-memory map of orders resting on the exchange.

Keyed by exchange order id. Entries change only on a placement result,
a cancel result, an order update, or a reconciliation pass.

A cancelled order whose final fill the venue did not report is parked as
unresolved until the poller settles it with an order query.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from pmmbot.core.models import RestingOrder, Side

log = logging.getLogger("pmmbot")


class OrderManager:
    """
    Order registry with by-id and by-side lookup.

    Not locked internally; the control loop's mutex serialises access.
    """

    def __init__(self) -> None:
        self.orders_by_id: Dict[str, RestingOrder] = {}
        self.unresolved: Dict[str, RestingOrder] = {}

    def register(self, order: RestingOrder) -> RestingOrder:
        """Insert or overwrite an order by id."""
        self.orders_by_id[order.order_id] = order
        return order

    def lookup(self, order_id: str) -> Optional[RestingOrder]:
        return self.orders_by_id.get(order_id)

    def pop(self, order_id: str) -> Optional[RestingOrder]:
        return self.orders_by_id.pop(order_id, None)

    def park_unresolved(self, order: RestingOrder) -> None:
        self.unresolved[order.order_id] = order

    def unresolved_orders(self) -> List[RestingOrder]:
        return list(self.unresolved.values())

    def settle(self, order_id: str) -> Optional[RestingOrder]:
        """Drop an order that reached a final state, resting or parked."""
        parked = self.unresolved.pop(order_id, None)
        return self.orders_by_id.pop(order_id, None) or parked

    def __contains__(self, order_id: str) -> bool:
        return order_id in self.orders_by_id

    def __len__(self) -> int:
        return len(self.orders_by_id)

    def replace_all(self, orders: Iterable[RestingOrder]) -> None:
        """Replace the whole map (reconciliation). Terminal orders are dropped."""
        self.orders_by_id = {o.order_id: o for o in orders if o.is_active}

    def clear(self) -> None:
        self.orders_by_id.clear()
        self.unresolved.clear()

    def open_count(self) -> int:
        return len(self.orders_by_id)

    def all_orders(self) -> List[RestingOrder]:
        return list(self.orders_by_id.values())

    def orders_by_side(self, side: Side) -> List[RestingOrder]:
        """Orders on one side, nearest to the market first."""
        orders = [o for o in self.orders_by_id.values() if o.side is side]
        return sorted(orders, key=lambda o: o.price, reverse=side is Side.BUY)

    def count_by_side(self) -> Dict[str, int]:
        return {side.value: len(self.orders_by_side(side)) for side in Side}
