"""
Typed value objects shared across the market maker.

Raw exchange payloads are decoded into these once, at the exchange
boundary. Nothing downstream inspects wire dicts.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class OrderType(str, Enum):
    LIMIT = "limit"
    LIMIT_MAKER = "limit_maker"
    MARKET = "market"


class OrderStatus(str, Enum):
    NEW = "new"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELED = "canceled"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    @property
    def is_active(self) -> bool:
        return not self.is_terminal


_TERMINAL = frozenset({
    OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.REJECTED, OrderStatus.EXPIRED,
})


class PriceType(str, Enum):
    """Reference price the proposal is centred on."""
    MID_PRICE = "mid_price"
    BEST_BID = "best_bid"
    BEST_ASK = "best_ask"


@dataclass(frozen=True)
class Instrument:
    """Traded symbol with its asset pair and precision. Fixed for a run."""
    symbol: str
    base_asset: str
    quote_asset: str
    price_decimals: int = 4
    qty_decimals: int = 2


@dataclass(frozen=True)
class BookSnapshot:
    """Top of book. Replaced wholesale on every poll."""
    best_bid: Optional[Decimal]
    best_ask: Optional[Decimal]
    bids: Tuple[Tuple[Decimal, Decimal], ...] = ()
    asks: Tuple[Tuple[Decimal, Decimal], ...] = ()
    ts: float = field(default_factory=time.time)

    @classmethod
    def from_levels(
        cls,
        bids: List[Tuple[Decimal, Decimal]],
        asks: List[Tuple[Decimal, Decimal]],
        ts: Optional[float] = None,
    ) -> "BookSnapshot":
        """Build from (price, qty) levels ordered best first."""
        return cls(
            best_bid=bids[0][0] if bids else None,
            best_ask=asks[0][0] if asks else None,
            bids=tuple(bids),
            asks=tuple(asks),
            ts=ts if ts is not None else time.time(),
        )

    @property
    def mid(self) -> Optional[Decimal]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return (self.best_bid + self.best_ask) / 2

    @property
    def spread_pct(self) -> Optional[Decimal]:
        """(ask - bid) / bid * 100, or None when a side is missing."""
        if self.best_bid is None or self.best_ask is None or self.best_bid <= 0:
            return None
        return (self.best_ask - self.best_bid) / self.best_bid * HUNDRED

    def reference_price(self, price_type: PriceType) -> Optional[Decimal]:
        if price_type is PriceType.BEST_BID:
            return self.best_bid
        if price_type is PriceType.BEST_ASK:
            return self.best_ask
        return self.mid


@dataclass(frozen=True)
class Balance:
    asset: str
    available: Decimal
    locked: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.available + self.locked


class Balances(dict):
    """Balance set keyed by asset. Missing assets read as zero."""

    @classmethod
    def of(cls, items: List[Balance]) -> "Balances":
        return cls({b.asset: b for b in items})

    def available(self, asset: str) -> Decimal:
        bal = self.get(asset)
        return bal.available if bal else ZERO

    def total(self, asset: str) -> Decimal:
        bal = self.get(asset)
        return bal.total if bal else ZERO


@dataclass
class RestingOrder:
    """An order the exchange has acknowledged for our instrument."""
    order_id: str
    side: Side
    price: Decimal
    quantity: Decimal
    filled_quantity: Decimal = ZERO
    status: OrderStatus = OrderStatus.NEW
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        self._check_fill(self.filled_quantity, self.status)

    def _check_fill(self, filled: Decimal, status: OrderStatus) -> None:
        if filled < 0 or filled > self.quantity:
            raise ValueError(
                f"filled {filled} outside [0, {self.quantity}] for order {self.order_id}"
            )
        if status is OrderStatus.FILLED and filled != self.quantity:
            raise ValueError(
                f"order {self.order_id} marked filled with {filled}/{self.quantity}"
            )

    @property
    def remaining(self) -> Decimal:
        return self.quantity - self.filled_quantity

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.created_at

    def apply_fill(self, filled: Decimal, status: OrderStatus, ts: Optional[float] = None) -> None:
        """Move the fill forward. Fills never decrease."""
        filled = max(filled, self.filled_quantity)
        if status is OrderStatus.FILLED:
            filled = self.quantity
        self._check_fill(filled, status)
        self.filled_quantity = filled
        self.status = status
        self.updated_at = ts if ts is not None else time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "side": self.side.value,
            "price": str(self.price),
            "quantity": str(self.quantity),
            "filled_quantity": str(self.filled_quantity),
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RestingOrder":
        return cls(
            order_id=str(data["order_id"]),
            side=Side(data["side"]),
            price=Decimal(data["price"]),
            quantity=Decimal(data["quantity"]),
            filled_quantity=Decimal(data.get("filled_quantity", "0")),
            status=OrderStatus(data.get("status", OrderStatus.NEW.value)),
            created_at=float(data.get("created_at", 0.0)),
            updated_at=float(data.get("updated_at", 0.0)),
        )


@dataclass(frozen=True)
class ProposedOrder:
    side: Side
    price: Decimal
    quantity: Decimal
    level: int = 0

    @property
    def notional(self) -> Decimal:
        return self.price * self.quantity


@dataclass(frozen=True)
class Proposal:
    """Desired quotes for one cycle. Index 0 is nearest the market."""
    bids: Tuple[ProposedOrder, ...] = ()
    asks: Tuple[ProposedOrder, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.bids and not self.asks

    @property
    def nearest_bid(self) -> Optional[ProposedOrder]:
        return self.bids[0] if self.bids else None

    @property
    def nearest_ask(self) -> Optional[ProposedOrder]:
        return self.asks[0] if self.asks else None

    def side(self, side: Side) -> Tuple[ProposedOrder, ...]:
        return self.bids if side is Side.BUY else self.asks


@dataclass
class Position:
    """
    Long-only inventory opened by a buy fill.

    The target exit price must stay strictly above the entry price.
    """
    symbol: str
    entry_price: Decimal
    quantity: Decimal
    target_exit_price: Decimal
    is_open: bool = True
    opened_at: float = field(default_factory=time.time)
    closed_at: Optional[float] = None

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError(f"position quantity must be > 0, got {self.quantity}")
        if self.target_exit_price <= self.entry_price:
            raise ValueError(
                f"target exit {self.target_exit_price} must be > entry {self.entry_price}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "entry_price": str(self.entry_price),
            "quantity": str(self.quantity),
            "target_exit_price": str(self.target_exit_price),
            "is_open": self.is_open,
            "opened_at": self.opened_at,
            "closed_at": self.closed_at,
        }


@dataclass(frozen=True)
class RiskCheckResult:
    approved: bool
    adjusted_quantity: Decimal
    reason: Optional[str] = None

    @classmethod
    def approve(cls, quantity: Decimal) -> "RiskCheckResult":
        return cls(approved=True, adjusted_quantity=quantity)

    @classmethod
    def reject(cls, reason: str) -> "RiskCheckResult":
        return cls(approved=False, adjusted_quantity=ZERO, reason=reason)


@dataclass(frozen=True)
class OrderUpdate:
    """Order status notification (pushed or synthesised by the poller)."""
    order_id: str
    side: Side
    price: Decimal
    filled_quantity: Decimal
    status: OrderStatus
    ts: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Trade:
    order_id: str
    side: Side
    price: Decimal
    quantity: Decimal
    pnl: Decimal = ZERO
    timestamp: float = field(default_factory=time.time)

    @property
    def quote_amount(self) -> Decimal:
        return self.price * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "side": self.side.value,
            "price": str(self.price),
            "quantity": str(self.quantity),
            "quote_amount": str(self.quote_amount),
            "pnl": str(self.pnl),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        return cls(
            order_id=str(data["order_id"]),
            side=Side(data["side"]),
            price=Decimal(data["price"]),
            quantity=Decimal(data["quantity"]),
            pnl=Decimal(data.get("pnl", "0")),
            timestamp=float(data.get("timestamp", 0.0)),
        )
