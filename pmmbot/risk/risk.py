"""
Risk gate: per-order pre-trade checks.

Checks, in order:
- Fat-finger (order value above a configured maximum, 0 disables)
- Available funds, with a safety-margin down-size when short
- Minimum order size

The gate is advisory. It never mutates orders or balances; callers
decide what to do with a rejection (a rejected side is simply not
quoted this cycle).
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, auto
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from pmmbot.core.json_utils import dumps
from pmmbot.core.models import HUNDRED, Balances, Instrument, RiskCheckResult, Side
from pmmbot.core.rounding import round_qty

log = logging.getLogger("pmmbot")


def fmt(value: Decimal) -> str:
    """Plain decimal text without exponent or trailing zeros (10.00 -> 10)."""
    return format(value.normalize(), "f")


class RiskEventType(Enum):
    ORDER_REJECTED = auto()
    ORDER_ADJUSTED = auto()


@dataclass
class RiskEvent:
    """A risk decision with metadata for the audit trail."""
    event_type: RiskEventType
    timestamp_ms: int
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RiskConfig:
    max_order_value: Decimal = Decimal("10")  # quote terms, 0 disables
    min_order_size: Decimal = Decimal("0.01")
    safety_margin_pct: Decimal = Decimal("95")


class RiskGate:
    """
    Stateless order check against limits and a balance snapshot.

    Keeps a short ring of recent decisions for status reporting; that
    history never influences a decision.
    """

    def __init__(
        self,
        instrument: Instrument,
        config: RiskConfig,
        log_event: Optional[Callable[..., None]] = None,
        max_events: int = 200,
    ) -> None:
        self.instrument = instrument
        self.config = config
        self._callbacks: List[Callable[[RiskEvent], None]] = []
        self._events: Deque[RiskEvent] = deque(maxlen=max_events)
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, dumps({"event": event, "symbol": self.instrument.symbol, **kwargs}))

    # ─────────────────────────────────────────────────────────────────────
    # Events
    # ─────────────────────────────────────────────────────────────────────

    def register_callback(self, callback: Callable[[RiskEvent], None]) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def _emit_event(self, event: RiskEvent) -> None:
        self._events.append(event)
        for cb in self._callbacks:
            try:
                cb(event)
            except Exception:
                log.exception(dumps({"event": "risk_callback_error", "reason": event.reason}))

    def get_recent_events(self, count: int = 20) -> List[RiskEvent]:
        return list(self._events)[-count:]

    # ─────────────────────────────────────────────────────────────────────
    # Checks
    # ─────────────────────────────────────────────────────────────────────

    def _check_fat_finger(self, price: Decimal, quantity: Decimal) -> Tuple[bool, str]:
        limit = self.config.max_order_value
        if limit <= 0:
            return True, ""
        value = price * quantity
        if value > limit:
            return False, f"Order value {fmt(value)} > {fmt(limit)} max order value"
        return True, ""

    def _max_affordable(self, side: Side, price: Decimal, available: Decimal) -> Decimal:
        raw = available / price if side is Side.BUY else available
        return round_qty(raw * self.config.safety_margin_pct / HUNDRED, self.instrument.qty_decimals)

    def _check_min_size(self, quantity: Decimal) -> Tuple[bool, str]:
        if quantity < self.config.min_order_size:
            return False, f"Order size {fmt(quantity)} below minimum {fmt(self.config.min_order_size)}"
        return True, ""

    def check(
        self,
        side: Side,
        price: Decimal,
        quantity: Decimal,
        balances: Balances,
    ) -> RiskCheckResult:
        """
        Evaluate a candidate order.

        Args:
            side: Order side
            price: Limit price
            quantity: Requested quantity
            balances: Live balance snapshot (available amounts are used)

        Returns:
            RiskCheckResult with the quantity to place (possibly reduced)
        """
        details = {"side": side.value, "price": price, "quantity": quantity}

        ok, reason = self._check_fat_finger(price, quantity)
        if not ok:
            return self._reject(reason, details)

        if side is Side.BUY:
            asset = self.instrument.quote_asset
            required = price * quantity
        else:
            asset = self.instrument.base_asset
            required = quantity
        available = balances.available(asset)

        approved_qty = quantity
        if required > available:
            if price <= 0:
                return self._reject("Insufficient funds: non-positive price", details)
            adjusted = self._max_affordable(side, price, available)
            shortfall = {
                **details,
                "asset": asset,
                "required": required,
                "available": available,
                "adjusted_quantity": adjusted,
                "safety_margin_pct": self.config.safety_margin_pct,
            }
            if adjusted <= 0 or adjusted < self.config.min_order_size:
                return self._reject(
                    f"Insufficient funds: need {fmt(required)} {asset}, available {fmt(available)}",
                    shortfall,
                )
            approved_qty = adjusted
            self._emit_event(RiskEvent(
                event_type=RiskEventType.ORDER_ADJUSTED,
                timestamp_ms=int(time.time() * 1000),
                reason=f"Size reduced {fmt(quantity)} -> {fmt(adjusted)}: need {fmt(required)} {asset}, available {fmt(available)}",
                details=shortfall,
            ))
            self._log_event("risk_adjusted", level=logging.WARNING, **shortfall)

        ok, reason = self._check_min_size(approved_qty)
        if not ok:
            return self._reject(reason, {**details, "min_order_size": self.config.min_order_size})

        return RiskCheckResult.approve(approved_qty)

    def _reject(self, reason: str, details: Dict[str, Any]) -> RiskCheckResult:
        self._emit_event(RiskEvent(
            event_type=RiskEventType.ORDER_REJECTED,
            timestamp_ms=int(time.time() * 1000),
            reason=reason,
            details=details,
        ))
        self._log_event("risk_rejected", level=logging.WARNING, reason=reason, **details)
        return RiskCheckResult.reject(reason)
