"""
Refresh decision: should resting quotes be replaced this cycle?

Two speeds plus a staleness override:
- slow periodic guard (refresh interval) protects exchange rate limits
- fast threshold (price tolerance) reacts to level-0 drift
- any order older than max age forces a replace regardless of both
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from pmmbot.core.models import HUNDRED, Proposal, ProposedOrder, RestingOrder, Side


@dataclass
class RefreshConfig:
    refresh_interval_sec: float = 30.0
    tolerance_pct: Decimal = Decimal("0.2")  # percent, 0.2 = 0.2%
    max_order_age_sec: float = 0.0  # 0 disables the staleness override


class RefreshReason(str, Enum):
    NO_ORDERS = "no_orders"
    RESYNC = "resync"  # forced after a breaker resume / reconcile
    STALE_ORDER = "stale_order"
    INTERVAL_GUARD = "interval_guard"
    MISSING_SIDE = "missing_side"
    PRICE_DRIFT = "price_drift"
    WITHIN_TOLERANCE = "within_tolerance"


@dataclass(frozen=True)
class RefreshDecision:
    refresh: bool
    reason: RefreshReason
    detail: Dict[str, Any] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.refresh


def nearest_order(orders: Iterable[RestingOrder], side: Side) -> Optional[RestingOrder]:
    """Resting order closest to the market on one side (highest bid / lowest ask)."""
    candidates = [o for o in orders if o.side is side and o.is_active]
    if not candidates:
        return None
    if side is Side.BUY:
        return max(candidates, key=lambda o: o.price)
    return min(candidates, key=lambda o: o.price)


class RefreshPolicy:
    """Stateless evaluator; the caller owns the last-refresh timestamp."""

    def __init__(self, config: RefreshConfig) -> None:
        self.config = config

    def decide(
        self,
        proposal: Proposal,
        orders: Iterable[RestingOrder],
        last_refresh: float,
        now: Optional[float] = None,
    ) -> RefreshDecision:
        now = time.time() if now is None else now
        active = [o for o in orders if o.is_active]

        if not active:
            return RefreshDecision(True, RefreshReason.NO_ORDERS)

        max_age = self.config.max_order_age_sec
        if max_age > 0:
            oldest = max(active, key=lambda o: o.age(now))
            if oldest.age(now) > max_age:
                return RefreshDecision(
                    True,
                    RefreshReason.STALE_ORDER,
                    {"order_id": oldest.order_id, "age_sec": round(oldest.age(now), 3), "max_age_sec": max_age},
                )

        elapsed = now - last_refresh
        if elapsed < self.config.refresh_interval_sec:
            return RefreshDecision(
                False,
                RefreshReason.INTERVAL_GUARD,
                {"elapsed_sec": round(elapsed, 3), "interval_sec": self.config.refresh_interval_sec},
            )

        for proposed in (proposal.nearest_bid, proposal.nearest_ask):
            verdict = self._check_side(proposed, active)
            if verdict is not None:
                return verdict

        return RefreshDecision(False, RefreshReason.WITHIN_TOLERANCE)

    def _check_side(self, proposed: Optional[ProposedOrder], active: list) -> Optional[RefreshDecision]:
        if proposed is None:
            return None
        resting = nearest_order(active, proposed.side)
        if resting is None:
            return RefreshDecision(True, RefreshReason.MISSING_SIDE, {"side": proposed.side.value})
        drift_pct = abs(proposed.price - resting.price) / resting.price * HUNDRED
        if drift_pct > self.config.tolerance_pct:
            return RefreshDecision(
                True,
                RefreshReason.PRICE_DRIFT,
                {
                    "side": proposed.side.value,
                    "proposed": proposed.price,
                    "resting": resting.price,
                    "drift_pct": drift_pct,
                    "tolerance_pct": self.config.tolerance_pct,
                },
            )
        return None
