"""
Inventory skew: size-only bias that pulls the base-asset weight of the
portfolio back toward a target percentage.

Prices are never touched, so the configured spread is preserved. Excess
base inventory shrinks bids and grows asks; a deficit does the opposite.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple

from pmmbot.core.models import HUNDRED, ZERO, Proposal, ProposedOrder
from pmmbot.core.rounding import round_qty

ONE = Decimal("1")


@dataclass
class SkewConfig:
    """
    Configuration for inventory skew.

    Order sizing (notional per order, minimum size, quantity precision) is
    not repeated here; callers pass the quoting config and instrument values.
    """
    enabled: bool = False
    target_base_pct: Decimal = Decimal("50")
    range_multiplier: Decimal = Decimal("1")


@dataclass(frozen=True)
class SkewResult:
    base_pct: Decimal
    skew_factor: Decimal
    bid_multiplier: Decimal
    ask_multiplier: Decimal


def compute_skew(
    base_balance: Decimal,
    quote_balance: Decimal,
    mid_price: Decimal,
    config: SkewConfig,
    order_amount: Decimal,
) -> Optional[SkewResult]:
    """
    Derive size multipliers from current holdings.

    order_amount is the quoting notional per order; it sets the width of
    the comfort range around the target.

    Returns None when the portfolio has no value (nothing to rebalance).
    """
    base_value = base_balance * mid_price
    portfolio_value = base_value + quote_balance
    if portfolio_value <= 0 or mid_price <= 0:
        return None

    base_pct = base_value / portfolio_value * HUNDRED
    delta = base_pct - config.target_base_pct
    comfort_range = 2 * order_amount * config.range_multiplier
    half_range = comfort_range / 2
    if half_range <= 0:
        return None

    factor = max(-ONE, min(ONE, delta / half_range))
    return SkewResult(
        base_pct=base_pct,
        skew_factor=factor,
        bid_multiplier=ONE - factor,
        ask_multiplier=ONE + factor,
    )


def _scale(
    orders: Tuple[ProposedOrder, ...],
    multiplier: Decimal,
    qty_decimals: int,
    min_order_size: Decimal,
) -> Tuple[ProposedOrder, ...]:
    out = []
    for order in orders:
        qty = round_qty(order.quantity * multiplier, qty_decimals)
        if qty < min_order_size or qty <= ZERO:
            continue
        out.append(ProposedOrder(side=order.side, price=order.price, quantity=qty, level=order.level))
    return tuple(out)


def apply_skew(
    proposal: Proposal,
    skew: SkewResult,
    qty_decimals: int,
    min_order_size: Decimal,
) -> Proposal:
    """Scale every level's size; drop levels that fall under the minimum size."""
    return Proposal(
        bids=_scale(proposal.bids, skew.bid_multiplier, qty_decimals, min_order_size),
        asks=_scale(proposal.asks, skew.ask_multiplier, qty_decimals, min_order_size),
    )
