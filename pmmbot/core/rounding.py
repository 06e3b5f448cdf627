"""
Decimal rounding helpers for exchange price and lot precision.

Bids round down and asks round up so the quoted spread can only widen.
Quantities always round down so we never ask for more than we can afford.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_DOWN, ROUND_UP

from pmmbot.core.models import Side

__all__ = ["step_for", "round_down", "round_up", "round_price", "round_qty"]


def step_for(decimals: int) -> Decimal:
    """Smallest increment for a given number of decimals (2 -> 0.01)."""
    return Decimal(1).scaleb(-decimals)


def round_down(value: Decimal, decimals: int) -> Decimal:
    return value.quantize(step_for(decimals), rounding=ROUND_DOWN)


def round_up(value: Decimal, decimals: int) -> Decimal:
    return value.quantize(step_for(decimals), rounding=ROUND_UP)


def round_price(px: Decimal, decimals: int, side: Side) -> Decimal:
    """
    Snap a quote price to the price precision.

    - buy: truncate toward zero (lower bid)
    - sell: round away from zero (higher ask)
    """
    if side is Side.BUY:
        return round_down(px, decimals)
    return round_up(px, decimals)


def round_qty(qty: Decimal, decimals: int) -> Decimal:
    """Round a quantity down to lot precision."""
    return round_down(qty, decimals)
