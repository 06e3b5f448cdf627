"""Shared builders for tests."""

from decimal import Decimal

from pmmbot.core.models import BookSnapshot


def D(value) -> Decimal:
    return Decimal(str(value))


def make_book(bid, ask) -> BookSnapshot:
    """One-level book; pass None for an empty side."""
    bids = [(D(bid), D("10"))] if bid is not None else []
    asks = [(D(ask), D("10"))] if ask is not None else []
    return BookSnapshot.from_levels(bids, asks)
