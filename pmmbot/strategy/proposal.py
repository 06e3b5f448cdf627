"""
ProposalGenerator - converts a book snapshot into the desired quotes.

Pure calculation module with no side effects:
- Central price selection (mid / best bid / best ask)
- Multi-level spreads, widening per level
- Direction-aware rounding that can only widen the spread
- Ceiling/floor filtering (levels are skipped, never clamped)
- Ask raised to the open position's target exit price
- Optional inventory skew on sizes
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, List, Optional

from pmmbot.core.json_utils import dumps
from pmmbot.core.models import (
    HUNDRED,
    Balances,
    BookSnapshot,
    Instrument,
    Position,
    PriceType,
    Proposal,
    ProposedOrder,
    Side,
)
from pmmbot.core.rounding import round_price, round_qty
from pmmbot.strategy.inventory_skew import SkewConfig, apply_skew, compute_skew

log = logging.getLogger("pmmbot")

ONE = Decimal("1")


@dataclass
class ProposalConfig:
    """Quoting parameters. Spreads are percentages (0.5 = 0.5%)."""
    bid_spread_pct: Decimal = Decimal("0.5")
    ask_spread_pct: Decimal = Decimal("0.5")
    order_amount: Decimal = Decimal("5")  # notional per order, quote terms
    min_order_size: Decimal = Decimal("0.01")  # skewed levels below this are dropped
    price_type: PriceType = PriceType.MID_PRICE
    order_levels: int = 1
    order_level_spread: Decimal = Decimal("0.1")  # per-level spread multiplier
    price_ceiling: Optional[Decimal] = None
    price_floor: Optional[Decimal] = None
    skew: SkewConfig = field(default_factory=SkewConfig)


class ProposalGenerator:
    """
    Builds a Proposal from a BookSnapshot.

    Holds configuration only. generate() is a pure function of its
    inputs; an empty Proposal means "do nothing this cycle".
    """

    def __init__(
        self,
        instrument: Instrument,
        config: ProposalConfig,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.instrument = instrument
        self.config = config
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.DEBUG, **kwargs: Any) -> None:
        log.log(level, dumps({"event": event, "symbol": self.instrument.symbol, **kwargs}))

    def central_price(self, book: BookSnapshot) -> Optional[Decimal]:
        px = book.reference_price(self.config.price_type)
        if px is None or px <= 0:
            return None
        return px

    def generate(
        self,
        book: BookSnapshot,
        position: Optional[Position] = None,
        balances: Optional[Balances] = None,
    ) -> Proposal:
        """
        Compute the desired bid/ask ladder.

        Args:
            book: Current top of book
            position: Open long position, if any. Its target exit price
                is a floor for the level-0 ask.
            balances: Account balances, required for inventory skew

        Returns:
            Proposal ordered nearest-first on each side
        """
        central = self.central_price(book)
        if central is None:
            self._log_event("proposal_no_reference", price_type=self.config.price_type.value)
            return Proposal()

        cfg = self.config
        inst = self.instrument
        bids: List[ProposedOrder] = []
        asks: List[ProposedOrder] = []

        for i in range(cfg.order_levels):
            widen = ONE + i * cfg.order_level_spread
            bid_spread = cfg.bid_spread_pct * widen
            ask_spread = cfg.ask_spread_pct * widen

            bid_px = round_price(central * (ONE - bid_spread / HUNDRED), inst.price_decimals, Side.BUY)
            ask_px = central * (ONE + ask_spread / HUNDRED)
            if i == 0 and position is not None and position.is_open:
                ask_px = max(ask_px, position.target_exit_price)
            ask_px = round_price(ask_px, inst.price_decimals, Side.SELL)

            if cfg.price_ceiling is not None and ask_px > cfg.price_ceiling:
                self._log_event("level_skipped", level=i, reason="ceiling", ask=ask_px, ceiling=cfg.price_ceiling)
                continue
            if cfg.price_floor is not None and bid_px < cfg.price_floor:
                self._log_event("level_skipped", level=i, reason="floor", bid=bid_px, floor=cfg.price_floor)
                continue

            if bid_px > 0:
                bid_qty = round_qty(cfg.order_amount / bid_px, inst.qty_decimals)
                if bid_qty > 0:
                    bids.append(ProposedOrder(Side.BUY, bid_px, bid_qty, level=i))
            ask_qty = round_qty(cfg.order_amount / ask_px, inst.qty_decimals)
            if ask_qty > 0:
                asks.append(ProposedOrder(Side.SELL, ask_px, ask_qty, level=i))

        proposal = Proposal(bids=tuple(bids), asks=tuple(asks))

        if cfg.skew.enabled and not proposal.is_empty:
            proposal = self._skew(proposal, book, balances)

        self._log_event(
            "proposal",
            central=central,
            bids=[(o.price, o.quantity) for o in proposal.bids],
            asks=[(o.price, o.quantity) for o in proposal.asks],
        )
        return proposal

    def _skew(self, proposal: Proposal, book: BookSnapshot, balances: Optional[Balances]) -> Proposal:
        mid = book.mid
        if balances is None or mid is None:
            self._log_event("skew_unavailable", has_balances=balances is not None, has_mid=mid is not None)
            return proposal
        skew = compute_skew(
            balances.total(self.instrument.base_asset),
            balances.total(self.instrument.quote_asset),
            mid,
            self.config.skew,
            self.config.order_amount,
        )
        if skew is None:
            return proposal
        self._log_event(
            "inventory_skew",
            base_pct=skew.base_pct,
            factor=skew.skew_factor,
            bid_mult=skew.bid_multiplier,
            ask_mult=skew.ask_multiplier,
        )
        return apply_skew(proposal, skew, self.instrument.qty_decimals, self.config.min_order_size)
