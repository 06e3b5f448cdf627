"""
Tests for proposal generation, inventory skew and the refresh decision.
"""

import time

from pmmbot.core.models import Balance, Balances, Instrument, OrderStatus, Position, PriceType, ProposedOrder, Proposal, RestingOrder, Side
from pmmbot.strategy.inventory_skew import SkewConfig, apply_skew, compute_skew
from pmmbot.strategy.proposal import ProposalConfig, ProposalGenerator
from pmmbot.strategy.refresh import RefreshConfig, RefreshPolicy, RefreshReason, nearest_order

from helpers import D, make_book


def resting(order_id, side, price, qty="0.05", created_at=None):
    return RestingOrder(
        order_id=order_id,
        side=side,
        price=D(price),
        quantity=D(qty),
        created_at=created_at if created_at is not None else time.time(),
    )


# =============================================================================
# Proposal Generator
# =============================================================================

class TestProposalGenerator:

    def test_bid_below_central_below_ask(self, instrument):
        gen = ProposalGenerator(instrument, ProposalConfig())
        proposal = gen.generate(make_book("99.9", "100.1"))

        central = D("100")
        assert proposal.nearest_bid.price == D("99.50")
        assert proposal.nearest_ask.price == D("100.50")
        assert proposal.nearest_bid.price < central < proposal.nearest_ask.price

    def test_rounding_widens_the_spread(self):
        inst = Instrument("XUSDT", "X", "USDT", price_decimals=2, qty_decimals=2)
        gen = ProposalGenerator(inst, ProposalConfig(order_amount=D("50")))
        # mid 1.23456: raw bid 1.2283872, raw ask 1.2407328
        proposal = gen.generate(make_book("1.23455", "1.23457"))

        assert proposal.nearest_bid.price == D("1.22")
        assert proposal.nearest_ask.price == D("1.25")

    def test_quantity_from_notional_rounded_down(self, instrument):
        gen = ProposalGenerator(instrument, ProposalConfig(order_amount=D("5")))
        proposal = gen.generate(make_book("99.9", "100.1"))

        # 5 / 99.5 = 0.0502..., 5 / 100.5 = 0.0497...
        assert proposal.nearest_bid.quantity == D("0.05")
        assert proposal.nearest_ask.quantity == D("0.04")

    def test_levels_widen_outward(self, instrument):
        gen = ProposalGenerator(instrument, ProposalConfig(order_levels=3, order_level_spread=D("1")))
        proposal = gen.generate(make_book("99.9", "100.1"))

        bids = [o.price for o in proposal.bids]
        asks = [o.price for o in proposal.asks]
        assert bids == [D("99.50"), D("99.00"), D("98.50")]
        assert asks == [D("100.50"), D("101.00"), D("101.50")]
        assert [o.level for o in proposal.bids] == [0, 1, 2]

    def test_ceiling_skips_level(self, instrument):
        gen = ProposalGenerator(instrument, ProposalConfig(price_ceiling=D("100.2")))
        proposal = gen.generate(make_book("99.9", "100.1"))

        assert proposal.is_empty

    def test_floor_skips_level(self, instrument):
        gen = ProposalGenerator(
            instrument,
            ProposalConfig(order_levels=2, order_level_spread=D("1"), price_floor=D("99.2")),
        )
        proposal = gen.generate(make_book("99.9", "100.1"))

        assert [o.price for o in proposal.bids] == [D("99.50")]
        assert [o.price for o in proposal.asks] == [D("100.50")]

    def test_open_position_floors_nearest_ask(self, instrument):
        gen = ProposalGenerator(instrument, ProposalConfig(order_levels=2))
        pos = Position(symbol="TESTUSDT", entry_price=D("100.5"), quantity=D("0.05"), target_exit_price=D("101"))
        proposal = gen.generate(make_book("99.9", "100.1"), position=pos)

        assert proposal.asks[0].price == D("101")
        # outer level keeps its own price
        assert proposal.asks[1].price == D("100.55")

    def test_no_reference_price_gives_empty_proposal(self, instrument):
        gen = ProposalGenerator(instrument, ProposalConfig(price_type=PriceType.MID_PRICE))
        assert gen.generate(make_book("99.9", None)).is_empty

    def test_best_bid_reference(self, instrument):
        gen = ProposalGenerator(instrument, ProposalConfig(price_type=PriceType.BEST_BID))
        proposal = gen.generate(make_book("100", "101"))
        assert proposal.nearest_bid.price == D("99.50")

    def test_skew_applied_when_enabled(self, instrument):
        cfg = ProposalConfig(
            order_amount=D("50"),
            skew=SkewConfig(enabled=True, target_base_pct=D("50")),
        )
        gen = ProposalGenerator(instrument, cfg)
        # 7 TEST @ 100 = 700, 300 USDT -> 70% base
        balances = Balances.of([Balance("TEST", D("7")), Balance("USDT", D("300"))])
        proposal = gen.generate(make_book("99.9", "100.1"), balances=balances)

        assert proposal.nearest_ask.quantity > proposal.nearest_bid.quantity

    def test_skew_sizes_follow_quoting_config_and_instrument(self):
        whole_lots = Instrument(symbol="TESTUSDT", base_asset="TEST", quote_asset="USDT", price_decimals=2, qty_decimals=0)
        cfg = ProposalConfig(
            order_amount=D("500"),
            min_order_size=D("2"),
            skew=SkewConfig(enabled=True, target_base_pct=D("50"), range_multiplier=D("0.1")),
        )
        gen = ProposalGenerator(whole_lots, cfg)
        # 8 TEST @ 100 = 800, 200 USDT -> 80% base; half range 50 -> factor 0.6
        balances = Balances.of([Balance("TEST", D("8")), Balance("USDT", D("200"))])
        proposal = gen.generate(make_book("99.9", "100.1"), balances=balances)

        # unskewed bid 500 / 99.50 -> 5, ask 500 / 100.50 -> 4 (whole lots)
        assert proposal.nearest_bid.quantity == D("2")
        assert proposal.nearest_ask.quantity == D("6")

        gen.config.min_order_size = D("3")
        proposal = gen.generate(make_book("99.9", "100.1"), balances=balances)
        assert proposal.bids == ()
        assert proposal.nearest_ask.quantity == D("6")


# =============================================================================
# Inventory Skew
# =============================================================================

class TestInventorySkew:

    def test_excess_base_shrinks_bids_grows_asks(self):
        cfg = SkewConfig(enabled=True, target_base_pct=D("50"))
        # base 70 of 100 -> delta 20, half range 50 -> factor 0.4
        skew = compute_skew(D("0.7"), D("30"), D("100"), cfg, order_amount=D("50"))

        assert skew.base_pct == D("70")
        assert skew.skew_factor == D("0.4")
        assert skew.bid_multiplier < 1 < skew.ask_multiplier

        proposal = Proposal(
            bids=(ProposedOrder(Side.BUY, D("99"), D("1")),),
            asks=(ProposedOrder(Side.SELL, D("101"), D("1")),),
        )
        skewed = apply_skew(proposal, skew, qty_decimals=2, min_order_size=D("0.01"))
        assert skewed.nearest_bid.quantity == D("0.6")
        assert skewed.nearest_ask.quantity == D("1.4")
        assert skewed.nearest_ask.quantity > skewed.nearest_bid.quantity
        # prices untouched
        assert skewed.nearest_bid.price == D("99")

    def test_factor_clamped(self):
        cfg = SkewConfig(enabled=True, target_base_pct=D("50"))
        skew = compute_skew(D("1"), D("0"), D("100"), cfg, order_amount=D("5"))

        assert skew.skew_factor == D("1")
        assert skew.bid_multiplier == D("0")
        assert skew.ask_multiplier == D("2")

    def test_levels_below_minimum_dropped(self):
        cfg = SkewConfig(enabled=True, target_base_pct=D("50"))
        skew = compute_skew(D("1"), D("0"), D("100"), cfg, order_amount=D("5"))
        proposal = Proposal(
            bids=(ProposedOrder(Side.BUY, D("99"), D("1")),),
            asks=(ProposedOrder(Side.SELL, D("101"), D("1")),),
        )
        skewed = apply_skew(proposal, skew, qty_decimals=2, min_order_size=D("0.01"))

        assert skewed.bids == ()
        assert skewed.nearest_ask.quantity == D("2")

    def test_empty_portfolio_no_skew(self):
        assert compute_skew(D("0"), D("0"), D("100"), SkewConfig(enabled=True), order_amount=D("5")) is None


# =============================================================================
# Refresh Decision
# =============================================================================

def quoted_proposal(bid="99.5", ask="100.5"):
    return Proposal(
        bids=(ProposedOrder(Side.BUY, D(bid), D("0.05")),),
        asks=(ProposedOrder(Side.SELL, D(ask), D("0.05")),),
    )


class TestRefreshPolicy:

    def test_no_orders_always_refresh(self):
        policy = RefreshPolicy(RefreshConfig(refresh_interval_sec=30))
        now = time.time()
        decision = policy.decide(quoted_proposal(), [], last_refresh=now, now=now)

        assert decision.refresh
        assert decision.reason is RefreshReason.NO_ORDERS

    def test_interval_guard_blocks_refresh(self):
        policy = RefreshPolicy(RefreshConfig(refresh_interval_sec=30, tolerance_pct=D("0.2")))
        now = time.time()
        orders = [resting("b", Side.BUY, "90"), resting("a", Side.SELL, "110")]
        decision = policy.decide(quoted_proposal(), orders, last_refresh=now - 5, now=now)

        assert not decision
        assert decision.reason is RefreshReason.INTERVAL_GUARD

    def test_stale_order_bypasses_interval(self):
        policy = RefreshPolicy(RefreshConfig(refresh_interval_sec=30, max_order_age_sec=10))
        now = time.time()
        orders = [
            resting("b", Side.BUY, "99.5", created_at=now - 20),
            resting("a", Side.SELL, "100.5", created_at=now - 1),
        ]
        decision = policy.decide(quoted_proposal(), orders, last_refresh=now - 1, now=now)

        assert decision
        assert decision.reason is RefreshReason.STALE_ORDER
        assert decision.detail["order_id"] == "b"

    def test_drift_beyond_tolerance(self):
        policy = RefreshPolicy(RefreshConfig(refresh_interval_sec=30, tolerance_pct=D("0.2")))
        now = time.time()
        orders = [resting("b", Side.BUY, "99.0"), resting("a", Side.SELL, "100.5")]
        decision = policy.decide(quoted_proposal(), orders, last_refresh=now - 31, now=now)

        assert decision
        assert decision.reason is RefreshReason.PRICE_DRIFT
        assert decision.detail["side"] == "buy"

    def test_within_tolerance_keeps_orders(self):
        policy = RefreshPolicy(RefreshConfig(refresh_interval_sec=30, tolerance_pct=D("0.2")))
        now = time.time()
        orders = [resting("b", Side.BUY, "99.45"), resting("a", Side.SELL, "100.55")]
        decision = policy.decide(quoted_proposal(), orders, last_refresh=now - 31, now=now)

        assert not decision
        assert decision.reason is RefreshReason.WITHIN_TOLERANCE

    def test_missing_side_refreshes(self):
        policy = RefreshPolicy(RefreshConfig(refresh_interval_sec=30))
        now = time.time()
        orders = [resting("b", Side.BUY, "99.5")]
        decision = policy.decide(quoted_proposal(), orders, last_refresh=now - 31, now=now)

        assert decision.reason is RefreshReason.MISSING_SIDE
        assert decision.detail["side"] == "sell"

    def test_terminal_orders_ignored(self):
        policy = RefreshPolicy(RefreshConfig(refresh_interval_sec=30))
        now = time.time()
        done = resting("b", Side.BUY, "99.5")
        done.apply_fill(D("0"), OrderStatus.CANCELED)
        decision = policy.decide(quoted_proposal(), [done], last_refresh=now, now=now)

        assert decision.reason is RefreshReason.NO_ORDERS

    def test_nearest_order_per_side(self):
        orders = [
            resting("b1", Side.BUY, "99"),
            resting("b2", Side.BUY, "99.5"),
            resting("a1", Side.SELL, "101"),
            resting("a2", Side.SELL, "100.5"),
        ]
        assert nearest_order(orders, Side.BUY).order_id == "b2"
        assert nearest_order(orders, Side.SELL).order_id == "a2"
