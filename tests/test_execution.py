"""
Tests for the execution layer.

Tests cover:
- ExecutionGateway place / cancel / modify tri-state / cancel_all / reconcile
- FillProcessor idempotence and Position transitions
- Fills reported on cancel, and parked cancels settled by the poller
- OrderUpdatePoller REST fallback diffing
"""

import pytest
from prometheus_client import CollectorRegistry

from pmmbot.core.models import OrderStatus, OrderType, OrderUpdate, RestingOrder, Side
from pmmbot.exchange.errors import ExchangeTransportError
from pmmbot.exchange.paper import PaperExchange
from pmmbot.execution.execution_gateway import ExecutionGateway, ModifyOutcome
from pmmbot.execution.fill_processor import FillOutcome, FillProcessor
from pmmbot.execution.order_manager import OrderManager
from pmmbot.execution.order_poller import OrderPollerConfig, OrderUpdatePoller
from pmmbot.monitoring.metrics import MarketMakerMetrics
from pmmbot.state.portfolio import PortfolioTracker
from pmmbot.state.position_tracker import PositionManager

from helpers import D, make_book


@pytest.fixture
def metrics():
    return MarketMakerMetrics(registry=CollectorRegistry())


@pytest.fixture
def gateway(instrument, paper, metrics):
    return ExecutionGateway(instrument, paper, metrics=metrics)


@pytest.fixture
def fills(instrument, gateway):
    positions = PositionManager(instrument.symbol, D("0.5"), instrument.price_decimals)
    return FillProcessor(instrument, gateway.order_manager, positions, PortfolioTracker(instrument))


def sample(metrics, name, **labels):
    return metrics.registry.get_sample_value(name, labels) or 0.0


# =============================================================================
# ExecutionGateway
# =============================================================================

class TestPlaceCancel:

    @pytest.mark.asyncio
    async def test_place_inserts_under_exchange_id(self, gateway, metrics):
        res = await gateway.place(Side.BUY, D("99"), D("0.1"))

        assert res.success
        assert res.order_id in gateway.order_manager
        assert sample(metrics, "orders_placed_total", symbol="TESTUSDT", side="buy") == 1.0

    @pytest.mark.asyncio
    async def test_rejected_place_inserts_nothing(self, gateway, paper):
        paper.fail("place", "post-only would cross")
        res = await gateway.place(Side.BUY, D("99"), D("0.1"))

        assert not res.success
        assert res.error == "post-only would cross"
        assert len(gateway.order_manager) == 0

    @pytest.mark.asyncio
    async def test_transport_error_on_place_propagates(self, gateway, paper):
        paper.fail("place", ExchangeTransportError("timeout"))
        with pytest.raises(ExchangeTransportError):
            await gateway.place(Side.BUY, D("99"), D("0.1"))
        assert len(gateway.order_manager) == 0

    @pytest.mark.asyncio
    async def test_cancel_removes_entry(self, gateway):
        placed = await gateway.place(Side.SELL, D("101"), D("0.1"))
        res = await gateway.cancel(placed.order_id)

        assert res.success
        assert res.order.order_id == placed.order_id
        assert placed.order_id not in gateway.order_manager

    @pytest.mark.asyncio
    async def test_failed_cancel_keeps_entry(self, gateway, paper):
        placed = await gateway.place(Side.SELL, D("101"), D("0.1"))
        paper.fail("cancel", "try again")
        res = await gateway.cancel(placed.order_id)

        assert not res.success
        assert placed.order_id in gateway.order_manager


class TestModify:

    @pytest.mark.asyncio
    async def test_replaced(self, gateway):
        placed = await gateway.place(Side.BUY, D("99"), D("0.1"))
        res = await gateway.modify(placed.order_id, D("98.5"), D("0.2"))

        assert res.outcome is ModifyOutcome.REPLACED
        assert placed.order_id not in gateway.order_manager
        new = gateway.order_manager.lookup(res.new_order.order_id)
        assert new.price == D("98.5")
        assert new.quantity == D("0.2")

    @pytest.mark.asyncio
    async def test_cancel_ok_place_fails_is_replacement_lost(self, gateway, paper):
        placed = await gateway.place(Side.BUY, D("99"), D("0.1"))
        paper.fail("place", "rejected by venue")
        res = await gateway.modify(placed.order_id, D("98.5"), D("0.1"))

        assert res.outcome is ModifyOutcome.REPLACEMENT_LOST
        assert res.replacement_lost
        assert res.new_order is None
        assert placed.order_id not in gateway.order_manager
        assert len(gateway.order_manager) == 0
        assert paper.open_orders == []

    @pytest.mark.asyncio
    async def test_place_transport_error_is_replacement_lost(self, gateway, paper, metrics):
        placed = await gateway.place(Side.BUY, D("99"), D("0.1"))
        paper.fail("place", ExchangeTransportError("timeout"))
        res = await gateway.modify(placed.order_id, D("98.5"), D("0.1"))

        assert res.outcome is ModifyOutcome.REPLACEMENT_LOST
        assert "timeout" in res.error
        assert sample(metrics, "modify_outcomes_total", symbol="TESTUSDT", outcome="replacement_lost") == 1.0

    @pytest.mark.asyncio
    async def test_cancel_fails_no_side_effect(self, gateway, paper):
        placed = await gateway.place(Side.BUY, D("99"), D("0.1"))
        paper.fail("cancel", "busy")
        res = await gateway.modify(placed.order_id, D("98.5"), D("0.1"))

        assert res.outcome is ModifyOutcome.FAILED
        assert placed.order_id in gateway.order_manager
        assert len(paper.open_orders) == 1

    @pytest.mark.asyncio
    async def test_unknown_order_fails(self, gateway):
        res = await gateway.modify("ghost", D("98.5"), D("0.1"))
        assert res.outcome is ModifyOutcome.FAILED


class TestBulk:

    @pytest.mark.asyncio
    async def test_cancel_all_sweeps_unknown_exchange_orders(self, gateway, paper):
        await gateway.place(Side.BUY, D("99"), D("0.1"))
        # resting on the venue but unknown locally
        await paper.place_order("TESTUSDT", Side.SELL, OrderType.LIMIT, D("0.1"), D("101"))

        res = await gateway.cancel_all("shutdown", sweep_exchange=True)

        assert res.success
        assert res.cancelled_count == 2
        assert paper.open_orders == []
        assert len(gateway.order_manager) == 0

    @pytest.mark.asyncio
    async def test_cancel_all_collects_errors(self, gateway, paper):
        await gateway.place(Side.BUY, D("99"), D("0.1"))
        await gateway.place(Side.SELL, D("101"), D("0.1"))
        paper.fail("cancel", ExchangeTransportError("timeout"))

        res = await gateway.cancel_all("circuit_breaker")

        assert not res.success
        assert res.cancelled_count == 1
        assert len(res.errors) == 1
        assert len(gateway.order_manager) == 1

    @pytest.mark.asyncio
    async def test_reconcile_replaces_map(self, gateway, paper):
        await gateway.place(Side.BUY, D("99"), D("0.1"))
        gateway.order_manager.register(RestingOrder("stale", Side.SELL, D("105"), D("1")))
        await paper.place_order("TESTUSDT", Side.SELL, OrderType.LIMIT, D("0.1"), D("101"))

        res = await gateway.reconcile()

        assert res.open_count == 2
        assert res.removed == ["stale"]
        assert len(res.added) == 1

    @pytest.mark.asyncio
    async def test_reconcile_read_failure_leaves_map(self, gateway, paper):
        await gateway.place(Side.BUY, D("99"), D("0.1"))
        paper.fail("open_orders")
        with pytest.raises(ExchangeTransportError):
            await gateway.reconcile()
        assert len(gateway.order_manager) == 1


# =============================================================================
# FillProcessor
# =============================================================================

def update(order, filled, status):
    return OrderUpdate(order_id=order.order_id, side=order.side, price=order.price,
                       filled_quantity=D(filled), status=status)


class TestFillProcessor:

    @pytest.mark.asyncio
    async def test_buy_fill_opens_position_and_clears_map(self, gateway, fills):
        placed = await gateway.place(Side.BUY, D("99"), D("0.1"))
        res = fills.apply(update(placed.order, "0.1", OrderStatus.FILLED))

        assert res.applied
        assert res.position_opened
        pos = fills.positions.position
        assert pos.entry_price == D("99")
        assert pos.quantity == D("0.1")
        assert pos.target_exit_price > pos.entry_price
        assert placed.order_id not in gateway.order_manager

    @pytest.mark.asyncio
    async def test_duplicate_terminal_event_is_noop(self, gateway, fills):
        placed = await gateway.place(Side.BUY, D("99"), D("0.1"))
        event = update(placed.order, "0.1", OrderStatus.FILLED)
        fills.apply(event)
        other = await gateway.place(Side.SELL, D("101"), D("0.05"))
        pos_before = fills.positions.position.to_dict()
        map_before = dict(gateway.order_manager.orders_by_id)

        res = fills.apply(event)

        assert res.outcome is FillOutcome.DUPLICATE
        assert fills.positions.position.to_dict() == pos_before
        assert gateway.order_manager.orders_by_id == map_before
        assert other.order_id in gateway.order_manager
        assert fills.portfolio.total_trades == 1

    @pytest.mark.asyncio
    async def test_partial_fills_applied_as_deltas(self, gateway, fills):
        placed = await gateway.place(Side.BUY, D("100"), D("1"))
        fills.apply(update(placed.order, "0.4", OrderStatus.PARTIALLY_FILLED))
        repeat = fills.apply(update(placed.order, "0.4", OrderStatus.PARTIALLY_FILLED))
        fills.apply(update(placed.order, "1", OrderStatus.FILLED))

        assert repeat.outcome is FillOutcome.STATUS_ONLY
        assert fills.positions.position.quantity == D("1")
        assert fills.portfolio.total_trades == 2
        assert placed.order_id not in gateway.order_manager

    @pytest.mark.asyncio
    async def test_partial_fill_updates_resting_entry(self, gateway, fills):
        placed = await gateway.place(Side.BUY, D("100"), D("1"))
        fills.apply(update(placed.order, "0.25", OrderStatus.PARTIALLY_FILLED))

        entry = gateway.order_manager.lookup(placed.order_id)
        assert entry.filled_quantity == D("0.25")
        assert entry.remaining == D("0.75")

    @pytest.mark.asyncio
    async def test_sell_fill_closes_position_with_pnl(self, gateway, fills):
        buy = await gateway.place(Side.BUY, D("100"), D("0.1"))
        fills.apply(update(buy.order, "0.1", OrderStatus.FILLED))
        sell = await gateway.place(Side.SELL, D("101"), D("0.1"))
        res = fills.apply(update(sell.order, "0.1", OrderStatus.FILLED))

        assert res.position_closed
        assert res.realized_pnl == D("0.1")
        assert fills.positions.position is None

    @pytest.mark.asyncio
    async def test_cancel_with_partial_fill_counts_inventory(self, gateway, fills):
        placed = await gateway.place(Side.BUY, D("100"), D("1"))
        res = fills.apply(update(placed.order, "0.3", OrderStatus.CANCELED))

        assert res.applied
        assert fills.positions.position.quantity == D("0.3")
        assert fills.is_finalised(placed.order_id)

    @pytest.mark.asyncio
    async def test_second_buy_order_supersedes_position(self, gateway, fills):
        first = await gateway.place(Side.BUY, D("100"), D("0.1"))
        second = await gateway.place(Side.BUY, D("99"), D("0.2"))
        fills.apply(update(first.order, "0.1", OrderStatus.FILLED))
        res = fills.apply(update(second.order, "0.2", OrderStatus.FILLED))

        assert res.position_opened
        assert fills.positions.position.entry_price == D("99")
        assert fills.positions.position.quantity == D("0.2")


# =============================================================================
# Fills on cancelled orders
# =============================================================================

class UnreportedCancelPaper(PaperExchange):
    """Paper venue whose cancel response carries no order state."""

    async def cancel_order(self, symbol, order_id):
        res = await super().cancel_order(symbol, order_id)
        res.order = None
        return res


class TestFillBeforeCancel:

    @pytest.mark.asyncio
    async def test_modify_after_partial_fill_opens_position(self, gateway, fills, paper, instrument):
        gateway.on_order_final = fills.apply
        placed = await gateway.place(Side.BUY, D("99"), D("1"))
        paper.fill_partial(placed.order_id, D("0.4"), push=False)

        res = await gateway.modify(placed.order_id, D("98.50"), D("1"))

        assert res.outcome is ModifyOutcome.REPLACED
        pos = fills.positions.position
        assert pos.quantity == D("0.4")
        assert pos.entry_price == D("99")
        assert fills.portfolio.total_trades == 1
        assert fills.is_finalised(placed.order_id)

        # the venue's own CANCELED event and a later poll change nothing
        for event in paper.drain_updates():
            assert fills.apply(event).outcome is FillOutcome.DUPLICATE
        poller = OrderUpdatePoller(instrument, paper, gateway.order_manager)
        for event in (await poller.poll()).updates:
            fills.apply(event)
        assert fills.positions.position.quantity == D("0.4")
        assert fills.portfolio.total_trades == 1

    @pytest.mark.asyncio
    async def test_cancel_final_update_merges_known_fill(self, gateway, fills, paper):
        gateway.on_order_final = fills.apply
        placed = await gateway.place(Side.BUY, D("99"), D("1"))
        paper.fill_partial(placed.order_id, D("0.25"))
        for event in paper.drain_updates():
            fills.apply(event)

        res = await gateway.cancel(placed.order_id)

        assert res.final.status is OrderStatus.CANCELED
        assert res.final.filled_quantity == D("0.25")
        assert fills.portfolio.total_trades == 1

    @pytest.mark.asyncio
    async def test_unreported_fill_resolved_by_poller(self, instrument):
        venue = UnreportedCancelPaper(
            instrument,
            balances={"USDT": D("1000"), "TEST": D("10")},
            book=make_book("99.9", "100.1"),
        )
        gateway = ExecutionGateway(instrument, venue)
        positions = PositionManager(instrument.symbol, D("0.5"), instrument.price_decimals)
        fills = FillProcessor(instrument, gateway.order_manager, positions, PortfolioTracker(instrument))
        gateway.on_order_final = fills.apply
        placed = await gateway.place(Side.BUY, D("99"), D("1"))
        venue.fill_partial(placed.order_id, D("0.4"), push=False)

        res = await gateway.cancel(placed.order_id)

        assert res.success
        assert res.final is None
        assert not positions.has_open_position
        assert [o.order_id for o in gateway.order_manager.unresolved_orders()] == [placed.order_id]

        poller = OrderUpdatePoller(instrument, venue, gateway.order_manager)
        polled = await poller.poll()
        for event in polled.updates:
            fills.apply(event)

        assert [(u.status, u.filled_quantity) for u in polled.updates] == [(OrderStatus.CANCELED, D("0.4"))]
        assert positions.position.quantity == D("0.4")
        assert gateway.order_manager.unresolved_orders() == []
        assert (await poller.poll()).updates == []


# =============================================================================
# OrderUpdatePoller
# =============================================================================

class TestOrderUpdatePoller:

    @pytest.fixture
    def poller(self, instrument, paper, gateway):
        return OrderUpdatePoller(instrument, paper, gateway.order_manager, OrderPollerConfig(poll_interval_sec=60))

    @pytest.mark.asyncio
    async def test_vanished_order_resolved_to_final_status(self, gateway, paper, poller):
        placed = await gateway.place(Side.BUY, D("99.5"), D("0.1"))
        paper.set_book(make_book("99.0", "99.4"))

        res = await poller.poll()

        assert [(u.order_id, u.status, u.filled_quantity) for u in res.updates] == [
            (placed.order_id, OrderStatus.FILLED, D("0.1")),
        ]

    @pytest.mark.asyncio
    async def test_live_order_without_new_fill_yields_nothing(self, gateway, poller):
        await gateway.place(Side.BUY, D("99"), D("0.1"))
        res = await poller.poll()
        assert res.updates == []

    @pytest.mark.asyncio
    async def test_poll_if_due_respects_interval(self, gateway, paper, poller):
        await gateway.place(Side.BUY, D("99"), D("0.1"))
        await poller.poll()
        calls = len(paper.calls)

        res = await poller.poll_if_due()

        assert res.updates == []
        assert len(paper.calls) == calls

    @pytest.mark.asyncio
    async def test_order_unknown_to_venue_becomes_canceled(self, instrument, paper, gateway, poller):
        gateway.order_manager.register(RestingOrder("ghost", Side.SELL, D("101"), D("1"), filled_quantity=D("0.2")))

        res = await poller.poll()

        assert len(res.updates) == 1
        assert res.updates[0].status is OrderStatus.CANCELED
        assert res.updates[0].filled_quantity == D("0.2")

    @pytest.mark.asyncio
    async def test_read_failure_propagates(self, gateway, paper, poller):
        await gateway.place(Side.BUY, D("99"), D("0.1"))
        paper.fail("open_orders")
        with pytest.raises(ExchangeTransportError):
            await poller.poll()


# =============================================================================
# OrderManager
# =============================================================================

class TestOrderManager:

    def test_orders_by_side_nearest_first(self):
        om = OrderManager()
        om.register(RestingOrder("b1", Side.BUY, D("98"), D("1")))
        om.register(RestingOrder("b2", Side.BUY, D("99"), D("1")))
        om.register(RestingOrder("a1", Side.SELL, D("102"), D("1")))
        om.register(RestingOrder("a2", Side.SELL, D("101"), D("1")))

        assert [o.order_id for o in om.orders_by_side(Side.BUY)] == ["b2", "b1"]
        assert [o.order_id for o in om.orders_by_side(Side.SELL)] == ["a2", "a1"]
        assert om.count_by_side() == {"buy": 2, "sell": 2}

    def test_replace_all_drops_terminal_orders(self):
        om = OrderManager()
        om.register(RestingOrder("old", Side.BUY, D("98"), D("1")))
        done = RestingOrder("done", Side.SELL, D("101"), D("1"), filled_quantity=D("1"), status=OrderStatus.FILLED)

        om.replace_all([RestingOrder("live", Side.BUY, D("99"), D("1")), done])

        assert "old" not in om
        assert "done" not in om
        assert om.open_count() == 1
