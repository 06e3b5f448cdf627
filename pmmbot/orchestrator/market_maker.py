"""
MarketMaker: the control loop for one instrument.

Each cycle, under a single mutex:
    1. Pull order-status updates (REST fallback poll) and apply fills
    2. Snapshot book + balances; a failed read skips the cycle untouched
    3. Feed the spread to the circuit breaker (trip -> cancel everything)
    4. Build a proposal, ask the refresh policy, requote through the
       risk gate and the execution gateway

Order-update pushes take the same mutex, so a fill can never interleave
with a cancel/place sequence. stop() cancels everything under the mutex
before the loop task is torn down.

Usage:
    mm = MarketMaker(instrument, exchange, components)
    await mm.start()
    ...
    await mm.stop()
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from pmmbot.core.json_utils import dumps
from pmmbot.core.models import ZERO, Balance, Balances, Instrument, OrderUpdate, Proposal, ProposedOrder, RestingOrder, Side
from pmmbot.exchange.errors import ExchangeError
from pmmbot.execution.execution_gateway import ExecutionGateway, ModifyOutcome
from pmmbot.execution.fill_processor import FillProcessor, FillResult
from pmmbot.execution.order_poller import OrderUpdatePoller
from pmmbot.risk.circuit_breaker import BreakerTransition, SpreadCircuitBreaker
from pmmbot.risk.risk import RiskGate
from pmmbot.state.portfolio import PortfolioTracker
from pmmbot.state.position_tracker import PositionManager
from pmmbot.state.state_store import AtomicStateStore, BotState
from pmmbot.strategy.proposal import ProposalGenerator
from pmmbot.strategy.refresh import RefreshDecision, RefreshPolicy, RefreshReason

if TYPE_CHECKING:
    from pmmbot.exchange.base import ExchangeClient
    from pmmbot.monitoring.metrics import MarketMakerMetrics

log = logging.getLogger("pmmbot")


class CycleAction(str, Enum):
    QUOTED = "quoted"                    # requote executed
    HOLD = "hold"                        # nothing to do this cycle
    SKIPPED = "skipped"                  # snapshot / exchange failure
    BREAKER_TRIPPED = "breaker_tripped"  # tripped this cycle, orders cancelled
    BREAKER_HOLD = "breaker_hold"        # still tripped, no quoting
    STOPPED = "stopped"


@dataclass
class CycleResult:
    action: CycleAction
    reason: Optional[str] = None
    placed: int = 0
    cancelled: int = 0
    modified: int = 0
    risk_rejected: int = 0
    replacements_lost: int = 0
    replacements_restored: int = 0
    error: Optional[str] = None
    duration_ms: float = 0.0


@dataclass
class MarketMakerConfig:
    loop_interval: float = 2.0
    book_depth: int = 5
    filled_order_delay_sec: float = 0.0  # quiet period after a fill, 0 disables
    state_save_interval: float = 60.0


@dataclass
class MarketMakerComponents:
    """Direct component references; the loop owns control flow, not business logic."""
    generator: ProposalGenerator
    refresh_policy: RefreshPolicy
    breaker: SpreadCircuitBreaker
    risk_gate: RiskGate
    gateway: ExecutionGateway
    fill_processor: FillProcessor
    positions: PositionManager
    portfolio: PortfolioTracker
    poller: Optional[OrderUpdatePoller] = None
    state_store: Optional[AtomicStateStore] = None


@dataclass
class BotStatus:
    running: bool
    symbol: str
    position: Optional[Dict[str, Any]]
    resting_orders: List[Dict[str, Any]]
    circuit_breaker: Dict[str, Any]
    portfolio: Dict[str, Any]
    last_refresh: float
    last_cycle: Optional[Dict[str, Any]] = None
    started_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: getattr(self, k) for k in self.__dataclass_fields__}


class _BalanceSheet:
    """Available funds as this cycle's own cancels and places move them."""

    def __init__(self, instrument: Instrument, balances: Balances) -> None:
        self.base_asset = instrument.base_asset
        self.quote_asset = instrument.quote_asset
        self.available = {
            self.base_asset: balances.available(self.base_asset),
            self.quote_asset: balances.available(self.quote_asset),
        }

    @staticmethod
    def _locked(side: Side, price: Decimal, quantity: Decimal) -> Decimal:
        return price * quantity if side is Side.BUY else quantity

    def _asset(self, side: Side) -> str:
        return self.quote_asset if side is Side.BUY else self.base_asset

    def credit(self, order: RestingOrder) -> None:
        self.available[self._asset(order.side)] += self._locked(order.side, order.price, order.remaining)

    def debit(self, side: Side, price: Decimal, quantity: Decimal) -> None:
        self.available[self._asset(side)] -= self._locked(side, price, quantity)

    def view(self, releasing: Optional[RestingOrder] = None) -> Balances:
        """Balances as seen by the risk gate, optionally counting funds an order will release."""
        available = dict(self.available)
        if releasing is not None:
            available[self._asset(releasing.side)] += self._locked(
                releasing.side, releasing.price, releasing.remaining
            )
        return Balances.of([Balance(asset=a, available=max(v, ZERO)) for a, v in available.items()])


class MarketMaker:

    def __init__(
        self,
        instrument: Instrument,
        exchange: "ExchangeClient",
        components: MarketMakerComponents,
        config: Optional[MarketMakerConfig] = None,
        metrics: Optional["MarketMakerMetrics"] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.instrument = instrument
        self.exchange = exchange
        self.c = components
        # Fills reported by a cancel land in the Position under the same mutex
        self.c.gateway.on_order_final = self.c.fill_processor.apply
        self.config = config or MarketMakerConfig()
        self.metrics = metrics
        self._log_event = log_event or self._default_log

        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._running = False
        self._stopped = False
        self._task: Optional[asyncio.Task] = None
        self._updates_task: Optional[asyncio.Task] = None
        self._resync_pending = False
        self._last_refresh: float = 0.0
        self._last_save: float = time.time()
        self._last_cycle: Optional[CycleResult] = None
        self._started_at: Optional[float] = None

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, dumps({"event": event, "symbol": self.instrument.symbol, **kwargs}))

    @property
    def symbol(self) -> str:
        return self.instrument.symbol

    @property
    def running(self) -> bool:
        return self._running

    @property
    def order_manager(self):
        return self.c.gateway.order_manager

    # ========== Lifecycle ==========

    async def start(self, spawn_loop: bool = True) -> None:
        """
        Restore bookkeeping, rebuild the order map from the exchange and
        capture the starting portfolio value.

        With spawn_loop=False the caller drives run_cycle() itself.

        Raises:
            ExchangeError: startup reads failed (nothing was started)
        """
        if self._running:
            return
        await self._restore_state()

        async with self._lock:
            await self.c.gateway.reconcile()
            book = await self.exchange.get_top_of_book(self.symbol, self.config.book_depth)
            balances = Balances.of(await self.exchange.get_balances())
            self.c.portfolio.initialize(balances, book.mid)

        self._running = True
        self._stopped = False
        self._started_at = time.time()
        self._log_event(
            "bot_started",
            resting=self.order_manager.open_count(),
            initial_value=self.c.portfolio.initial_value,
        )

        if spawn_loop:
            self._task = asyncio.create_task(self._run(), name=f"pmm-loop-{self.symbol}")
            if hasattr(self.exchange, "order_updates"):
                self._updates_task = asyncio.create_task(self._pump_updates(), name=f"pmm-updates-{self.symbol}")

    async def stop(self) -> None:
        """
        Graceful stop: no new cycle starts, every resting order is cancelled
        under the mutex, then the loop task is torn down and state saved.
        """
        if self._stopped:
            return
        self._running = False
        self._wake.set()
        tasks = [t for t in (self._task, self._updates_task) if t is not None]

        async with self._lock:
            try:
                result = await self.c.gateway.cancel_all(reason="shutdown", sweep_exchange=True)
            finally:
                for task in tasks:
                    if not task.done():
                        task.cancel()

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.save_state()
        self._stopped = True
        self._log_event(
            "bot_stopped",
            level=logging.WARNING if result.errors else logging.INFO,
            cancelled=result.cancelled_count,
            errors=result.errors,
            pnl=self.c.portfolio.pnl,
        )

    async def wait(self) -> None:
        """Block until the loop task ends (stop() or cancellation)."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def status(self) -> BotStatus:
        """Read-only snapshot; never mutates state."""
        position = self.c.positions.position
        return BotStatus(
            running=self._running,
            symbol=self.symbol,
            position=position.to_dict() if position is not None else None,
            resting_orders=[o.to_dict() for o in self.order_manager.all_orders()],
            circuit_breaker=self.c.breaker.get_state(),
            portfolio=self.c.portfolio.stats().to_dict(),
            last_refresh=self._last_refresh,
            last_cycle=self._cycle_summary(self._last_cycle),
            started_at=self._started_at,
        )

    @staticmethod
    def _cycle_summary(result: Optional[CycleResult]) -> Optional[Dict[str, Any]]:
        if result is None:
            return None
        return {
            "action": result.action.value,
            "reason": result.reason,
            "placed": result.placed,
            "cancelled": result.cancelled,
            "duration_ms": round(result.duration_ms, 2),
        }

    # ========== Loop ==========

    async def _run(self) -> None:
        while self._running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception:
                # Bug or unexpected venue payload; log and keep quoting on the next tick
                log.exception(dumps({"event": "cycle_crashed", "symbol": self.symbol}))
            await self._maybe_save_state()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.config.loop_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    async def _pump_updates(self) -> None:
        async for update in self.exchange.order_updates():
            try:
                await self.on_order_update(update)
            except Exception:
                log.exception(dumps({"event": "order_update_failed", "symbol": self.symbol, "order_id": update.order_id}))

    async def on_order_update(self, update: OrderUpdate) -> FillResult:
        """Apply a pushed order update under the mutex; a fill wakes the loop."""
        async with self._lock:
            result = self.c.fill_processor.apply(update)
        if result.applied:
            self._wake.set()
        return result

    async def run_cycle(self) -> CycleResult:
        started = time.perf_counter()
        async with self._lock:
            if not self._running:
                return CycleResult(CycleAction.STOPPED)
            try:
                result = await self._cycle()
            except ExchangeError as exc:
                self._log_event(
                    "cycle_exchange_error",
                    level=logging.WARNING,
                    err=str(exc),
                    kind=type(exc).__name__,
                )
                result = CycleResult(CycleAction.SKIPPED, reason="exchange_error", error=str(exc))

        result.duration_ms = (time.perf_counter() - started) * 1000
        self._last_cycle = result
        self._record_cycle(result)
        return result

    def _record_cycle(self, result: CycleResult) -> None:
        if result.action is CycleAction.QUOTED:
            self._log_event(
                "cycle",
                action=result.action.value,
                reason=result.reason,
                placed=result.placed,
                cancelled=result.cancelled,
                modified=result.modified,
                risk_rejected=result.risk_rejected,
                lost=result.replacements_lost,
                restored=result.replacements_restored,
                duration_ms=round(result.duration_ms, 2),
            )
        if not self.metrics:
            return
        self.metrics.cycles.labels(symbol=self.symbol, action=result.action.value).inc()
        self.metrics.cycle_latency_ms.labels(symbol=self.symbol).observe(result.duration_ms)
        if result.action is CycleAction.SKIPPED:
            self.metrics.cycles_skipped.labels(symbol=self.symbol, reason=result.reason or "unknown").inc()
        self.metrics.cumulative_pnl.labels(symbol=self.symbol).set(float(self.c.portfolio.pnl))

    # ========== Cycle ==========

    async def _cycle(self) -> CycleResult:
        if self.c.poller is not None:
            polled = await self.c.poller.poll_if_due()
            for update in polled.updates:
                self.c.fill_processor.apply(update)

        try:
            book = await self.exchange.get_top_of_book(self.symbol, self.config.book_depth)
            balances = Balances.of(await self.exchange.get_balances())
        except ExchangeError as exc:
            self._log_event("snapshot_failed", level=logging.WARNING, err=str(exc), kind=type(exc).__name__)
            return CycleResult(CycleAction.SKIPPED, reason="snapshot_failed", error=str(exc))

        spread = book.spread_pct
        if self.metrics and spread is not None:
            self.metrics.market_spread_pct.labels(symbol=self.symbol).set(float(spread))

        transition = self.c.breaker.evaluate(spread)
        self._record_breaker(transition)
        if transition is BreakerTransition.TRIPPED:
            res = await self.c.gateway.cancel_all(reason="circuit_breaker", sweep_exchange=True)
            return CycleResult(
                CycleAction.BREAKER_TRIPPED,
                reason=self.c.breaker.get_state().get("trip_reason"),
                cancelled=res.cancelled_count,
                error="; ".join(res.errors) or None,
            )
        if self.c.breaker.is_tripped:
            self._log_event("breaker_holding", level=logging.WARNING, spread_pct=spread)
            return CycleResult(CycleAction.BREAKER_HOLD, reason="spread_out_of_band")
        if transition is BreakerTransition.RESUMED:
            self._resync_pending = True

        forced = False
        if self._resync_pending:
            await self._resync()
            forced = True

        self.c.portfolio.update(balances, book.mid)

        if not forced and self._in_fill_delay():
            return CycleResult(CycleAction.HOLD, reason="filled_order_delay")

        proposal = self.c.generator.generate(book, self.c.positions.position, balances)
        if proposal.is_empty:
            return CycleResult(CycleAction.HOLD, reason="empty_proposal")

        now = time.time()
        if forced:
            decision = RefreshDecision(True, RefreshReason.RESYNC)
        else:
            decision = self.c.refresh_policy.decide(proposal, self.order_manager.all_orders(), self._last_refresh, now)
        if not decision:
            return CycleResult(CycleAction.HOLD, reason=decision.reason.value)

        self._log_event("refresh", level=logging.DEBUG, reason=decision.reason.value, **decision.detail)
        result = await self._requote(proposal, balances, now)
        result.reason = decision.reason.value
        self._last_refresh = now
        return result

    async def _resync(self) -> None:
        """Pick up fills missed while halted, then rebuild the map from the exchange."""
        if self.c.poller is not None:
            polled = await self.c.poller.poll()
            for update in polled.updates:
                self.c.fill_processor.apply(update)
        await self.c.gateway.reconcile()
        self._resync_pending = False

    def _in_fill_delay(self) -> bool:
        delay = self.config.filled_order_delay_sec
        last = self.c.fill_processor.last_fill_at
        return delay > 0 and last > 0 and time.time() - last < delay

    def _record_breaker(self, transition: BreakerTransition) -> None:
        if not self.metrics:
            return
        if transition is BreakerTransition.TRIPPED:
            self.metrics.breaker_trips.labels(symbol=self.symbol).inc()
        self.metrics.breaker_tripped.labels(symbol=self.symbol).set(1 if self.c.breaker.is_tripped else 0)

    # ========== Requote ==========

    async def _requote(self, proposal: Proposal, balances: Balances, now: float) -> CycleResult:
        """
        Converge resting orders toward the proposal, level by level.

        Existing orders are paired with proposed levels nearest-first.
        Surplus orders are cancelled before anything is placed so their
        funds are free for the rest of the cycle.

        Raises:
            ExchangeError: transport failure mid-requote; the map reflects
                every confirmed step and the next cycle starts over
        """
        sheet = _BalanceSheet(self.instrument, balances)
        result = CycleResult(CycleAction.QUOTED)

        for side in (Side.BUY, Side.SELL):
            desired = list(proposal.side(side))
            existing = self.order_manager.orders_by_side(side)

            for order in existing[len(desired):]:
                res = await self.c.gateway.cancel(order.order_id, reason="surplus_level")
                if res.success:
                    sheet.credit(order)
                    result.cancelled += 1

            for idx, target in enumerate(desired):
                current = existing[idx] if idx < len(existing) else None
                await self._quote_level(target, current, sheet, result, now)

        return result

    def _unchanged(self, order: RestingOrder, target: ProposedOrder, now: float) -> bool:
        max_age = self.c.refresh_policy.config.max_order_age_sec
        if max_age > 0 and order.age(now) > max_age:
            return False
        return order.price == target.price and order.remaining == target.quantity

    async def _quote_level(
        self,
        target: ProposedOrder,
        current: Optional[RestingOrder],
        sheet: _BalanceSheet,
        result: CycleResult,
        now: float,
    ) -> None:
        if current is not None and self._unchanged(current, target, now):
            return

        check = self.c.risk_gate.check(target.side, target.price, target.quantity, sheet.view(releasing=current))
        if not check.approved:
            result.risk_rejected += 1
            if self.metrics:
                self.metrics.risk_rejections.labels(symbol=self.symbol, side=target.side.value).inc()
            if current is not None:
                # Leave the side unquoted rather than resting at a stale price
                res = await self.c.gateway.cancel(current.order_id, reason="risk_rejected")
                if res.success:
                    sheet.credit(current)
                    result.cancelled += 1
            return

        qty = check.adjusted_quantity
        if qty != target.quantity and self.metrics:
            self.metrics.risk_adjustments.labels(symbol=self.symbol, side=target.side.value).inc()

        if current is None:
            placed = await self.c.gateway.place(target.side, target.price, qty)
            if placed.success:
                sheet.debit(target.side, target.price, qty)
                result.placed += 1
            return

        modified = await self.c.gateway.modify(current.order_id, target.price, qty)
        if modified.outcome is ModifyOutcome.REPLACED:
            sheet.credit(current)
            sheet.debit(target.side, target.price, qty)
            result.modified += 1
        elif modified.outcome is ModifyOutcome.REPLACEMENT_LOST:
            sheet.credit(current)
            result.replacements_lost += 1
            await self._restore_lost(target, qty, sheet, result)

    async def _restore_lost(self, target: ProposedOrder, qty: Decimal, sheet: _BalanceSheet, result: CycleResult) -> None:
        """The old order is gone and its replacement failed; try once more with a fresh place."""
        placed = await self.c.gateway.place(target.side, target.price, qty)
        if placed.success:
            sheet.debit(target.side, target.price, qty)
            result.replacements_restored += 1
            result.placed += 1
            self._log_event("replacement_restored", order_id=placed.order_id, side=target.side.value, price=target.price)
        else:
            self._log_event(
                "side_unquoted",
                level=logging.ERROR,
                side=target.side.value,
                price=target.price,
                qty=qty,
                err=placed.error,
            )

    # ========== State ==========

    async def save_state(self) -> None:
        if self.c.state_store is None:
            return
        portfolio = self.c.portfolio
        state = BotState(
            symbol=self.symbol,
            active_orders=self.order_manager.all_orders(),
            trade_history=list(portfolio.trades),
            initial_portfolio_value=portfolio.initial_value,
            cumulative_pnl=portfolio.pnl,
            total_trades=portfolio.total_trades,
        )
        await self.c.state_store.save(state)
        self._last_save = time.time()

    async def _maybe_save_state(self) -> None:
        interval = self.config.state_save_interval
        if interval > 0 and time.time() - self._last_save >= interval:
            await self.save_state()

    async def _restore_state(self) -> None:
        if self.c.state_store is None:
            return
        state = await self.c.state_store.load()
        if state is None:
            return
        self.c.portfolio.restore(state.initial_portfolio_value, state.trade_history, state.total_trades)
        self._log_event(
            "state_restored",
            saved_at=state.timestamp,
            trades=len(state.trade_history),
            saved_orders=len(state.active_orders),
            initial_value=state.initial_portfolio_value,
        )
