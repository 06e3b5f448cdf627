"""
Wiring: Settings -> component configs -> MarketMaker.
"""

from __future__ import annotations

import dataclasses
from typing import Optional, TYPE_CHECKING

from pmmbot.config.config import Settings
from pmmbot.core.models import Instrument
from pmmbot.execution.execution_gateway import ExecutionGateway
from pmmbot.execution.fill_processor import FillProcessor
from pmmbot.execution.order_manager import OrderManager
from pmmbot.execution.order_poller import OrderPollerConfig, OrderUpdatePoller
from pmmbot.orchestrator.market_maker import MarketMaker, MarketMakerComponents, MarketMakerConfig
from pmmbot.risk.circuit_breaker import CircuitBreakerConfig, SpreadCircuitBreaker
from pmmbot.risk.risk import RiskConfig, RiskGate
from pmmbot.state.portfolio import PortfolioTracker
from pmmbot.state.position_tracker import PositionManager
from pmmbot.state.state_store import AtomicStateStore
from pmmbot.strategy.inventory_skew import SkewConfig
from pmmbot.strategy.proposal import ProposalConfig, ProposalGenerator
from pmmbot.strategy.refresh import RefreshConfig, RefreshPolicy

if TYPE_CHECKING:
    from pmmbot.exchange.base import ExchangeClient
    from pmmbot.monitoring.metrics import MarketMakerMetrics


async def resolve_instrument(settings: Settings, exchange: "ExchangeClient") -> Instrument:
    """Exchange metadata, with any asset/precision set in config taking precedence."""
    meta = await exchange.get_instrument(settings.symbol)
    overrides = {
        "base_asset": settings.base_asset,
        "quote_asset": settings.quote_asset,
        "price_decimals": settings.price_decimals,
        "qty_decimals": settings.qty_decimals,
    }
    return dataclasses.replace(meta, **{k: v for k, v in overrides.items() if v is not None})


def proposal_config(settings: Settings) -> ProposalConfig:
    return ProposalConfig(
        bid_spread_pct=settings.bid_spread_pct,
        ask_spread_pct=settings.ask_spread_pct,
        order_amount=settings.order_amount,
        min_order_size=settings.min_order_size,
        price_type=settings.price_type,
        order_levels=settings.order_levels,
        order_level_spread=settings.order_level_spread,
        price_ceiling=settings.price_ceiling,
        price_floor=settings.price_floor,
        skew=SkewConfig(
            enabled=settings.inventory_skew_enabled,
            target_base_pct=settings.inventory_target_base_pct,
            range_multiplier=settings.inventory_range_multiplier,
        ),
    )


def build_market_maker(
    settings: Settings,
    exchange: "ExchangeClient",
    instrument: Instrument,
    metrics: Optional["MarketMakerMetrics"] = None,
) -> MarketMaker:
    order_manager = OrderManager()
    positions = PositionManager(instrument.symbol, settings.target_spread_pct, instrument.price_decimals)
    portfolio = PortfolioTracker(instrument)

    components = MarketMakerComponents(
        generator=ProposalGenerator(instrument, proposal_config(settings)),
        refresh_policy=RefreshPolicy(RefreshConfig(
            refresh_interval_sec=settings.order_refresh_sec,
            tolerance_pct=settings.order_refresh_tolerance_pct,
            max_order_age_sec=settings.max_order_age_sec,
        )),
        breaker=SpreadCircuitBreaker(CircuitBreakerConfig(
            min_spread_pct=settings.min_spread_pct,
            max_spread_pct=settings.max_spread_pct,
        )),
        risk_gate=RiskGate(instrument, RiskConfig(
            max_order_value=settings.max_order_value,
            min_order_size=settings.min_order_size,
            safety_margin_pct=settings.safety_margin_pct,
        )),
        gateway=ExecutionGateway(instrument, exchange, order_manager=order_manager, metrics=metrics),
        fill_processor=FillProcessor(instrument, order_manager, positions, portfolio, metrics=metrics),
        positions=positions,
        portfolio=portfolio,
        poller=OrderUpdatePoller(
            instrument,
            exchange,
            order_manager,
            OrderPollerConfig(poll_interval_sec=settings.order_poll_interval),
        ),
        state_store=AtomicStateStore(instrument.symbol, settings.state_dir),
    )
    config = MarketMakerConfig(
        loop_interval=settings.loop_interval,
        book_depth=settings.book_depth,
        filled_order_delay_sec=settings.filled_order_delay_sec,
        state_save_interval=settings.state_save_interval,
    )
    return MarketMaker(instrument, exchange, components, config=config, metrics=metrics)
