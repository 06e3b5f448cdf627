from pmmbot.orchestrator.bot_factory import build_market_maker, proposal_config, resolve_instrument
from pmmbot.orchestrator.market_maker import (
    BotStatus,
    CycleAction,
    CycleResult,
    MarketMaker,
    MarketMakerComponents,
    MarketMakerConfig,
)

__all__ = [
    "BotStatus",
    "CycleAction",
    "CycleResult",
    "MarketMaker",
    "MarketMakerComponents",
    "MarketMakerConfig",
    "build_market_maker",
    "proposal_config",
    "resolve_instrument",
]
