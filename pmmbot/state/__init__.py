"""
Owned state: position, portfolio/PnL tracking and the persisted snapshot.
"""

from pmmbot.state.portfolio import PortfolioStats, PortfolioTracker
from pmmbot.state.position_tracker import PositionManager, ReduceResult
from pmmbot.state.state_store import AtomicStateStore, BotState, StateStore

__all__ = [
    "PortfolioStats",
    "PortfolioTracker",
    "PositionManager",
    "ReduceResult",
    "AtomicStateStore",
    "BotState",
    "StateStore",
]
