"""
Quoting strategy: proposal generation, inventory skew and the refresh decision.
"""

from pmmbot.strategy.inventory_skew import SkewConfig, SkewResult, apply_skew, compute_skew
from pmmbot.strategy.proposal import ProposalConfig, ProposalGenerator
from pmmbot.strategy.refresh import RefreshConfig, RefreshDecision, RefreshPolicy, RefreshReason

__all__ = [
    "SkewConfig",
    "SkewResult",
    "apply_skew",
    "compute_skew",
    "ProposalConfig",
    "ProposalGenerator",
    "RefreshConfig",
    "RefreshDecision",
    "RefreshPolicy",
    "RefreshReason",
]
