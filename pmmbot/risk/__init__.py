"""
Risk controls: pre-trade risk gate and spread circuit breaker.
"""

from pmmbot.risk.circuit_breaker import BreakerTransition, CircuitBreakerConfig, SpreadCircuitBreaker
from pmmbot.risk.risk import RiskConfig, RiskEvent, RiskEventType, RiskGate

__all__ = [
    "BreakerTransition",
    "CircuitBreakerConfig",
    "SpreadCircuitBreaker",
    "RiskConfig",
    "RiskEvent",
    "RiskEventType",
    "RiskGate",
]
