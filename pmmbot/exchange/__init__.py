"""
Exchange adapters: the collaborator contract, MEXC spot REST and a paper venue.
"""

from pmmbot.exchange.base import CancelOrderResult, ExchangeClient, OrderResult
from pmmbot.exchange.errors import (
    ExchangeAuthError,
    ExchangeError,
    ExchangeRejectedError,
    ExchangeTransportError,
)
from pmmbot.exchange.mexc import MexcClient
from pmmbot.exchange.paper import PaperExchange

__all__ = [
    "CancelOrderResult",
    "ExchangeClient",
    "OrderResult",
    "ExchangeAuthError",
    "ExchangeError",
    "ExchangeRejectedError",
    "ExchangeTransportError",
    "MexcClient",
    "PaperExchange",
]
