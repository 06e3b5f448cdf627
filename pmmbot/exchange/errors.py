"""
Exchange error taxonomy.

Read calls raise. Mutating calls (place/cancel) return result objects for
business rejections and raise only for transport or auth failures.
"""

from __future__ import annotations

from typing import Optional


class ExchangeError(Exception):
    """Base class for all exchange failures."""

    def __init__(self, message: str, code: Optional[int] = None, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


class ExchangeTransportError(ExchangeError):
    """Timeouts, connection failures, rate limits (429) and 5xx responses."""


class ExchangeAuthError(ExchangeError):
    """Rejected credentials or signature (401/403)."""


class ExchangeRejectedError(ExchangeError):
    """The venue understood the request and refused it (unknown order, bad symbol...)."""
