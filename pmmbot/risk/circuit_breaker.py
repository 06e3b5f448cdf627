"""
SpreadCircuitBreaker: halt quoting when the market spread leaves a band.

Two states, Normal and Tripped. The band is two-sided: an abnormally
narrow spread is treated as a data-quality signal just like a wide one.
Transitions are the only mutation points:
- Normal -> Tripped: spread outside [min_spread_pct, max_spread_pct]
- Tripped -> Normal: spread back inside the band
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional

from pmmbot.core.json_utils import dumps

log = logging.getLogger("pmmbot")


@dataclass
class CircuitBreakerConfig:
    """Spread band in percent of the best bid."""
    min_spread_pct: Decimal = Decimal("0.1")
    max_spread_pct: Decimal = Decimal("2.0")


class BreakerTransition(str, Enum):
    NONE = "none"
    TRIPPED = "tripped"
    RESUMED = "resumed"


class SpreadCircuitBreaker:
    """
    Spread-band circuit breaker.

    evaluate() is called once per cycle with the observed spread and
    reports the edge it crossed, if any. The caller reacts to the edge
    (cancel everything on TRIPPED, reconcile and re-quote on RESUMED).

    Single-threaded asyncio usage; the control loop's lock serialises calls.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        on_trip: Optional[Callable[[], None]] = None,
        on_reset: Optional[Callable[[], None]] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.config = config
        self._tripped: bool = False
        self._trip_count: int = 0
        self._tripped_at: float = 0.0
        self._last_spread: Optional[Decimal] = None
        self._trip_reason: Optional[str] = None

        self._on_trip = on_trip
        self._on_reset = on_reset
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, dumps({"event": event, **kwargs}))

    @property
    def is_tripped(self) -> bool:
        return self._tripped

    @property
    def trip_count(self) -> int:
        return self._trip_count

    def in_band(self, spread_pct: Optional[Decimal]) -> bool:
        if spread_pct is None:
            return False
        return self.config.min_spread_pct <= spread_pct <= self.config.max_spread_pct

    def evaluate(self, spread_pct: Optional[Decimal]) -> BreakerTransition:
        """
        Feed one spread observation.

        A missing spread (one side of the book empty) counts as out of band.
        """
        self._last_spread = spread_pct
        inside = self.in_band(spread_pct)

        if not self._tripped and not inside:
            reason = "one_sided_book" if spread_pct is None else (
                "spread_too_narrow" if spread_pct < self.config.min_spread_pct else "spread_too_wide"
            )
            self._trip(reason, spread_pct)
            return BreakerTransition.TRIPPED

        if self._tripped and inside:
            self._reset(spread_pct)
            return BreakerTransition.RESUMED

        return BreakerTransition.NONE

    def _trip(self, reason: str, spread_pct: Optional[Decimal]) -> None:
        self._tripped = True
        self._trip_count += 1
        self._tripped_at = time.time()
        self._trip_reason = reason
        self._log_event(
            "circuit_break",
            level=logging.WARNING,
            reason=reason,
            spread_pct=spread_pct,
            band=[self.config.min_spread_pct, self.config.max_spread_pct],
            trip_count=self._trip_count,
        )
        self._fire(self._on_trip, "on_trip")

    def _reset(self, spread_pct: Optional[Decimal]) -> None:
        halted_sec = time.time() - self._tripped_at
        self._tripped = False
        self._trip_reason = None
        self._log_event(
            "circuit_reset",
            spread_pct=spread_pct,
            halted_sec=round(halted_sec, 3),
            trip_count=self._trip_count,
        )
        self._fire(self._on_reset, "on_reset")

    def _fire(self, callback: Optional[Callable[[], None]], name: str) -> None:
        if callback is None:
            return
        try:
            callback()
        except Exception:
            log.exception(dumps({"event": "circuit_callback_error", "callback": name}))

    def force_trip(self, reason: str = "manual") -> None:
        """Trip regardless of spread (operator intervention)."""
        if not self._tripped:
            self._trip(reason, self._last_spread)

    def force_reset(self) -> None:
        if self._tripped:
            self._reset(self._last_spread)

    def get_state(self) -> dict:
        """Current state for status/monitoring."""
        return {
            "tripped": self._tripped,
            "trip_reason": self._trip_reason,
            "trip_count": self._trip_count,
            "last_spread_pct": self._last_spread,
            "band": [self.config.min_spread_pct, self.config.max_spread_pct],
        }
