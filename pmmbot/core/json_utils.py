"""
Fast JSON utilities for logging and state snapshots.

Uses orjson (3-10x faster than stdlib json). Decimal values are
serialised as strings so prices and quantities survive a round trip
without float drift.

Usage:
    from pmmbot.core.json_utils import dumps, loads

    log.info(dumps({"event": "order_placed", "price": Decimal("1.2345")}))
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import orjson

_OPTS = orjson.OPT_NON_STR_KEYS


def _default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


def dumps(obj: Any) -> str:
    """Fast JSON encode to string."""
    return orjson.dumps(obj, default=_default, option=_OPTS).decode("utf-8")


def dumps_pretty(obj: Any) -> bytes:
    """Indented encode for files a human may open."""
    return orjson.dumps(obj, default=_default, option=_OPTS | orjson.OPT_INDENT_2)


def loads(s: str | bytes) -> Any:
    """Fast JSON decode."""
    return orjson.loads(s)
