"""
Utility helpers.
"""

from __future__ import annotations

from collections import deque
from decimal import Decimal, InvalidOperation
from typing import Any, Deque, Set


def to_decimal(value: Any, default: Decimal | None = None) -> Decimal:
    """Decode a wire value (str/int/float) into a Decimal."""
    if isinstance(value, Decimal):
        return value
    if value is None or value == "":
        if default is None:
            raise ValueError("missing decimal value")
        return default
    try:
        # str() first so floats keep their shortest repr instead of binary noise
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"not a decimal: {value!r}") from exc


class BoundedSet:
    """Membership set that forgets its oldest keys beyond maxlen."""

    def __init__(self, maxlen: int = 5000) -> None:
        self.maxlen = maxlen
        self._order: Deque[str] = deque()
        self._members: Set[str] = set()

    def __contains__(self, key: str) -> bool:
        return key in self._members

    def __len__(self) -> int:
        return len(self._members)

    def add(self, key: str) -> bool:
        """Returns False when the key was already present."""
        if key in self._members:
            return False
        self._order.append(key)
        self._members.add(key)
        while len(self._order) > self.maxlen:
            self._members.discard(self._order.popleft())
        return True
