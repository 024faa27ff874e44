"""
Utility helpers.
"""

from __future__ import annotations

import time
from collections import deque
from decimal import Decimal
from typing import Any, Deque, Set


def now_ms() -> int:
    return int(time.time() * 1000)


def to_decimal(value: Any) -> Decimal:
    """Convert venue-supplied numbers to Decimal without float artifacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


class BoundedSet:
    """Dedup with bounded memory."""

    def __init__(self, maxlen: int = 5000) -> None:
        self.maxlen = maxlen
        self.deque: Deque[str] = deque(maxlen=maxlen)
        self.set: Set[str] = set()

    def add(self, key: str) -> bool:
        if key in self.set:
            return False
        if len(self.deque) == self.maxlen:
            old = self.deque.popleft()
            self.set.discard(old)
        self.deque.append(key)
        self.set.add(key)
        return True

    def __contains__(self, key: str) -> bool:
        return key in self.set

    def __len__(self) -> int:
        return len(self.set)
