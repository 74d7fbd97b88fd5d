"""
Per-sender command rate limiting.

Counters live behind the ``CounterStore`` protocol. ``InMemoryCounterStore``
is process-local and is lost on restart; a multi-instance deployment needs a
shared store to keep the per-minute ceiling global.
"""

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 60.0


@dataclass
class ConsumeResult:
    """
    Outcome of consuming one unit from a counter.

    Attributes:
        allowed: True if the unit was granted.
        remaining_seconds: Seconds until the window resets (0 when allowed).
    """

    allowed: bool
    remaining_seconds: int = 0


class CounterStore(Protocol):
    def consume(self, key: str, limit: int, window: float) -> ConsumeResult: ...


@dataclass
class _Window:
    count: int
    window_start: float


class InMemoryCounterStore:
    """
    Fixed-window counters in a process-local dict.

    Windows reset lazily on the next ``consume`` once ``window`` seconds have
    passed. Stale keys are never evicted.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def consume(self, key: str, limit: int, window: float) -> ConsumeResult:
        now = self._clock()
        tracker = self._windows.get(key)
        if tracker is None:
            tracker = _Window(count=0, window_start=now)
            self._windows[key] = tracker

        if now - tracker.window_start >= window:
            tracker.count = 0
            tracker.window_start = now

        if tracker.count >= limit:
            remaining = window - (now - tracker.window_start)
            return ConsumeResult(allowed=False, remaining_seconds=max(1, math.ceil(remaining)))

        tracker.count += 1
        return ConsumeResult(allowed=True)

    def __len__(self) -> int:
        return len(self._windows)


@dataclass
class RateLimitResult:
    limited: bool
    remaining_seconds: int = 0


class RateLimiter:
    """Sliding per-(owner, sender) command throttle over a 60 second window."""

    def __init__(self, store: CounterStore | None = None) -> None:
        self._store = store if store is not None else InMemoryCounterStore()

    def consume(self, owner_user_id: str, sender_phone: str, limit_per_minute: int) -> RateLimitResult:
        """
        Count one command from a sender against the owner's per-minute limit.

        A limit of 0 denies every command.

        Args:
            owner_user_id: Panel owner ID.
            sender_phone: Sender's phone number.
            limit_per_minute: Commands allowed per window.

        Returns:
            RateLimitResult: Whether the sender is limited and for how long.
        """
        key = f"{owner_user_id}:{sender_phone}"
        result = self._store.consume(key, limit_per_minute, RATE_LIMIT_WINDOW_SECONDS)
        if not result.allowed:
            logger.info(
                f"Rate limit hit for sender {sender_phone} (owner {owner_user_id}), "
                f"retry in {result.remaining_seconds}s"
            )
            return RateLimitResult(limited=True, remaining_seconds=result.remaining_seconds)
        return RateLimitResult(limited=False)
