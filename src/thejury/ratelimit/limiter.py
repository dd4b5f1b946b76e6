"""Token-bucket rate limiter for inbound requests."""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from ..logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    max_tokens: int = 10
    interval: float = 60.0  # seconds to restore max_tokens

    def __post_init__(self) -> None:
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be at least 1")
        if self.interval <= 0:
            raise ValueError("interval must be positive")

    def merged(
        self, max_tokens: int | None = None, interval: float | None = None
    ) -> RateLimitConfig:
        if max_tokens is None and interval is None:
            return self
        return RateLimitConfig(
            max_tokens=self.max_tokens if max_tokens is None else max_tokens,
            interval=self.interval if interval is None else interval,
        )


@dataclass(slots=True)
class RateLimitEntry:
    tokens: int
    last_refill: float


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    success: bool
    remaining: int


class TokenBucketLimiter:
    """Per-key token buckets with lazy refill.

    Each *key* (usually ``"<route>:<client-ip>"``) gets its own bucket,
    created on first use with one token already spent. Buckets refill in
    whole tokens only: when at least one token is due, the bucket is topped
    up and ``last_refill`` moves to now, dropping any fractional progress.

    The store is process-local. Callers are responsible for key uniqueness;
    two callers sharing a key share a budget.
    """

    def __init__(
        self,
        default: RateLimitConfig | None = None,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self._default = default or RateLimitConfig()
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    @property
    def default(self) -> RateLimitConfig:
        return self._default

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def check(
        self,
        key: str,
        max_tokens: int | None = None,
        interval: float | None = None,
    ) -> RateLimitResult:
        config = self._default.merged(max_tokens, interval)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                remaining = config.max_tokens - 1
                self._entries[key] = RateLimitEntry(tokens=remaining, last_refill=now)
                return RateLimitResult(success=True, remaining=remaining)

            elapsed = now - entry.last_refill
            to_add = math.floor(elapsed / config.interval * config.max_tokens)
            if to_add > 0:
                entry.tokens = min(config.max_tokens, entry.tokens + to_add)
                entry.last_refill = now

            if entry.tokens <= 0:
                return RateLimitResult(success=False, remaining=0)

            entry.tokens -= 1
            return RateLimitResult(success=True, remaining=entry.tokens)

    def sweep(self, max_age: float) -> int:
        """Evict buckets idle for longer than *max_age* seconds."""
        cutoff = self._clock() - max_age
        with self._lock:
            stale = [
                key
                for key, entry in self._entries.items()
                if entry.last_refill < cutoff
            ]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("ratelimit.sweep.evicted", evicted=len(stale), kept=len(self))
        return len(stale)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()
