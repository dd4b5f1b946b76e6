"""In-memory request rate limiting."""

from __future__ import annotations

from .client_ip import client_ip, limit_key
from .limiter import RateLimitConfig, RateLimitResult, TokenBucketLimiter
from .sweeper import run_sweeper

__all__ = [
    "RateLimitConfig",
    "RateLimitResult",
    "TokenBucketLimiter",
    "client_ip",
    "limit_key",
    "run_sweeper",
]
