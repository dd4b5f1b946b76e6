"""Background eviction of idle rate-limit buckets."""

from __future__ import annotations

import anyio

from ..logging import get_logger
from .limiter import TokenBucketLimiter

logger = get_logger(__name__)

CLEANUP_INTERVAL_S: float = 5 * 60
MAX_AGE_S: float = 10 * 60


async def run_sweeper(
    limiter: TokenBucketLimiter,
    *,
    interval_s: float = CLEANUP_INTERVAL_S,
    max_age_s: float = MAX_AGE_S,
) -> None:
    """Sweep *limiter* every *interval_s* seconds until cancelled."""
    logger.info("ratelimit.sweeper.started", interval_s=interval_s, max_age_s=max_age_s)
    try:
        while True:
            await anyio.sleep(interval_s)
            try:
                limiter.sweep(max_age_s)
            except Exception:
                logger.exception("ratelimit.sweeper.failed")
    finally:
        logger.info("ratelimit.sweeper.stopped")
