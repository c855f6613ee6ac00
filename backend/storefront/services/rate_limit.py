"""Moving-window rate limiting for authentication endpoints.

Built on ``limits``, the library slowapi's per-route throttles already use,
with its async Redis storage in production. The limiter is an optional
collaborator: when no Redis URL is configured ``get_auth_limiter`` returns
None and every request is allowed. When the storage is unreachable the check
fails OPEN by default (``auth_rate_limit_fail_open``). That keeps login
available during a Redis outage at the cost of brute-force protection for
its duration; set the flag to False to fail closed with a 503 instead.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Optional

from limits import RateLimitItemPerSecond
from limits.aio.storage import Storage
from limits.aio.strategies import MovingWindowRateLimiter
from limits.storage import storage_from_string

from storefront.config import settings
from storefront.services.auth_errors import RateLimited, UpstreamFailure

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: int  # epoch milliseconds when the oldest counted hit leaves the window


class SlidingWindowLimiter:
    """Counts hits per identifier over a moving window."""

    def __init__(self, storage: Storage, *, limit: int, window_seconds: int, prefix: str = "ratelimit:auth"):
        self.storage = storage
        self.strategy = MovingWindowRateLimiter(storage)
        self.item = RateLimitItemPerSecond(limit, window_seconds)
        self.prefix = prefix

    async def limit(self, identifier: str) -> RateLimitResult:
        allowed = await self.strategy.hit(self.item, self.prefix, identifier)
        stats = await self.strategy.get_window_stats(self.item, self.prefix, identifier)
        return RateLimitResult(
            success=allowed,
            limit=self.item.amount,
            remaining=stats.remaining,
            reset=int(stats.reset_time * 1000),
        )


_auth_limiter: Optional[SlidingWindowLimiter] = None


def _async_storage_uri(url: str) -> str:
    return url if url.startswith("async+") else f"async+{url}"


def get_auth_limiter() -> Optional[SlidingWindowLimiter]:
    """FastAPI dependency: the auth limiter, or None when rate limiting is off."""
    global _auth_limiter
    if not settings.auth_rate_limit_enabled:
        return None
    if _auth_limiter is None:
        storage = storage_from_string(_async_storage_uri(settings.auth_rate_limit_redis_url))
        _auth_limiter = SlidingWindowLimiter(
            storage,
            limit=settings.auth_rate_limit_attempts,
            window_seconds=settings.auth_rate_limit_window_seconds,
        )
    return _auth_limiter


def close_auth_limiter() -> None:
    """Forget the shared limiter on shutdown; the next request builds a fresh storage."""
    global _auth_limiter
    _auth_limiter = None


def rate_limit_identifier(
    user_id: Optional[int] = None, email: Optional[str] = None, ip: Optional[str] = None,
) -> str:
    """Prefer the account (id, then normalised email), fall back to the address."""
    if user_id is not None:
        return f"user:{user_id}"
    if email:
        return f"account:{email.strip().lower()}"
    if ip:
        return f"ip:{ip}"
    return "anonymous"


async def check_rate_limit(
    limiter: Optional[SlidingWindowLimiter], identifier: str,
) -> RateLimitResult | None:
    """Count one attempt; raise RateLimited when the window is exhausted."""
    if limiter is None:
        return None
    try:
        result = await limiter.limit(identifier)
    except Exception as e:
        # storage backends raise their own connection error types
        if settings.auth_rate_limit_fail_open:
            logger.warning("Rate limiter unavailable, allowing %s: %s", identifier, e)
            return None
        logger.error("Rate limiter unavailable, rejecting %s: %s", identifier, e)
        raise UpstreamFailure("Rate limiter unavailable") from e

    if not result.success:
        retry_after = max(1, math.ceil((result.reset - time.time() * 1000) / 1000))
        logger.info("Rate limit exceeded for %s", identifier)
        raise RateLimited(
            limit=result.limit,
            remaining=result.remaining,
            reset=result.reset,
            retry_after=retry_after,
        )
    return result
