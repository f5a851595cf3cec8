# =============================================================================
# Rate Limiter — Redis Fixed Window
# =============================================================================
#
# Per-client request counter for the /rag/ask endpoints:
#   key = rag:ratelimit:<client id>:<window number>
#   INCR the key; on the first hit set EXPIRE to the window length.
#
# Default: 20 requests per 60 seconds per client IP.
#
# DESIGN DECISION: Graceful degradation. If Redis is unavailable the
# request is allowed through (log a warning) so a Redis outage never takes
# the API down with it.
# =============================================================================

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

RATE_LIMIT_PREFIX = "rag:ratelimit:"


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in_seconds: int
    limit: int


class RateLimiter:
    """
    Fixed-window limiter over an async Redis client.

    Args:
        redis: ``redis.asyncio.Redis`` or compatible client.
        limit: Requests allowed per window.
        window_seconds: Window length.
        clock: Wall-clock source (seconds), injectable for tests.
    """

    def __init__(
        self,
        redis: Any,
        limit: int = 20,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock

    async def check(self, identifier: str) -> RateLimitResult:
        """Count one request for ``identifier`` and report whether it is allowed."""
        now = self._clock()
        window = int(now // self.window_seconds)
        reset_in = max(int((window + 1) * self.window_seconds - now), 1)
        key = f"{RATE_LIMIT_PREFIX}{identifier}:{window}"

        try:
            count = await self._redis.incr(key)
            if count == 1:
                await self._redis.expire(key, self.window_seconds)
        except Exception as e:
            logger.warning(
                "Rate limiter unavailable (Redis error): %s. Allowing request through.",
                e,
            )
            return RateLimitResult(
                allowed=True,
                remaining=self.limit,
                reset_in_seconds=self.window_seconds,
                limit=self.limit,
            )

        allowed = count <= self.limit
        if not allowed:
            logger.info("Rate limit exceeded for %s (%d/%d)", identifier, count, self.limit)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(self.limit - count, 0),
            reset_in_seconds=reset_in,
            limit=self.limit,
        )
