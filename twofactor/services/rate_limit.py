"""
Redis-based rate limiting for authentication actions.

Fixed-window counters keyed by (action, identifier). Counters live in Redis
with a TTL equal to the window, so they are shared by every worker, survive
restarts, and expire on their own.
"""

import logging
import math
import time
from dataclasses import dataclass

from redis.exceptions import RedisError

from twofactor.core.redis import get_redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit:"


@dataclass(frozen=True)
class RateLimitRule:
    max_attempts: int
    window_seconds: int


RATE_LIMITS: dict[str, RateLimitRule] = {
    "login": RateLimitRule(max_attempts=5, window_seconds=15 * 60),
    "signup": RateLimitRule(max_attempts=3, window_seconds=60 * 60),
    "resend": RateLimitRule(max_attempts=3, window_seconds=60 * 60),
    "totp_verify": RateLimitRule(max_attempts=10, window_seconds=15 * 60),
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int  # Unix time in milliseconds
    retry_after: int = 0  # Seconds until the window resets, when denied


def rate_limit_key(action: str, identifier: str) -> str:
    return f"{KEY_PREFIX}{action}:{identifier}"


async def check_rate_limit(action: str, identifier: str) -> RateLimitResult:
    """
    Count an attempt and report whether it is within the limit.

    The first attempt in a window creates the counter with the window's
    TTL; later attempts only increment it. SET NX, INCR and PTTL run in one
    MULTI/EXEC so concurrent workers never lose an increment or a TTL.

    Args:
        action: One of RATE_LIMITS
        identifier: Email, IP or user id the attempt is charged to

    Returns:
        RateLimitResult for this attempt

    Raises:
        KeyError: If the action has no configured rule
    """
    rule = RATE_LIMITS[action]
    key = rate_limit_key(action, identifier)
    now_ms = int(time.time() * 1000)
    window_ms = rule.window_seconds * 1000

    try:
        redis = await get_redis()
        pipe = redis.pipeline(transaction=True)
        pipe.set(key, 0, nx=True, px=window_ms)
        pipe.incr(key)
        pipe.pttl(key)
        results = await pipe.execute()

        count = int(results[1])
        ttl_ms = int(results[2])
        if ttl_ms < 0:
            # Key lost its TTL (e.g. persisted by an operator); restore eviction
            await redis.pexpire(key, window_ms)
            ttl_ms = window_ms
    except (RedisError, OSError) as e:
        # Fail open: an unavailable counter store must not lock users out
        logger.warning(f"Rate limit check failed for {action}, allowing request: {e}")
        return RateLimitResult(allowed=True, remaining=rule.max_attempts, reset_at=now_ms + window_ms)

    reset_at = now_ms + ttl_ms

    if count > rule.max_attempts:
        retry_after = math.ceil(ttl_ms / 1000)
        logger.warning(f"Rate limit exceeded for {action}: {count}/{rule.max_attempts} attempts")
        return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at, retry_after=retry_after)

    return RateLimitResult(allowed=True, remaining=rule.max_attempts - count, reset_at=reset_at)
