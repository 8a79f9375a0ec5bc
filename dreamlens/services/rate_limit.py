"""
Fixed-window rate limiter on Redis (INCR + EXPIRE).
Fail-open: if Redis is unavailable the request is allowed and the error logged.
"""
import logging
from dataclasses import dataclass

import redis

from dreamlens.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    limit: int
    reset_in: int  # seconds until the window resets


class RateLimiter:
    def __init__(self, client: redis.Redis | None = None, prefix: str = "rl"):
        self._client = client
        self.prefix = prefix

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        return self._client

    def _hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        current = self.client.incr(key)
        if current == 1:
            self.client.expire(key, window_seconds)
        ttl = self.client.ttl(key)
        reset_in = ttl if isinstance(ttl, int) and ttl > 0 else window_seconds
        return RateLimitResult(allowed=current <= limit, count=current, limit=limit, reset_in=reset_in)

    def check(
        self,
        action: str,
        user_id: str,
        limit: int,
        window_seconds: int,
        ip_address: str | None = None,
    ) -> RateLimitResult:
        """
        Count one hit against the user's window (and the IP window when ip_address is given,
        used for anonymous device users who can mint new ids). The stricter result wins.
        """
        keys = [f"{self.prefix}:{action}:user:{user_id}"]
        if ip_address:
            keys.append(f"{self.prefix}:{action}:ip:{ip_address}")
        try:
            results = [self._hit(key, limit, window_seconds) for key in keys]
        except redis.RedisError as e:
            logger.warning("rate_limit_redis_error", extra={"error": str(e), "user_id": user_id})
            return RateLimitResult(allowed=True, count=0, limit=limit, reset_in=0)

        blocked = [r for r in results if not r.allowed]
        if blocked:
            worst = max(blocked, key=lambda r: r.reset_in)
            logger.warning(
                "rate_limited",
                extra={"user_id": user_id, "ip": ip_address, "count": worst.count, "limit": limit},
            )
            return worst
        return max(results, key=lambda r: r.count)
