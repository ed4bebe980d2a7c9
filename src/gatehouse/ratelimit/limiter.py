"""Fixed-window rate limiting keyed by tenant, client IP and route class."""

import math
from dataclasses import dataclass
from typing import Optional

from gatehouse.common.exceptions import RateLimited
from gatehouse.common.logging import get_logger
from gatehouse.common.stores import StoreGuard

logger = get_logger("ratelimit")

DEFAULT_TENANT_KEY = "default"


def bucket_key(tenant_id: Optional[int], ip: str, route_class: str) -> str:
    tenant = DEFAULT_TENANT_KEY if tenant_id is None else str(tenant_id)
    return f"{tenant}:{ip}:{route_class}"


@dataclass
class RateLimitResult:
    limit: int
    remaining: int
    reset_seconds: int

    def headers(self) -> dict[str, str]:
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_seconds),
        }


def limit_headers(exc: RateLimited) -> dict[str, str]:
    """Headers for a rejected request."""
    headers = RateLimitResult(exc.limit, 0, exc.retry_after).headers()
    headers["Retry-After"] = str(exc.retry_after)
    return headers


class RateLimiter:
    """Counts hits per bucket with ``INCR``; the first hit starts the window."""

    def __init__(
        self,
        redis,
        window_ms: int = 900_000,
        max_requests: int = 100,
        overrides: Optional[dict[str, int]] = None,
        guard: Optional[StoreGuard] = None,
    ):
        self.redis = redis
        self.window_ms = window_ms
        self.max_requests = max_requests
        self.overrides = overrides or {}
        self.guard = guard or StoreGuard()

    def limit_for(self, route_class: str) -> int:
        return self.overrides.get(route_class, self.max_requests)

    async def hit(self, tenant_id: Optional[int], ip: str, route_class: str) -> RateLimitResult:
        """Count one request. Raises RateLimited once the bucket is over its max."""
        key = bucket_key(tenant_id, ip, route_class)
        count, ttl_ms = await self.guard.run("ratelimit.hit", self._incr(key))
        limit = self.limit_for(route_class)
        reset_seconds = max(1, math.ceil(ttl_ms / 1000))

        if count > limit:
            logger.warning(
                "Rate limit exceeded",
                extra={"context": {"bucket": key, "count": count, "limit": limit}},
            )
            raise RateLimited(retry_after=reset_seconds, limit=limit)
        return RateLimitResult(limit=limit, remaining=limit - count, reset_seconds=reset_seconds)

    async def _incr(self, key: str) -> tuple[int, int]:
        count = await self.redis.incr(key)
        if count == 1:
            await self.redis.pexpire(key, self.window_ms)
            return count, self.window_ms
        ttl_ms = await self.redis.pttl(key)
        if ttl_ms < 0:
            # Counter lost its expiry; start a fresh window rather than lock out forever.
            await self.redis.pexpire(key, self.window_ms)
            ttl_ms = self.window_ms
        return count, ttl_ms

    async def reset(self, tenant_id: Optional[int], ip: str, route_class: str) -> None:
        await self.redis.delete(bucket_key(tenant_id, ip, route_class))
