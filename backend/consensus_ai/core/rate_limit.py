"""
Rate limiting middleware using a Redis sliding window counter.

Limits (per account when X-Account-ID is present, otherwise per client IP):
- /consensus/generate: 5 requests per 10 minutes
- other /consensus routes and /usage: 100 requests per 15 minutes

Without Redis, or when Redis errors, requests are allowed (fail open).
"""
import time
from typing import Callable, Optional, Tuple

from fastapi import Request, status
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from starlette.middleware.base import BaseHTTPMiddleware

from consensus_ai.core.cache import get_redis_client
from consensus_ai.core.logging import get_logger
from consensus_ai.core.metrics import record_rate_limit_hit

logger = get_logger(__name__)

RATE_LIMITS = {
    "generate": {"limit": 5, "window": 600},
    "general": {"limit": 100, "window": 900},
}

EXEMPT_PATHS = {"/health", "/health/providers", "/metrics", "/docs", "/openapi.json", "/redoc"}


def get_client_ip(request: Request) -> str:
    """Extract client IP from request headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def classify_path(path: str) -> Optional[str]:
    """Map a request path to its rate limit bucket, or None if unlimited."""
    if path in EXEMPT_PATHS:
        return None
    if path == "/consensus/generate":
        return "generate"
    if path.startswith("/consensus") or path.startswith("/usage"):
        return "general"
    return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window rate limiter.

    The Redis client is resolved per request so that a connection opened at
    startup is picked up by a middleware registered before it.
    """

    def __init__(self, app, redis_client_provider: Callable[[], Optional[Redis]] = get_redis_client):
        super().__init__(app)
        self.redis_client_provider = redis_client_provider

    async def dispatch(self, request: Request, call_next):
        bucket = classify_path(request.url.path)
        if bucket is None:
            return await call_next(request)

        account_id = request.headers.get("X-Account-ID")
        identifier = f"account:{account_id}" if account_id else f"ip:{get_client_ip(request)}"
        config = RATE_LIMITS[bucket]

        allowed, remaining, reset_time = await self._check_rate_limit(
            identifier=identifier,
            limit=config["limit"],
            window=config["window"],
            bucket=bucket,
        )

        if not allowed:
            record_rate_limit_hit(bucket)
            logger.warning(
                "rate_limit_exceeded",
                identifier=identifier,
                bucket=bucket,
            )
            retry_after = max(0, int(reset_time - time.time()))
            response = JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "detail": "Rate limit exceeded",
                    "retry_after": retry_after,
                },
            )
            response.headers["Retry-After"] = str(retry_after)
            response.headers["X-RateLimit-Limit"] = str(config["limit"])
            response.headers["X-RateLimit-Remaining"] = "0"
            return response

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(config["limit"])
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(int(reset_time))
        return response

    async def _check_rate_limit(
        self,
        identifier: str,
        limit: int,
        window: int,
        bucket: str,
    ) -> Tuple[bool, int, float]:
        """
        Check the limit with a Redis sorted set of request timestamps.

        Returns:
            (allowed, remaining, reset_time)
        """
        redis_client = self.redis_client_provider()
        if not redis_client:
            return True, limit, time.time() + window

        try:
            now = time.time()
            key = f"ratelimit:{bucket}:{identifier}"

            await redis_client.zadd(key, {str(now): now})
            await redis_client.zremrangebyscore(key, 0, now - window)
            count = await redis_client.zcard(key)
            await redis_client.expire(key, window)

            return count <= limit, max(0, limit - count), now + window

        except Exception as e:
            logger.warning(
                "rate_limit_check_failed",
                identifier=identifier,
                error=str(e),
                error_type=type(e).__name__,
            )
            return True, limit, time.time() + window
