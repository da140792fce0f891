"""
Unit tests for rate limiting.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock
from starlette.datastructures import Headers

from consensus_ai.core.rate_limit import (
    RATE_LIMITS,
    RateLimitMiddleware,
    classify_path,
    get_client_ip,
)


def make_redis(count):
    mock_redis = AsyncMock()
    mock_redis.zadd = AsyncMock(return_value=1)
    mock_redis.zremrangebyscore = AsyncMock(return_value=0)
    mock_redis.zcard = AsyncMock(return_value=count)
    mock_redis.expire = AsyncMock(return_value=True)
    return mock_redis


def make_request(path, headers=None):
    request = MagicMock()
    request.url.path = path
    request.headers = Headers(headers or {})
    request.client = MagicMock()
    request.client.host = "192.168.1.3"
    return request


def test_get_client_ip_from_forwarded_for():
    """Test extracting IP from X-Forwarded-For header."""
    request = MagicMock()
    request.headers = Headers({"X-Forwarded-For": "192.168.1.1, 10.0.0.1"})
    request.client = None

    assert get_client_ip(request) == "192.168.1.1"


def test_get_client_ip_from_client():
    request = make_request("/consensus/generate")
    assert get_client_ip(request) == "192.168.1.3"


def test_classify_path():
    assert classify_path("/consensus/generate") == "generate"
    assert classify_path("/consensus/status/abc") == "general"
    assert classify_path("/usage") == "general"
    assert classify_path("/health/providers") is None
    assert classify_path("/metrics") is None


def test_generate_limit_is_five_per_ten_minutes():
    assert RATE_LIMITS["generate"] == {"limit": 5, "window": 600}
    assert RATE_LIMITS["general"] == {"limit": 100, "window": 900}


@pytest.mark.asyncio
async def test_rate_limit_check_with_redis():
    """Test rate limit check using Redis."""
    middleware = RateLimitMiddleware(MagicMock(), redis_client_provider=lambda: make_redis(3))

    allowed, remaining, _ = await middleware._check_rate_limit(
        identifier="account:acct-1",
        limit=5,
        window=600,
        bucket="generate",
    )

    assert allowed is True
    assert remaining == 2


@pytest.mark.asyncio
async def test_sixth_generate_request_is_rejected():
    mock_redis = make_redis(6)
    middleware = RateLimitMiddleware(MagicMock(), redis_client_provider=lambda: mock_redis)
    call_next = AsyncMock()

    response = await middleware.dispatch(
        make_request("/consensus/generate", {"X-Account-ID": "acct-1"}),
        call_next,
    )

    assert response.status_code == 429
    assert 0 < int(response.headers["Retry-After"]) <= 600
    call_next.assert_not_awaited()
    key = mock_redis.zadd.call_args[0][0]
    assert key == "ratelimit:generate:account:acct-1"


@pytest.mark.asyncio
async def test_exempt_paths_skip_redis():
    mock_redis = make_redis(1000)
    middleware = RateLimitMiddleware(MagicMock(), redis_client_provider=lambda: mock_redis)
    call_next = AsyncMock(return_value=MagicMock())

    await middleware.dispatch(make_request("/health/"), call_next)

    call_next.assert_awaited_once()
    mock_redis.zadd.assert_not_awaited()


@pytest.mark.asyncio
async def test_fails_open_without_redis():
    middleware = RateLimitMiddleware(MagicMock(), redis_client_provider=lambda: None)

    allowed, remaining, _ = await middleware._check_rate_limit("ip:1.2.3.4", 5, 600, "generate")

    assert allowed is True
    assert remaining == 5


@pytest.mark.asyncio
async def test_fails_open_on_redis_error():
    mock_redis = make_redis(0)
    mock_redis.zadd = AsyncMock(side_effect=ConnectionError("redis down"))
    middleware = RateLimitMiddleware(MagicMock(), redis_client_provider=lambda: mock_redis)

    allowed, _, _ = await middleware._check_rate_limit("ip:1.2.3.4", 5, 600, "generate")

    assert allowed is True
