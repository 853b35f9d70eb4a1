"""Tests for rate limiting functionality.

Tests cover:
- Graceful degradation when the limiter backend fails
- In-process fixed-window limiter (windows, TTL and key-count eviction)
- Limiter selection from settings
- 429 response when rate limit exceeded
- Client identifier extraction from various sources
"""

from __future__ import annotations

import time
import uuid
from unittest.mock import MagicMock, patch

import pytest
from fastapi import HTTPException, Request

from core.config import Settings
from core.ratelimit import (
    InMemoryRateLimiter,
    _get_client_identifier,
    build_ratelimiter,
    check_rate_limit,
)


class TestCheckRateLimit:
    """Tests for the check_rate_limit dependency."""

    @pytest.mark.asyncio
    async def test_check_rate_limit_allows_request_on_redis_error(self) -> None:
        """Verify requests proceed when rate limiter raises exception.

        This tests graceful degradation - when Redis fails, requests should
        still be allowed through rather than blocking all traffic.
        """
        # Setup mock request
        mock_request = MagicMock(spec=Request)
        mock_request.url.path = "/api/v1/assess-stream"
        mock_request.headers.get.return_value = "192.168.1.1"
        mock_request.client.host = "192.168.1.1"

        # Setup mock settings
        mock_settings = MagicMock()
        mock_settings.RATE_LIMIT_REQUESTS = 10

        # Setup mock ratelimiter that raises exception
        mock_ratelimiter = MagicMock()
        mock_ratelimiter.limit.side_effect = Exception("Redis connection failed")

        with patch("core.ratelimit.get_ratelimiter", return_value=mock_ratelimiter):
            # Should not raise - graceful degradation allows request through
            await check_rate_limit(mock_request, mock_settings)

            # Verify limit was attempted
            mock_ratelimiter.limit.assert_called_once()

    @pytest.mark.asyncio
    async def test_check_rate_limit_returns_429_when_exceeded(self) -> None:
        """Verify 429 response when rate limit exceeded."""
        mock_request = MagicMock(spec=Request)
        mock_request.url.path = "/api/v1/assess-stream"
        mock_request.headers.get.return_value = None
        mock_request.client.host = "192.168.1.1"

        mock_settings = MagicMock()
        mock_settings.RATE_LIMIT_REQUESTS = 10

        # Mock response indicating limit exceeded
        mock_response = MagicMock()
        mock_response.allowed = False
        mock_response.remaining = 0
        mock_response.reset = int(time.time() * 1000) + 30000  # 30 seconds from now

        mock_ratelimiter = MagicMock()
        mock_ratelimiter.limit.return_value = mock_response

        with patch("core.ratelimit.get_ratelimiter", return_value=mock_ratelimiter):
            with pytest.raises(HTTPException) as exc_info:
                await check_rate_limit(mock_request, mock_settings)

            assert exc_info.value.status_code == 429
            assert exc_info.value.headers is not None
            assert "Retry-After" in exc_info.value.headers
            assert "X-RateLimit-Limit" in exc_info.value.headers
            assert "X-RateLimit-Remaining" in exc_info.value.headers

    @pytest.mark.asyncio
    async def test_check_rate_limit_bypasses_health_endpoints(self) -> None:
        """Verify health check endpoints bypass rate limiting."""
        mock_request = MagicMock(spec=Request)
        mock_request.url.path = "/api/v1/health"

        mock_settings = MagicMock()

        # Should not call get_ratelimiter for health endpoints
        with patch("core.ratelimit.get_ratelimiter") as mock_get_ratelimiter:
            await check_rate_limit(mock_request, mock_settings)
            mock_get_ratelimiter.assert_not_called()

    @pytest.mark.asyncio
    async def test_check_rate_limit_allows_when_not_configured(self) -> None:
        """Verify requests proceed when rate limiting is not configured."""
        mock_request = MagicMock(spec=Request)
        mock_request.url.path = "/api/v1/assess-stream"

        mock_settings = MagicMock()

        # Rate limiter returns None (not configured)
        with patch("core.ratelimit.get_ratelimiter", return_value=None):
            # Should not raise - allows request through
            await check_rate_limit(mock_request, mock_settings)


class TestGetClientIdentifier:
    """Tests for client identifier extraction."""

    def test_get_client_identifier_uses_forwarded_for(self) -> None:
        """Verify X-Forwarded-For header is used when present."""
        mock_request = MagicMock(spec=Request)
        mock_request.headers.get.return_value = "10.0.0.1, 192.168.1.1"

        result = _get_client_identifier(mock_request)

        assert result == "10.0.0.1"  # First IP in chain

    def test_get_client_identifier_uses_forwarded_for_single_ip(self) -> None:
        """Verify single X-Forwarded-For IP is handled correctly."""
        mock_request = MagicMock(spec=Request)
        mock_request.headers.get.return_value = "10.0.0.1"

        result = _get_client_identifier(mock_request)

        assert result == "10.0.0.1"

    def test_get_client_identifier_uses_client_host(self) -> None:
        """Verify client.host is used when no X-Forwarded-For."""
        mock_request = MagicMock(spec=Request)
        mock_request.headers.get.return_value = None
        mock_request.client.host = "192.168.1.100"

        result = _get_client_identifier(mock_request)

        assert result == "192.168.1.100"

    def test_get_client_identifier_returns_uuid_when_no_client(self) -> None:
        """Verify UUID is generated when client is None."""
        mock_request = MagicMock(spec=Request)
        mock_request.headers.get.return_value = None
        mock_request.client = None  # No client info

        result = _get_client_identifier(mock_request)

        assert result.startswith("unknown:")
        # Verify it's a valid UUID format
        uuid_part = result.split(":")[1]
        uuid.UUID(uuid_part)  # Will raise if invalid

    def test_get_client_identifier_returns_uuid_when_no_host(self) -> None:
        """Verify UUID is generated when client.host is None."""
        mock_request = MagicMock(spec=Request)
        mock_request.headers.get.return_value = None
        mock_request.client = MagicMock()
        mock_request.client.host = None

        result = _get_client_identifier(mock_request)

        assert result.startswith("unknown:")
        # Verify it's a valid UUID format
        uuid_part = result.split(":")[1]
        uuid.UUID(uuid_part)  # Will raise if invalid

    def test_get_client_identifier_strips_whitespace(self) -> None:
        """Verify whitespace is stripped from X-Forwarded-For IPs."""
        mock_request = MagicMock(spec=Request)
        mock_request.headers.get.return_value = "  10.0.0.1  , 192.168.1.1"

        result = _get_client_identifier(mock_request)

        assert result == "10.0.0.1"  # Whitespace stripped


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestInMemoryRateLimiter:
    """Tests for the in-process fixed-window limiter."""

    def test_allows_up_to_max_requests_per_window(self) -> None:
        clock = FakeClock()
        limiter = InMemoryRateLimiter(3, 60, clock=clock)

        decisions = [limiter.limit("10.0.0.1") for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions] == [2, 1, 0, 0]
        # Reset is reported in epoch milliseconds like upstash_ratelimit
        assert decisions[-1].reset == (1_000.0 + 60) * 1000

    def test_window_resets_after_expiry(self) -> None:
        clock = FakeClock()
        limiter = InMemoryRateLimiter(1, 60, clock=clock)

        assert limiter.limit("a").allowed is True
        assert limiter.limit("a").allowed is False

        clock.now += 60
        decision = limiter.limit("a")

        assert decision.allowed is True
        assert decision.remaining == 0

    def test_identifiers_are_counted_separately(self) -> None:
        limiter = InMemoryRateLimiter(1, 60, clock=FakeClock())

        assert limiter.limit("a").allowed is True
        assert limiter.limit("b").allowed is True
        assert limiter.limit("a").allowed is False

    def test_expired_windows_are_evicted(self) -> None:
        clock = FakeClock()
        limiter = InMemoryRateLimiter(5, 60, clock=clock)
        limiter.limit("a")
        limiter.limit("b")
        assert len(limiter) == 2

        clock.now += 61
        limiter.limit("c")

        assert len(limiter) == 1

    def test_key_count_is_bounded(self) -> None:
        clock = FakeClock()
        limiter = InMemoryRateLimiter(1, 60, max_keys=2, clock=clock)

        limiter.limit("a")
        clock.now += 1
        limiter.limit("b")
        clock.now += 1
        limiter.limit("c")

        assert len(limiter) == 2
        # "a" was the oldest window and has been dropped, so it starts fresh
        assert limiter.limit("a").allowed is True

    @pytest.mark.parametrize(
        ("max_requests", "window_seconds", "max_keys"),
        [(0, 60, 10), (1, 0, 10), (1, 60, 0)],
    )
    def test_rejects_non_positive_configuration(
        self, max_requests: int, window_seconds: float, max_keys: int
    ) -> None:
        with pytest.raises(ValueError):
            InMemoryRateLimiter(max_requests, window_seconds, max_keys=max_keys)


class TestBuildRatelimiter:
    """Tests for limiter selection from settings."""

    def _settings(self, **overrides: object) -> Settings:
        return Settings(_env_file=None, ENVIRONMENT="test", **overrides)  # type: ignore[call-arg]

    def test_disabled_returns_none(self) -> None:
        assert build_ratelimiter(self._settings(RATE_LIMIT_ENABLED=False)) is None

    def test_in_memory_without_upstash_credentials(self) -> None:
        limiter = build_ratelimiter(
            self._settings(RATE_LIMIT_REQUESTS=7, RATE_LIMIT_WINDOW_SECONDS=120)
        )

        assert isinstance(limiter, InMemoryRateLimiter)
        assert limiter.max_requests == 7
        assert limiter.window_seconds == 120

    def test_falls_back_to_in_memory_when_upstash_fails(self) -> None:
        settings = self._settings(
            UPSTASH_REDIS_REST_URL="https://example.upstash.io",
            UPSTASH_REDIS_REST_TOKEN="placeholder",  # pragma: allowlist secret
        )
        with patch("core.ratelimit._build_upstash_ratelimiter", return_value=None):
            limiter = build_ratelimiter(settings)

        assert isinstance(limiter, InMemoryRateLimiter)

    @pytest.mark.asyncio
    async def test_limiter_is_read_from_app_state(self) -> None:
        mock_request = MagicMock(spec=Request)
        mock_request.url.path = "/api/v1/assess-stream"
        mock_request.headers.get.return_value = None
        mock_request.client.host = "192.168.1.1"
        mock_request.app.state.ratelimiter = InMemoryRateLimiter(1, 60)

        settings = self._settings(RATE_LIMIT_REQUESTS=1)

        await check_rate_limit(mock_request, settings)
        with pytest.raises(HTTPException) as exc_info:
            await check_rate_limit(mock_request, settings)

        assert exc_info.value.status_code == 429
        assert exc_info.value.headers is not None
        assert exc_info.value.headers["X-RateLimit-Limit"] == "1"
        assert exc_info.value.headers["X-RateLimit-Remaining"] == "0"
        assert int(exc_info.value.headers["Retry-After"]) >= 1
