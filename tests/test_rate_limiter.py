"""Tests for the token bucket rate limiters."""

import time
from unittest.mock import AsyncMock, patch

import pytest

from followup.core.errors import RateLimitExceeded
from followup.core.rate_limiter import ApiRateLimiter, TokenBucket, estimate_tokens


class TestTokenBucket:
    """Tests for TokenBucket."""

    @pytest.mark.asyncio
    async def test_consume_within_capacity_does_not_wait(self) -> None:
        bucket = TokenBucket(rate=1.0, capacity=5)
        with patch("followup.core.rate_limiter.asyncio.sleep", new=AsyncMock()) as sleep:
            for _ in range(5):
                assert await bucket.consume() is True
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_request_over_capacity_is_not_retryable(self) -> None:
        bucket = TokenBucket(rate=1.0, capacity=2)
        with pytest.raises(RateLimitExceeded) as exc_info:
            await bucket.consume(3)
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_excessive_wait_raises_retryable(self) -> None:
        bucket = TokenBucket(rate=0.01, capacity=1, initial_tokens=0, max_wait=1.0)
        with pytest.raises(RateLimitExceeded) as exc_info:
            await bucket.consume()
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_short_wait_sleeps_then_consumes(self) -> None:
        bucket = TokenBucket(rate=100.0, capacity=1, initial_tokens=0, max_wait=5.0)
        assert await bucket.consume() is True
        assert bucket.tokens < 1

    def test_wait_time_zero_when_available(self) -> None:
        bucket = TokenBucket(rate=1.0, capacity=3)
        assert bucket.wait_time(2) == 0.0

    def test_refill_never_exceeds_capacity(self) -> None:
        bucket = TokenBucket(rate=1000.0, capacity=3, initial_tokens=0)
        bucket.last_refill = time.monotonic() - 60
        bucket._refill()
        assert bucket.tokens == 3


class TestApiRateLimiter:
    """Tests for the combined requests/tokens limiter."""

    @pytest.mark.asyncio
    async def test_acquire_charges_both_buckets(self) -> None:
        limiter = ApiRateLimiter(requests_per_minute=10, tokens_per_minute=1000)
        await limiter.acquire(estimated_tokens=100)
        assert limiter.requests.tokens == pytest.approx(9, abs=0.01)
        assert limiter.tokens.tokens == pytest.approx(900, abs=1)

    @pytest.mark.asyncio
    async def test_token_refusal_returns_request_token(self) -> None:
        limiter = ApiRateLimiter(requests_per_minute=10, tokens_per_minute=1000, max_wait=0.5)
        limiter.tokens.tokens = 0
        with pytest.raises(RateLimitExceeded):
            await limiter.acquire(estimated_tokens=900)
        assert limiter.requests.tokens == pytest.approx(10, abs=0.01)


def test_estimate_tokens() -> None:
    assert estimate_tokens("") == 1
    assert estimate_tokens("a" * 400) == 100
