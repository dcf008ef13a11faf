"""Rate limiting for calls to the external AI classifier.

Token bucket rate limiters for requests-per-minute and tokens-per-minute
budgets. A request that would need to wait longer than ``max_wait`` raises
RateLimitExceeded (retryable) instead of blocking indefinitely.

Usage:
    limiter = ApiRateLimiter(requests_per_minute=50, tokens_per_minute=40000)
    await limiter.acquire(estimated_tokens=1200)
"""

import asyncio
import time

from followup.core.errors import RateLimitExceeded
from followup.core.logging import get_logger

logger = get_logger(__name__)

# Default ceiling on a single wait before giving up
DEFAULT_MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter implementation.

    Tokens are added at a fixed rate and each request consumes some. If not
    enough tokens are available, the request is delayed until they are, as
    long as the delay stays under ``max_wait``.

    Example:
        # 1 request per second, no bursting
        limiter = TokenBucket(rate=1.0, capacity=1)
        await limiter.consume()
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: float | None = None,
        max_wait: float = DEFAULT_MAX_WAIT_SECONDS,
        name: str = "default",
    ):
        """Initialize a token bucket rate limiter.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens (defaults to capacity)
            max_wait: Longest wait in seconds before raising RateLimitExceeded
            name: Bucket name for log lines
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity) if initial_tokens is None else float(initial_tokens)
        self.max_wait = max_wait
        self.name = name
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()

    def wait_time(self, tokens: float = 1) -> float:
        """Seconds until ``tokens`` are available (0 if available now)."""
        self._refill()
        if self.tokens >= tokens:
            return 0.0
        return (tokens - self.tokens) / self.rate

    async def consume(self, tokens: float = 1) -> bool:
        """Consume tokens from the bucket, waiting if needed.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True if tokens were consumed

        Raises:
            RateLimitExceeded: If the wait would exceed max_wait, or tokens
                cannot be consumed even after waiting
        """
        if tokens > self.capacity:
            logger.error(
                "rate_limit_request_exceeds_capacity",
                bucket=self.name,
                tokens=tokens,
                capacity=self.capacity,
            )
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket '{self.name}' capacity "
                f"({self.capacity})",
                retryable=False,
            )

        async with self.lock:
            wait_time = self.wait_time(tokens)
            if wait_time == 0.0:
                self.tokens -= tokens
                return True

            if wait_time > self.max_wait:
                logger.warning(
                    "rate_limit_excessive_wait",
                    bucket=self.name,
                    wait_time=round(wait_time, 2),
                    max_wait=self.max_wait,
                )
                raise RateLimitExceeded(
                    f"Rate limit exceeded for '{self.name}', would require {wait_time:.2f}s wait"
                )

        # Release lock during sleep so other consumers can check
        logger.debug("rate_limit_waiting", bucket=self.name, wait_time=round(wait_time, 2))
        await asyncio.sleep(wait_time)

        async with self.lock:
            self._refill()
            if self.tokens < tokens:
                logger.error(
                    "rate_limit_refill_insufficient",
                    bucket=self.name,
                    tokens=self.tokens,
                    required=tokens,
                )
                raise RateLimitExceeded(
                    f"Failed to get enough '{self.name}' tokens even after waiting"
                )
            self.tokens -= tokens
            return True

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now


class ApiRateLimiter:
    """Requests-per-minute and tokens-per-minute limits for one API.

    Both buckets must admit a call. The request bucket is charged first; if
    the token bucket then refuses, the request token is returned.
    """

    def __init__(
        self,
        requests_per_minute: int,
        tokens_per_minute: int,
        max_wait: float = DEFAULT_MAX_WAIT_SECONDS,
    ):
        self.requests = TokenBucket(
            rate=requests_per_minute / 60.0,
            capacity=requests_per_minute,
            max_wait=max_wait,
            name="requests_per_minute",
        )
        self.tokens = TokenBucket(
            rate=tokens_per_minute / 60.0,
            capacity=tokens_per_minute,
            max_wait=max_wait,
            name="tokens_per_minute",
        )

    async def acquire(self, estimated_tokens: int = 0) -> None:
        """Wait for capacity for one call of ``estimated_tokens`` tokens.

        Raises:
            RateLimitExceeded: If either budget cannot be met within max_wait
        """
        await self.requests.consume(1)
        if estimated_tokens <= 0:
            return
        try:
            await self.tokens.consume(estimated_tokens)
        except RateLimitExceeded:
            async with self.requests.lock:
                self.requests.tokens = min(self.requests.capacity, self.requests.tokens + 1)
            raise


def estimate_tokens(text: str) -> int:
    """Rough token estimate for rate limiting (about 4 characters per token)."""
    return max(1, len(text) // 4)
