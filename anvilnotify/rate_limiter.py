"""Token-bucket rate limiter for outbound mail sends.

All delivery tasks share one :class:`MailRateLimiter`. Before each send a task
awaits :meth:`MailRateLimiter.wait_for_token`, which returns once the bucket
has capacity or the shutdown event fires.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

_EPSILON = 1e-9
_MIN_SLEEP = 0.001


class TokenResult(enum.Enum):
    """Outcome of :meth:`MailRateLimiter.wait_for_token`."""

    ACQUIRED = "acquired"
    ACQUIRED_AFTER_WAIT = "acquired_after_wait"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class RateLimitConfig:
    """Settings from the ``[rate_limit]`` section.

    ``emails_per_second == 0`` disables limiting entirely.
    """

    emails_per_second: int = 10
    burst_size: int = 20

    def __post_init__(self) -> None:
        if self.emails_per_second < 0:
            raise ValueError("emails_per_second must not be negative")
        if self.burst_size < 0:
            raise ValueError("burst_size must not be negative")


class _TokenBucket:
    """Bucket holding up to ``capacity`` tokens, refilled at ``rate`` per second."""

    def __init__(self, rate: float, capacity: int, clock: Callable[[], float]) -> None:
        self._rate = rate
        self._capacity = float(capacity)
        self._clock = clock
        self._tokens = float(capacity)
        self._stamp = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._stamp
        if elapsed > 0:
            self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
            self._stamp = now

    def try_acquire(self) -> bool:
        self._refill()
        if self._tokens >= 1.0 - _EPSILON:
            self._tokens = max(0.0, self._tokens - 1.0)
            return True
        return False

    def delay(self) -> float:
        """Seconds until the next token becomes available."""
        self._refill()
        return max(0.0, (1.0 - self._tokens) / self._rate)


class MailRateLimiter:
    """Shared token-bucket limiter; passthrough when the rate is zero."""

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        config = config if config is not None else RateLimitConfig()
        self.config = config
        if config.emails_per_second == 0:
            self._bucket: Optional[_TokenBucket] = None
        else:
            self._bucket = _TokenBucket(
                float(config.emails_per_second), max(config.burst_size, 1), clock
            )

    async def wait_for_token(self, shutdown: asyncio.Event) -> TokenResult:
        """Wait for a send token or for ``shutdown`` to be set.

        Returns ``ACQUIRED`` when a token was free right away (or limiting is
        disabled), ``ACQUIRED_AFTER_WAIT`` when the caller was throttled, and
        ``SHUTDOWN`` when shutdown fired before a token was ready.
        """
        bucket = self._bucket
        if bucket is None:
            return TokenResult.ACQUIRED
        if bucket.try_acquire():
            logger.debug("Rate limit token acquired immediately")
            return TokenResult.ACQUIRED
        while True:
            if shutdown.is_set():
                logger.debug("Rate limit wait interrupted by shutdown")
                return TokenResult.SHUTDOWN
            delay = max(bucket.delay(), _MIN_SLEEP)
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            else:
                logger.debug("Rate limit wait interrupted by shutdown")
                return TokenResult.SHUTDOWN
            if bucket.try_acquire():
                logger.debug("Rate limit token acquired after wait")
                return TokenResult.ACQUIRED_AFTER_WAIT

    def is_disabled(self) -> bool:
        """True when rate limiting is off (passthrough mode)."""
        return self._bucket is None