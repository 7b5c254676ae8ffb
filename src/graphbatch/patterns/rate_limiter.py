"""Token-bucket rate limiter for outbound requests.

Paces combined requests sent by one client.  A request that would have to
wait longer than the configured maximum delay is refused instead of queued.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from graphbatch.core.errors import RateLimitExceededError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimiterConfig:
    """Token-bucket parameters."""

    max_tokens: int = 10
    refill_interval_seconds: float = 1.0  # time to regenerate one token
    max_delay_seconds: float = 30.0  # longest wait before a request is refused


@dataclass
class BucketState:
    """Mutable bucket contents.

    ``available_tokens`` goes negative when tokens have been reserved ahead
    of time by callers that are still waiting.
    """

    available_tokens: float
    last_refill: float


class RateLimiter:
    """Token-bucket admission gate.

    Each call to :meth:`acquire` takes one token.  The bucket is read and
    updated before any await, so concurrent callers on one event loop never
    see stale state and are granted slots in call order.
    """

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config or RateLimiterConfig()
        if self._config.max_tokens < 1:
            raise ValueError("max_tokens must be at least 1")
        if self._config.refill_interval_seconds <= 0:
            raise ValueError("refill_interval_seconds must be positive")
        self._clock = clock
        self._sleep = sleep
        self._state = BucketState(float(self._config.max_tokens), clock())

    @property
    def config(self) -> RateLimiterConfig:
        return self._config

    @property
    def available_tokens(self) -> float:
        self._refill(self._clock())
        return self._state.available_tokens

    async def acquire(self) -> None:
        """Wait for the next token, or raise if the wait is too long.

        Raises :class:`RateLimitExceededError` when the token would only be
        available after ``max_delay_seconds``.  The token is still consumed,
        so later callers keep their place behind it.
        """
        delay = self._reserve()
        if delay > self._config.max_delay_seconds:
            logger.warning(
                "Rate limit exceeded, refusing request (next slot in %.3fs)",
                delay,
                extra={"retry_after_seconds": delay},
            )
            raise RateLimitExceededError(delay)
        if delay > 0:
            logger.warning(
                "Rate limit reached, delaying request by %.3fs",
                delay,
                extra={"delay_seconds": delay},
            )
            await self._sleep(delay)

    def _reserve(self) -> float:
        """Take a token and return how long until it becomes valid."""
        self._refill(self._clock())
        self._state.available_tokens -= 1
        if self._state.available_tokens >= 0:
            return 0.0
        return -self._state.available_tokens * self._config.refill_interval_seconds

    def _refill(self, now: float) -> None:
        elapsed = now - self._state.last_refill
        if elapsed <= 0:
            return
        self._state.available_tokens = min(
            float(self._config.max_tokens),
            self._state.available_tokens + elapsed / self._config.refill_interval_seconds,
        )
        self._state.last_refill = now
