"""Retry with linear backoff for server-side rate limiting.

Provides a composable :func:`retry_with_backoff` helper that wraps an
async callable and re-invokes it while the server reports that it is
throttling us, up to a fixed number of attempts.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from graphbatch.core.errors import GraphqlError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Coroutine

logger = logging.getLogger(__name__)


def is_server_rate_limited(exc: BaseException) -> bool:
    """True for a GraphQL error payload of exactly one ``RATE_LIMITED`` error."""
    return isinstance(exc, GraphqlError) and exc.is_rate_limited


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable configuration for retry behaviour.

    After failed attempt ``n`` the policy waits ``n * backoff_seconds``.
    """

    max_attempts: int = 4
    backoff_seconds: float = 5.0
    retry_on: Callable[[BaseException], bool] = field(default=is_server_rate_limited, repr=False)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)


async def retry_with_backoff(
    func: Callable[..., Coroutine[Any, Any, Any]],
    policy: RetryPolicy | None = None,
    *args: Any,
    **kwargs: Any,
) -> Any:
    """Execute *func*, retrying while ``policy.retry_on`` accepts the error.

    Any other exception propagates immediately.  After
    ``policy.max_attempts`` attempts the last error is re-raised.
    """
    policy = policy or RetryPolicy()

    attempt = 1
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as exc:
            if attempt >= policy.max_attempts or not policy.retry_on(exc):
                raise
            delay = attempt * policy.backoff_seconds
            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.2fs",
                attempt,
                policy.max_attempts,
                exc,
                delay,
                extra={
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "delay_seconds": delay,
                },
            )
            await policy.sleep(delay)
            attempt += 1
