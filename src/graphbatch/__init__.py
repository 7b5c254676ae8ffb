"""graphbatch: batching GraphQL client.

Queries issued concurrently are merged into a single request, paced by a
token-bucket rate limiter and retried when the server reports that it is
rate limiting the client.
"""

__version__ = "1.0.0"

from graphbatch.client import Client  # noqa: E402
from graphbatch.core.batch import BatchConfig  # noqa: E402
from graphbatch.core.errors import (  # noqa: E402
    GraphBatchError,
    GraphqlError,
    RateLimitExceededError,
    UnsettledEntryError,
)
from graphbatch.core.hooks import ClientHook  # noqa: E402
from graphbatch.documents import get_method, gql  # noqa: E402
from graphbatch.patterns.rate_limiter import RateLimiterConfig  # noqa: E402
from graphbatch.patterns.retry import RetryPolicy  # noqa: E402
from graphbatch.transport import TokenAuth  # noqa: E402

__all__ = [
    "BatchConfig",
    "Client",
    "ClientHook",
    "GraphBatchError",
    "GraphqlError",
    "RateLimitExceededError",
    "RateLimiterConfig",
    "RetryPolicy",
    "TokenAuth",
    "UnsettledEntryError",
    "__version__",
    "get_method",
    "gql",
]
