"""Exceptions surfaced to callers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from graphbatch.core.schemas import RATE_LIMITED, GraphQLErrorEntry

if TYPE_CHECKING:
    from graphbatch.core.models import GraphQLRequest, Response


class GraphBatchError(Exception):
    """Base class for errors raised by graphbatch."""


class GraphqlError(GraphBatchError):
    """The server answered with an ``errors`` payload.

    Carries the request that produced it (printed query plus variables),
    the raw error records, any partial ``data`` and the transport response.
    """

    def __init__(
        self,
        request: GraphQLRequest,
        errors: list[dict[str, Any]],
        data: dict[str, Any] | None = None,
        response: Response | None = None,
    ) -> None:
        message = errors[0].get("message", "") if errors else ""
        super().__init__(message or "GraphQL request failed")
        self.request = request
        self.errors = errors
        self.data = data
        self.response = response

    @property
    def is_rate_limited(self) -> bool:
        """True when the payload is exactly one ``RATE_LIMITED`` error."""
        if len(self.errors) != 1:
            return False
        return GraphQLErrorEntry.model_validate(self.errors[0]).kind == RATE_LIMITED


class RateLimitExceededError(GraphBatchError):
    """The client-side limiter refused a request without sending it."""

    kind = "RATE_LIMIT_EXCEEDED"

    def __init__(self, retry_after_seconds: float, request: Any = None) -> None:
        super().__init__(
            f"Rate limit exceeded: next slot in {retry_after_seconds:.3f}s "
            "is beyond the maximum allowed delay"
        )
        self.retry_after_seconds = retry_after_seconds
        self.request = request


class UnsettledEntryError(GraphBatchError):
    """A batch finished without settling one of its queries."""

    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Batch {batch_id} closed without a result for this query")
        self.batch_id = batch_id
