"""Client hooks: observers for outgoing requests and their responses.

Hooks let you inject cross-cutting logic (logging, metrics, auditing) that
sees every query without changing how it is executed.  They are purely
informational: return values are ignored and an exception raised by a hook
is logged and discarded.

Usage::

    class PrintHook(ClientHook):
        def on_batch_request(self, request):
            print(request.query)

    client = Client(auth, hooks=[PrintHook()])
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from graphbatch.core.models import GraphQLRequest, Response


class ClientHook:
    """Base class for client hooks.

    Override the methods you care about; every method is a no-op by default.
    """

    def on_request(self, request: GraphQLRequest) -> None:
        """Called once per submitted query, with its own query and variables,
        when the combined request carrying it is about to be sent.
        """

    def on_response(self, request: GraphQLRequest, response: Response) -> None:
        """Called once per submitted query with its share of the response.

        ``response.data`` holds ``{"data": ..., "errors": [...]}`` as that
        query would have seen it on its own.
        """

    def on_batch_request(self, request: GraphQLRequest) -> None:
        """Called once per combined request, just before it is sent."""

    def on_batch_response(self, request: GraphQLRequest, response: Response) -> None:
        """Called once per combined request with the final response."""

    def on_batch_error(self, request: GraphQLRequest, exc: BaseException) -> None:
        """Called instead of :meth:`on_batch_response` when no response arrived.

        *exc* is the transport error, or the
        :class:`~graphbatch.core.errors.RateLimitExceededError` of a combined
        request the client-side limiter refused.  A refused request never
        reaches :meth:`on_batch_request`.
        """
