"""Client facade: batching, rate limiting and retries in front of a GraphQL API.

Ties together the batch coordinator, the token-bucket rate limiter and the
retry policy, and binds them to one outbound transport chosen at
construction time:

* a credential hook (``auth``), sent through :class:`HttpxTransport`, or
* a caller-supplied ``request`` function.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from graphbatch.config import ClientSettings
from graphbatch.core.batch import BatchConfig, BatchCoordinator
from graphbatch.core.errors import GraphqlError, RateLimitExceededError
from graphbatch.core.models import QueryDescriptor, RequestOptions
from graphbatch.core.schemas import GraphQLResponseBody
from graphbatch.documents import gql
from graphbatch.patterns.rate_limiter import RateLimiter, RateLimiterConfig
from graphbatch.patterns.retry import RetryPolicy, retry_with_backoff
from graphbatch.transport import DEFAULT_BASE_URL, HttpxTransport, TokenAuth, default_user_agent

if TYPE_CHECKING:
    from collections.abc import Mapping

    import httpx
    from graphql import DocumentNode

    from graphbatch.core.hooks import ClientHook
    from graphbatch.core.models import GraphQLRequest, Response
    from graphbatch.transport import AuthHook, RequestFunction

logger = logging.getLogger(__name__)


class Client:
    """Submit GraphQL queries that are transparently batched together.

    Queries submitted before the event loop next gets control are merged
    into one request.  Combined requests pass through the optional rate
    limiter, then are sent with retries while the server reports
    ``RATE_LIMITED``.

    Example::

        async with Client(TokenAuth(token)) as client:
            viewer, repo = await asyncio.gather(
                client.query("query { viewer { login } }"),
                client.query(REPO_QUERY, {"owner": "pugjs", "name": "pug"}),
            )
    """

    def __init__(
        self,
        auth: AuthHook | None = None,
        *,
        request: RequestFunction | None = None,
        user_agent: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        graphql_path: str = "/graphql",
        batch: BatchConfig | None = None,
        rate_limit: RateLimiterConfig | RateLimiter | None = None,
        retry: RetryPolicy | None = None,
        hooks: list[ClientHook] | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        if auth is not None and request is not None:
            raise ValueError("Pass either a credential hook (auth) or a request function, not both")

        self._http: HttpxTransport | None = None
        if request is not None:
            self._send: RequestFunction = request
        elif auth is not None:
            self._http = HttpxTransport(
                auth,
                base_url=base_url,
                timeout_seconds=timeout_seconds,
                http_client=http_client,
            )
            self._send = self._http
        else:
            raise ValueError("Client requires a credential hook (auth) or a request function")

        self._user_agent = user_agent or default_user_agent()
        self._graphql_path = graphql_path
        if isinstance(rate_limit, RateLimiterConfig):
            rate_limit = RateLimiter(rate_limit)
        self._rate_limiter: RateLimiter | None = rate_limit
        self._retry = retry or RetryPolicy()
        self._coordinator = BatchCoordinator(
            self._send_graphql, batch, hooks, admit=self._acquire
        )

    @classmethod
    def from_env(cls, settings: ClientSettings | None = None, **kwargs: Any) -> Client:
        """Build a token-authenticated client from :class:`ClientSettings`."""
        settings = settings or ClientSettings.from_env()
        kwargs.setdefault("batch", BatchConfig(max_batch_size=settings.max_batch_size))
        return cls(
            TokenAuth(settings.token),
            base_url=settings.base_url,
            user_agent=settings.user_agent,
            **kwargs,
        )

    @property
    def rate_limiter(self) -> RateLimiter | None:
        return self._rate_limiter

    async def query(
        self,
        document: DocumentNode | str,
        variables: Mapping[str, Any] | None = None,
    ) -> Any:
        """Run *document* as part of the current batch and return its data."""
        if isinstance(document, str):
            document = gql(document)
        descriptor = QueryDescriptor(document=document, variables=dict(variables or {}))
        return await self._coordinator.submit(descriptor)

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Response:
        """Send a single, unbatched request through the rate limiter."""
        options = RequestOptions(
            method=method.upper(),
            url=url,
            headers=self._headers(headers),
            json=json,
            params=params,
        )
        await self._acquire(options)
        return await self._send(options)

    async def aclose(self) -> None:
        """Wait for in-flight batches, then release the HTTP client we own."""
        await self._coordinator.drain()
        if self._http is not None:
            await self._http.aclose()

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _headers(self, headers: Mapping[str, str] | None) -> dict[str, str]:
        merged = {"user-agent": self._user_agent}
        merged.update({key.lower(): value for key, value in (headers or {}).items()})
        return merged

    async def _acquire(self, request: Any) -> None:
        if self._rate_limiter is None:
            return
        try:
            await self._rate_limiter.acquire()
        except RateLimitExceededError as exc:
            exc.request = request
            raise

    async def _send_graphql(self, request: GraphQLRequest) -> Response:
        return await retry_with_backoff(self._post_graphql, self._retry, request)

    async def _post_graphql(self, request: GraphQLRequest) -> Response:
        response = await self._send(
            RequestOptions(
                method="POST",
                url=self._graphql_path,
                headers=self._headers(None),
                json={"query": request.query, "variables": request.variables},
            )
        )
        body = GraphQLResponseBody.model_validate(response.data)
        if body.errors:
            errors = list(response.data["errors"])
            raise GraphqlError(request, errors, data=body.data, response=response)
        return response
