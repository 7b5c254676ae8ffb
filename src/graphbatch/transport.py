"""HTTP transport and credential hooks.

The client talks to the network through a *request function*: an async
callable taking :class:`RequestOptions` and returning a :class:`Response`.
:class:`HttpxTransport` is the default one, built on :class:`httpx.AsyncClient`
with a pluggable ``httpx`` auth hook; callers may supply their own function
instead.
"""

from __future__ import annotations

import logging
import platform
from typing import TYPE_CHECKING, Any

import httpx

from graphbatch import __version__
from graphbatch.core.models import RequestOptions, Response

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Generator

    RequestFunction = Callable[[RequestOptions], Awaitable[Response]]
    AuthHook = httpx.Auth | Callable[[httpx.Request], httpx.Request]

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.github.com"


def default_user_agent() -> str:
    return f"graphbatch/{__version__} python/{platform.python_version()} ({platform.system()})"


class TokenAuth(httpx.Auth):
    """Adds ``Authorization: <scheme> <token>`` to every request."""

    def __init__(self, token: str, scheme: str = "bearer") -> None:
        if not token:
            raise ValueError("A non-empty token is required")
        self._token = token
        self._scheme = scheme

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = f"{self._scheme} {self._token}"
        yield request


class HttpxTransport:
    """Request function backed by :class:`httpx.AsyncClient`.

    Responses with a status of 400 or above raise
    :class:`httpx.HTTPStatusError`.  JSON bodies are decoded; anything else
    is returned as text.
    """

    def __init__(
        self,
        auth: AuthHook,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._auth = auth
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url, timeout=httpx.Timeout(timeout_seconds)
        )

    async def __call__(self, options: RequestOptions) -> Response:
        kwargs: dict[str, Any] = {"headers": options.headers, "auth": self._auth}
        if options.json is not None:
            kwargs["json"] = options.json
        if options.params:
            kwargs["params"] = options.params

        logger.debug("%s %s", options.method, options.url)
        resp = await self._client.request(options.method, options.url, **kwargs)
        resp.raise_for_status()

        try:
            data: Any = resp.json()
        except ValueError:
            data = resp.text
        return Response(
            status=resp.status_code, headers=dict(resp.headers), url=str(resp.url), data=data
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
