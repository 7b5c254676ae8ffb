"""Helpers for working with query documents."""

from __future__ import annotations

import functools
from typing import TYPE_CHECKING, Any

from graphql import DocumentNode, parse

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from graphbatch.client import Client


@functools.lru_cache(maxsize=512)
def gql(source: str) -> DocumentNode:
    """Parse GraphQL source text into a document.

    Results are cached, so the same text always yields the same document
    object.  Raises :class:`graphql.GraphQLSyntaxError` on invalid input.
    """
    return parse(source)


def get_method(
    document: DocumentNode | str,
) -> Callable[..., Awaitable[Any]]:
    """Bind *document* into a reusable coroutine function.

    Example::

        get_viewer = get_method("query { viewer { login } }")
        result = await get_viewer(client)
    """
    if isinstance(document, str):
        document = gql(document)

    async def method(client: Client, variables: Mapping[str, Any] | None = None) -> Any:
        return await client.query(document, variables)

    return method
