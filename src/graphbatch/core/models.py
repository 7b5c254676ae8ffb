"""Domain models for the graphbatch request coordinator.

Defines the value objects that flow through a batch: the caller's
QueryDescriptor, the PendingEntry that suspends the caller, the Batch that
groups entries, and the request/response shapes exchanged with the transport.
"""

from __future__ import annotations

import asyncio
import enum
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from graphql import DocumentNode, print_ast


class BatchState(enum.Enum):
    """Lifecycle states of a batch."""

    OPEN = "open"
    FLUSHING = "flushing"
    CLOSED = "closed"


@dataclass(frozen=True)
class GraphQLRequest:
    """A printed GraphQL request, as sent over the wire."""

    query: str
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RequestOptions:
    """Transport-level request description."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    json: Any = None
    params: dict[str, Any] | None = None


@dataclass(frozen=True)
class Response:
    """Structured transport response.

    ``data`` holds the decoded body; for GraphQL calls that is the
    ``{"data": ..., "errors": ...}`` envelope.
    """

    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    url: str = ""
    data: Any = None


@dataclass(frozen=True, eq=False)
class QueryDescriptor:
    """A query document plus its variables.

    Compared by identity: two submissions of the same document are two
    distinct descriptors.
    """

    document: DocumentNode
    variables: Mapping[str, Any] = field(default_factory=dict)

    @property
    def request(self) -> GraphQLRequest:
        return GraphQLRequest(query=print_ast(self.document), variables=dict(self.variables))


@dataclass(eq=False)
class PendingEntry:
    """A suspended caller waiting for its share of a combined response."""

    descriptor: QueryDescriptor
    future: asyncio.Future[Any]

    @property
    def settled(self) -> bool:
        return self.future.done()

    @property
    def request(self) -> GraphQLRequest:
        return self.descriptor.request

    def resolve(self, value: Any) -> None:
        # A cancelled caller no longer listens; anything else settled twice is a bug.
        if not self.future.cancelled():
            self.future.set_result(value)

    def reject(self, exc: BaseException) -> None:
        if not self.future.cancelled():
            self.future.set_exception(exc)


@dataclass(eq=False)
class Batch:
    """Entries collected during one scheduling window.

    At most one batch per coordinator is :attr:`BatchState.OPEN`; only an
    open batch accepts entries.
    """

    entries: list[PendingEntry] = field(default_factory=list)
    state: BatchState = BatchState.OPEN
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def add(self, entry: PendingEntry) -> None:
        if self.state is not BatchState.OPEN:
            raise RuntimeError(f"Batch {self.id} is {self.state.value} and cannot accept entries")
        self.entries.append(entry)

    def __len__(self) -> int:
        return len(self.entries)
