"""Batch coordinator: many concurrent queries, one network request.

Every query submitted while a batch is open joins it.  The batch is opened
by the first submission and flushed by a callback scheduled with
:meth:`asyncio.loop.call_soon`, so it closes once the submitting code
yields to the event loop and every task already scheduled ahead of the
callback has had its turn.  The flush merges the entries into a combined
request, dispatches it and hands each caller its own part of the response.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from graphbatch.core.errors import GraphqlError, UnsettledEntryError
from graphbatch.core.merge import merge_queries, operation_definition
from graphbatch.core.models import Batch, BatchState, GraphQLRequest, PendingEntry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from graphbatch.core.hooks import ClientHook
    from graphbatch.core.merge import CombinedRequest
    from graphbatch.core.models import QueryDescriptor, Response

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchConfig:
    """Tuning knobs for batching.

    When an open batch already holds ``max_batch_size`` entries, the next
    submission flushes it straight away and starts a new one.
    """

    max_batch_size: int | None = None


class BatchCoordinator:
    """Collects submitted queries into batches and distributes the results.

    *dispatch* sends one combined request and returns the transport
    response; it raises :class:`GraphqlError` when the server answers with
    errors and any other exception when the request could not be made.

    *admit*, when given, is awaited before a combined request is reported
    to hooks and dispatched; an exception from it (typically
    :class:`~graphbatch.core.errors.RateLimitExceededError`) rejects the
    group without contacting the transport.

    Every entry added to a batch is settled exactly once: with its own
    result, with an error scoped to it, or with the error shared by the
    whole batch.
    """

    def __init__(
        self,
        dispatch: Callable[[GraphQLRequest], Awaitable[Response]],
        config: BatchConfig | None = None,
        hooks: list[ClientHook] | None = None,
        admit: Callable[[GraphQLRequest], Awaitable[None]] | None = None,
    ) -> None:
        self._dispatch = dispatch
        self._admit = admit
        self._config = config or BatchConfig()
        if self._config.max_batch_size is not None and self._config.max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        self._hooks: list[ClientHook] = hooks or []
        self._open: Batch | None = None
        self._inflight: set[asyncio.Task[None]] = set()

    @property
    def open_batch(self) -> Batch | None:
        return self._open

    def submit(self, descriptor: QueryDescriptor) -> asyncio.Future[Any]:
        """Queue *descriptor* and return a future for its result.

        Raises :class:`ValueError` straight away for documents that cannot
        be batched (no operation, several operations, subscriptions).
        """
        operation_definition(descriptor.document)
        loop = asyncio.get_running_loop()

        batch = self._open
        limit = self._config.max_batch_size
        if batch is not None and limit is not None and len(batch) >= limit:
            self._flush(batch)
            batch = None

        if batch is None:
            batch = self._open = Batch()
            loop.call_soon(self._flush, batch)
            logger.debug("Opened batch %s", batch.id, extra={"batch_id": batch.id})

        entry = PendingEntry(descriptor, loop.create_future())
        batch.add(entry)
        return entry.future

    async def drain(self) -> None:
        """Wait until every submitted query has been settled."""
        while self._open is not None or self._inflight:
            if self._inflight:
                await asyncio.wait(set(self._inflight))
            else:
                await asyncio.sleep(0)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _flush(self, batch: Batch) -> None:
        if batch.state is not BatchState.OPEN:
            return
        batch.state = BatchState.FLUSHING
        if self._open is batch:
            self._open = None
        task = asyncio.create_task(self._run(batch))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run(self, batch: Batch) -> None:
        logger.debug(
            "Flushing batch %s with %d entries",
            batch.id,
            len(batch),
            extra={"batch_id": batch.id, "entry_count": len(batch)},
        )
        try:
            for entries in _group_by_operation(batch.entries):
                await self._run_group(batch, entries)
        finally:
            for entry in batch.entries:
                if not entry.settled:
                    entry.reject(UnsettledEntryError(batch.id))
            batch.state = BatchState.CLOSED

    async def _run_group(self, batch: Batch, entries: list[PendingEntry]) -> None:
        extra = {"batch_id": batch.id, "entry_count": len(entries)}
        try:
            combined = merge_queries([entry.descriptor for entry in entries])
        except Exception as exc:
            logger.warning("Could not merge batch %s: %s", batch.id, exc, extra=extra)
            _reject_all(entries, exc)
            return

        request = GraphQLRequest(query=combined.query, variables=combined.variables)
        if self._admit is not None:
            try:
                await self._admit(request)
            except Exception as exc:
                logger.warning("Batch %s refused: %s", batch.id, exc, extra=extra)
                self._notify("on_batch_error", request, exc)
                _reject_all(entries, exc)
                return

        if self._hooks:
            for entry in entries:
                self._notify("on_request", entry.request)
            self._notify("on_batch_request", request)

        try:
            response = await self._dispatch(request)
        except GraphqlError as exc:
            if exc.response is not None:
                self._notify("on_batch_response", request, exc.response)
            else:
                self._notify("on_batch_error", request, exc)
            self._settle_errors(batch, entries, combined, exc)
            return
        except Exception as exc:
            logger.warning("Batch %s failed: %s", batch.id, exc, extra=extra)
            self._notify("on_batch_error", request, exc)
            _reject_all(entries, exc)
            return

        self._notify("on_batch_response", request, response)
        data = response.data.get("data") if isinstance(response.data, dict) else None
        for entry, result in zip(entries, combined.split(data), strict=True):
            self._notify_entry(entry, response, result, [])
            entry.resolve(result)

    def _settle_errors(
        self,
        batch: Batch,
        entries: list[PendingEntry],
        combined: CombinedRequest,
        exc: GraphqlError,
    ) -> None:
        scoped = _attribute_errors(combined, exc)
        if scoped is None:
            logger.warning(
                "Batch %s failed: %s",
                batch.id,
                exc,
                extra={"batch_id": batch.id, "entry_count": len(entries)},
            )
            for entry in entries:
                self._notify_entry(entry, exc.response, None, exc.errors)
                entry.reject(exc)
            return

        results = combined.split(exc.data)
        for entry, result, errors in zip(entries, results, scoped, strict=True):
            self._notify_entry(entry, exc.response, result, errors)
            if errors:
                entry.reject(GraphqlError(exc.request, errors, data=result, response=exc.response))
            else:
                entry.resolve(result)

    def _notify_entry(
        self,
        entry: PendingEntry,
        response: Response | None,
        result: dict[str, Any] | None,
        errors: list[dict[str, Any]],
    ) -> None:
        if not self._hooks or response is None:
            return
        body: dict[str, Any] = {"data": result}
        if errors:
            body["errors"] = errors
        self._notify("on_response", entry.request, dataclasses.replace(response, data=body))

    def _notify(self, method: str, *args: Any) -> None:
        for hook in self._hooks:
            try:
                getattr(hook, method)(*args)
            except Exception:
                name = f"{type(hook).__qualname__}.{method}"
                logger.exception("Hook %s raised", name, extra={"hook": name})


def _group_by_operation(entries: list[PendingEntry]) -> list[list[PendingEntry]]:
    """Split entries by operation type, keeping submission order."""
    groups: dict[Any, list[PendingEntry]] = {}
    for entry in entries:
        operation = operation_definition(entry.descriptor.document).operation
        groups.setdefault(operation, []).append(entry)
    return list(groups.values())


def _attribute_errors(
    combined: CombinedRequest, exc: GraphqlError
) -> list[list[dict[str, Any]]] | None:
    """Assign each error to the entry its path points into.

    Returns ``None`` when any error cannot be attributed (no path, unknown
    top-level key, or no data at all); such errors fail the whole batch.
    """
    if exc.data is None:
        return None
    scoped: list[list[dict[str, Any]]] = [[] for _ in combined.aliases]
    for error in exc.errors:
        located = combined.locate(error.get("path"))
        if located is None:
            return None
        index, path = located
        scoped[index].append({**error, "path": path})
    return scoped


def _reject_all(entries: list[PendingEntry], exc: BaseException) -> None:
    for entry in entries:
        entry.reject(exc)
