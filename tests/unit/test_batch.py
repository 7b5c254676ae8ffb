"""Unit tests for the batch coordinator."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from graphbatch.core.batch import BatchConfig, BatchCoordinator
from graphbatch.core.errors import GraphqlError, RateLimitExceededError, UnsettledEntryError
from graphbatch.core.hooks import ClientHook
from graphbatch.core.models import BatchState, GraphQLRequest, QueryDescriptor, Response
from graphbatch.documents import gql

REPOSITORY = gql(
    """
    query ($owner: String!, $name: String!) {
      repository(owner: $owner, name: $name) { nameWithOwner }
    }
    """
)
VIEWER = gql("{ viewer { login } }")


def _repo(owner: str, name: str) -> QueryDescriptor:
    return QueryDescriptor(REPOSITORY, {"owner": owner, "name": name})


def _expected(owner: str, name: str) -> dict[str, Any]:
    return {"repository": {"field": "repository", "args": {"owner": owner, "name": name}}}


class RecordingDispatch:
    """Dispatch function that records requests and echoes arguments back."""

    def __init__(self, echo) -> None:
        self.requests: list[GraphQLRequest] = []
        self._echo = echo
        self.error: BaseException | None = None
        self.gate: asyncio.Event | None = None

    async def __call__(self, request: GraphQLRequest) -> Response:
        self.requests.append(request)
        await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return Response(status=200, data={"data": self._echo(request.query, request.variables)})


class RecordingHook(ClientHook):
    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []

    def on_request(self, request: GraphQLRequest) -> None:
        self.calls.append(("request", request.variables))

    def on_response(self, request: GraphQLRequest, response: Response) -> None:
        self.calls.append(("response", response.data))

    def on_batch_request(self, request: GraphQLRequest) -> None:
        self.calls.append(("batch_request", request.variables))

    def on_batch_response(self, request: GraphQLRequest, response: Response) -> None:
        self.calls.append(("batch_response", response.status))

    def on_batch_error(self, request: GraphQLRequest, exc: BaseException) -> None:
        self.calls.append(("batch_error", exc))


@pytest.fixture()
def dispatch(echo) -> RecordingDispatch:
    return RecordingDispatch(echo)


class TestBatching:
    @pytest.mark.asyncio
    async def test_concurrent_queries_share_one_request(self, dispatch) -> None:
        coordinator = BatchCoordinator(dispatch)

        results = await asyncio.gather(
            coordinator.submit(_repo("pugjs", "pug")),
            coordinator.submit(_repo("ForbesLindesay", "atdatabases")),
            coordinator.submit(_repo("pugjs", "pug")),
        )

        assert len(dispatch.requests) == 1
        assert results == [
            _expected("pugjs", "pug"),
            _expected("ForbesLindesay", "atdatabases"),
            _expected("pugjs", "pug"),
        ]

    @pytest.mark.asyncio
    async def test_query_after_flush_opens_new_batch(self, dispatch) -> None:
        coordinator = BatchCoordinator(dispatch)

        first = await coordinator.submit(_repo("pugjs", "pug"))
        second = await coordinator.submit(_repo("ForbesLindesay", "atdatabases"))

        assert len(dispatch.requests) == 2
        assert first == _expected("pugjs", "pug")
        assert second == _expected("ForbesLindesay", "atdatabases")

    @pytest.mark.asyncio
    async def test_tasks_scheduled_before_flush_join_the_batch(self, dispatch) -> None:
        coordinator = BatchCoordinator(dispatch)

        async def submit(owner: str) -> Any:
            return await coordinator.submit(_repo(owner, "x"))

        tasks = [asyncio.create_task(submit(owner)) for owner in ("a", "b", "c")]
        results = await asyncio.gather(*tasks)

        assert len(dispatch.requests) == 1
        assert [r["repository"]["args"]["owner"] for r in results] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_max_batch_size_splits_requests(self, dispatch) -> None:
        coordinator = BatchCoordinator(dispatch, BatchConfig(max_batch_size=2))
        owners = [f"owner{i}" for i in range(5)]

        results = await asyncio.gather(*(coordinator.submit(_repo(o, "x")) for o in owners))

        assert len(dispatch.requests) == 3
        assert [len(r.variables) for r in dispatch.requests] == [3, 3, 2]
        assert results == [_expected(o, "x") for o in owners]

    @pytest.mark.asyncio
    async def test_batch_lifecycle(self, dispatch) -> None:
        coordinator = BatchCoordinator(dispatch)

        future = coordinator.submit(QueryDescriptor(VIEWER))
        batch = coordinator.open_batch
        assert batch is not None
        assert batch.state is BatchState.OPEN

        await future
        assert coordinator.open_batch is None
        await coordinator.drain()
        assert batch.state is BatchState.CLOSED

    @pytest.mark.asyncio
    async def test_queries_and_mutations_are_sent_separately(self, dispatch) -> None:
        coordinator = BatchCoordinator(dispatch)
        mutation = gql(
            "mutation ($id: ID!) { addStar(input: {starrableId: $id}) { clientMutationId } }"
        )

        query_result, mutation_result = await asyncio.gather(
            coordinator.submit(QueryDescriptor(VIEWER)),
            coordinator.submit(QueryDescriptor(mutation, {"id": "R_1"})),
        )

        assert len(dispatch.requests) == 2
        assert dispatch.requests[1].query.startswith("mutation")
        assert query_result == {"viewer": {"field": "viewer", "args": {}}}
        assert mutation_result["addStar"]["args"] == {"input": {"starrableId": "R_1"}}

    @pytest.mark.asyncio
    async def test_invalid_document_is_rejected_on_submit(self, dispatch) -> None:
        coordinator = BatchCoordinator(dispatch)

        with pytest.raises(ValueError, match="Subscriptions"):
            coordinator.submit(QueryDescriptor(gql("subscription { updates }")))
        assert coordinator.open_batch is None

    @pytest.mark.asyncio
    async def test_forced_flush_turns_scheduled_flush_into_noop(self, dispatch) -> None:
        coordinator = BatchCoordinator(dispatch, BatchConfig(max_batch_size=2))

        futures = [coordinator.submit(_repo("a", "x")), coordinator.submit(_repo("b", "x"))]
        first = coordinator.open_batch
        futures.append(coordinator.submit(_repo("c", "x")))

        assert first is not None
        assert first.state is BatchState.FLUSHING
        assert coordinator.open_batch is not first
        assert len(coordinator.open_batch) == 1

        results = await asyncio.gather(*futures)

        assert len(dispatch.requests) == 2
        assert [len(r.variables) for r in dispatch.requests] == [3, 2]
        assert results == [_expected(o, "x") for o in ("a", "b", "c")]

    @pytest.mark.asyncio
    async def test_drain_waits_for_batch_in_flight(self, dispatch) -> None:
        dispatch.gate = asyncio.Event()
        coordinator = BatchCoordinator(dispatch)
        future = coordinator.submit(QueryDescriptor(VIEWER))

        drain = asyncio.create_task(coordinator.drain())
        for _ in range(5):
            await asyncio.sleep(0)
        assert len(dispatch.requests) == 1
        assert not drain.done()
        assert not future.done()

        dispatch.gate.set()
        await drain
        assert future.result() == {"viewer": {"field": "viewer", "args": {}}}

    def test_rejects_invalid_config(self, dispatch) -> None:
        with pytest.raises(ValueError, match="max_batch_size"):
            BatchCoordinator(dispatch, BatchConfig(max_batch_size=0))


class TestFailures:
    @pytest.mark.asyncio
    async def test_transport_failure_rejects_every_entry_with_same_error(self, dispatch) -> None:
        dispatch.error = ConnectionError("connection reset")
        coordinator = BatchCoordinator(dispatch)

        results = await asyncio.gather(
            coordinator.submit(_repo("pugjs", "pug")),
            coordinator.submit(_repo("ForbesLindesay", "atdatabases")),
            return_exceptions=True,
        )

        assert isinstance(results[0], ConnectionError)
        assert results[0] is results[1]

    @pytest.mark.asyncio
    async def test_refused_batch_is_never_dispatched(self, dispatch) -> None:
        refusal = RateLimitExceededError(60.0)

        async def refuse(request: GraphQLRequest) -> None:
            raise refusal

        coordinator = BatchCoordinator(dispatch, admit=refuse)

        results = await asyncio.gather(
            coordinator.submit(_repo("pugjs", "pug")),
            coordinator.submit(_repo("ForbesLindesay", "atdatabases")),
            return_exceptions=True,
        )

        assert results == [refusal, refusal]
        assert dispatch.requests == []

    @pytest.mark.asyncio
    async def test_cancelled_dispatch_leaves_no_entry_pending(self, dispatch) -> None:
        dispatch.error = asyncio.CancelledError()
        coordinator = BatchCoordinator(dispatch)

        results = await asyncio.gather(
            coordinator.submit(_repo("pugjs", "pug")),
            coordinator.submit(_repo("ForbesLindesay", "atdatabases")),
            return_exceptions=True,
        )

        assert all(isinstance(r, UnsettledEntryError) for r in results)
        assert results[0].batch_id == results[1].batch_id
        assert "closed without a result" in str(results[0])

    @pytest.mark.asyncio
    async def test_unattributable_errors_fail_the_whole_batch(self, dispatch) -> None:
        error = GraphqlError(
            GraphQLRequest("{ x }"),
            [{"message": "Something went wrong"}],
            data={"viewer": None},
        )
        dispatch.error = error
        coordinator = BatchCoordinator(dispatch)

        results = await asyncio.gather(
            coordinator.submit(QueryDescriptor(VIEWER)),
            coordinator.submit(QueryDescriptor(VIEWER)),
            return_exceptions=True,
        )

        assert results == [error, error]
        assert results[0] is results[1]

    @pytest.mark.asyncio
    async def test_path_scoped_errors_only_fail_their_entry(self, dispatch) -> None:
        request = GraphQLRequest("{ x }")
        dispatch.error = GraphqlError(
            request,
            [{"type": "NOT_FOUND", "message": "Could not resolve", "path": ["c", "nameWithOwner"]}],
            data={"repository": {"nameWithOwner": "pugjs/pug"}, "c": None},
        )
        coordinator = BatchCoordinator(dispatch)

        first, second = await asyncio.gather(
            coordinator.submit(_repo("pugjs", "pug")),
            coordinator.submit(_repo("nobody", "nothing")),
            return_exceptions=True,
        )

        assert first == {"repository": {"nameWithOwner": "pugjs/pug"}}
        assert isinstance(second, GraphqlError)
        assert second.errors == [
            {"type": "NOT_FOUND", "message": "Could not resolve", "path": ["repository", "nameWithOwner"]}
        ]
        assert second.data == {"repository": None}
        assert second.request is request


class TestHooks:
    @pytest.mark.asyncio
    async def test_hooks_see_entries_and_combined_request(self, dispatch) -> None:
        hook = RecordingHook()
        coordinator = BatchCoordinator(dispatch, hooks=[hook])

        await asyncio.gather(
            coordinator.submit(_repo("pugjs", "pug")),
            coordinator.submit(_repo("ForbesLindesay", "atdatabases")),
        )

        assert [name for name, _ in hook.calls] == [
            "request",
            "request",
            "batch_request",
            "batch_response",
            "response",
            "response",
        ]
        assert hook.calls[0][1] == {"owner": "pugjs", "name": "pug"}
        assert hook.calls[2][1] == {
            "owner": "pugjs",
            "name": "pug",
            "a": "ForbesLindesay",
            "b": "atdatabases",
        }
        assert hook.calls[5][1] == {"data": _expected("ForbesLindesay", "atdatabases")}

    @pytest.mark.asyncio
    async def test_refused_batch_is_only_reported_as_an_error(self, dispatch) -> None:
        hook = RecordingHook()
        refusal = RateLimitExceededError(60.0)

        async def refuse(request: GraphQLRequest) -> None:
            raise refusal

        coordinator = BatchCoordinator(dispatch, hooks=[hook], admit=refuse)

        with pytest.raises(RateLimitExceededError):
            await coordinator.submit(_repo("pugjs", "pug"))

        assert hook.calls == [("batch_error", refusal)]

    @pytest.mark.asyncio
    async def test_admitted_batch_is_reported_after_admission(self, dispatch) -> None:
        hook = RecordingHook()

        async def admit(request: GraphQLRequest) -> None:
            hook.calls.append(("admit", None))

        coordinator = BatchCoordinator(dispatch, hooks=[hook], admit=admit)
        await coordinator.submit(_repo("pugjs", "pug"))

        assert [name for name, _ in hook.calls] == [
            "admit",
            "request",
            "batch_request",
            "batch_response",
            "response",
        ]

    @pytest.mark.asyncio
    async def test_transport_failure_is_reported_as_an_error(self, dispatch) -> None:
        hook = RecordingHook()
        dispatch.error = ConnectionError("connection reset")
        coordinator = BatchCoordinator(dispatch, hooks=[hook])

        with pytest.raises(ConnectionError):
            await coordinator.submit(_repo("pugjs", "pug"))

        assert [name for name, _ in hook.calls] == ["request", "batch_request", "batch_error"]
        assert hook.calls[-1][1] is dispatch.error

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_affect_results(self, dispatch) -> None:
        class BrokenHook(ClientHook):
            def on_batch_request(self, request: GraphQLRequest) -> None:
                raise RuntimeError("hook crash")

        recorder = RecordingHook()
        coordinator = BatchCoordinator(dispatch, hooks=[BrokenHook(), recorder])

        result = await coordinator.submit(_repo("pugjs", "pug"))

        assert result == _expected("pugjs", "pug")
        assert ("batch_response", 200) in recorder.calls
