"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from graphql import FieldNode, parse, value_from_ast_untyped

from graphbatch.core.merge import operation_definition
from graphbatch.core.models import RequestOptions, Response


def echo_data(query: str, variables: dict[str, Any]) -> dict[str, Any]:
    """Answer every top-level field with its name and resolved arguments."""
    operation = operation_definition(parse(query))
    data: dict[str, Any] = {}
    for field in operation.selection_set.selections:
        assert isinstance(field, FieldNode)
        key = field.alias.value if field.alias else field.name.value
        data[key] = {
            "field": field.name.value,
            "args": {
                arg.name.value: value_from_ast_untyped(arg.value, variables)
                for arg in field.arguments or ()
            },
        }
    return data


class FakeTransport:
    """Request function that records calls.

    Answers with scripted bodies (or exceptions) while any remain, and with
    :func:`echo_data` afterwards.
    """

    def __init__(self) -> None:
        self.calls: list[RequestOptions] = []
        self._script: list[Any] = []

    def script(self, *results: Any) -> None:
        self._script.extend(results)

    async def __call__(self, options: RequestOptions) -> Response:
        self.calls.append(options)
        await asyncio.sleep(0)
        if self._script:
            result = self._script.pop(0)
            if isinstance(result, BaseException):
                raise result
            return Response(status=200, url=options.url, data=result)
        body = options.json or {}
        return Response(
            status=200,
            url=options.url,
            data={"data": echo_data(body.get("query", "{ __typename }"), body.get("variables", {}))},
        )


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def echo():
    return echo_data
