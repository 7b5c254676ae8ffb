"""Prometheus metrics for graphbatch clients.

Exposes request batching metrics in Prometheus text format.

Metrics exposed:
- graphbatch_queries_total: Queries sent in combined requests
- graphbatch_batches_total: Combined requests sent
- graphbatch_batch_responses_total: Combined responses by outcome
- graphbatch_batch_failures_total: Combined requests without a response, by reason
- graphbatch_batch_size: Queries per combined request (histogram)
- graphbatch_batch_duration_seconds: Combined request latency (histogram)

Usage:
    from graphbatch.observability import PrometheusMetrics

    metrics = PrometheusMetrics()
    client = Client(auth, hooks=[metrics.create_hook()])

    print(metrics.export())
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import TYPE_CHECKING

from graphbatch.core.errors import GraphqlError, RateLimitExceededError
from graphbatch.core.hooks import ClientHook

if TYPE_CHECKING:
    from graphbatch.core.models import GraphQLRequest, Response


class PrometheusMetrics:
    """Collects and exports Prometheus-format metrics for one or more clients."""

    def __init__(self) -> None:
        # Counters
        self._queries_total: int = 0
        self._batches_total: int = 0
        self._responses_total: dict[str, int] = defaultdict(int)
        self._failures_total: dict[str, int] = defaultdict(int)

        # Histograms
        self._size_buckets = [1, 2, 5, 10, 25, 50, 100]
        self._duration_buckets = [0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
        self._size_observations: list[float] = []
        self._duration_observations: list[float] = []

        # Tracking
        self._unbatched: int = 0
        # Keyed by id(); the request is kept alive so its id cannot be reused
        self._in_flight: dict[int, tuple[GraphQLRequest, float]] = {}

    def record_query(self) -> None:
        self._queries_total += 1
        self._unbatched += 1

    def record_batch_sent(self, request: GraphQLRequest) -> None:
        """Record a combined request made of every query seen since the last one."""
        self._batches_total += 1
        self._size_observations.append(float(self._unbatched))
        self._unbatched = 0
        self._in_flight[id(request)] = (request, time.monotonic())

    def record_batch_completed(self, request: GraphQLRequest, response: Response) -> None:
        body = response.data if isinstance(response.data, dict) else {}
        outcome = "error" if body.get("errors") else "success"
        self._responses_total[outcome] += 1

        self._observe_duration(request)

    def record_batch_failed(self, request: GraphQLRequest, exc: BaseException) -> None:
        """Record a combined request that got no response, or was never sent."""
        if isinstance(exc, RateLimitExceededError):
            reason = "rate_limited"
        elif isinstance(exc, GraphqlError):
            reason = "graphql"
        else:
            reason = "transport"
        self._failures_total[reason] += 1
        self._observe_duration(request)

    def _observe_duration(self, request: GraphQLRequest) -> None:
        tracked = self._in_flight.pop(id(request), None)
        if tracked is not None and tracked[0] is request:
            self._duration_observations.append(time.monotonic() - tracked[1])

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def queries_total(self) -> int:
        return self._queries_total

    @property
    def batches_total(self) -> int:
        return self._batches_total

    def export(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = [
            "# HELP graphbatch_queries_total Queries sent in combined requests",
            "# TYPE graphbatch_queries_total counter",
            f"graphbatch_queries_total {self._queries_total}",
            "",
            "# HELP graphbatch_batches_total Combined requests sent",
            "# TYPE graphbatch_batches_total counter",
            f"graphbatch_batches_total {self._batches_total}",
            "",
            "# HELP graphbatch_batch_responses_total Combined responses by outcome",
            "# TYPE graphbatch_batch_responses_total counter",
        ]
        for outcome, count in self._responses_total.items():
            lines.append(f'graphbatch_batch_responses_total{{outcome="{outcome}"}} {count}')

        lines.extend(
            [
                "",
                "# HELP graphbatch_batch_failures_total Combined requests without a response",
                "# TYPE graphbatch_batch_failures_total counter",
            ]
        )
        for reason, count in self._failures_total.items():
            lines.append(f'graphbatch_batch_failures_total{{reason="{reason}"}} {count}')

        lines.extend(
            _histogram(
                "graphbatch_batch_size",
                "Queries per combined request",
                self._size_buckets,
                self._size_observations,
            )
        )
        lines.extend(
            _histogram(
                "graphbatch_batch_duration_seconds",
                "Combined request latency in seconds",
                self._duration_buckets,
                self._duration_observations,
            )
        )
        return "\n".join(lines) + "\n"

    def create_hook(self) -> PrometheusMetricsHook:
        """Create a ClientHook that feeds this collector."""
        return PrometheusMetricsHook(self)


def _histogram(
    name: str, help_text: str, buckets: list[float], observations: list[float]
) -> list[str]:
    lines = ["", f"# HELP {name} {help_text}", f"# TYPE {name} histogram"]
    for bucket in buckets:
        count = sum(1 for obs in observations if obs <= bucket)
        lines.append(f'{name}_bucket{{le="{bucket}"}} {count}')
    lines.append(f'{name}_bucket{{le="+Inf"}} {len(observations)}')
    lines.append(f"{name}_sum {sum(observations):.4f}")
    lines.append(f"{name}_count {len(observations)}")
    return lines


class PrometheusMetricsHook(ClientHook):
    """ClientHook implementation that collects Prometheus metrics."""

    def __init__(self, metrics: PrometheusMetrics) -> None:
        self._metrics = metrics

    def on_request(self, request: GraphQLRequest) -> None:
        self._metrics.record_query()

    def on_batch_request(self, request: GraphQLRequest) -> None:
        self._metrics.record_batch_sent(request)

    def on_batch_response(self, request: GraphQLRequest, response: Response) -> None:
        self._metrics.record_batch_completed(request, response)

    def on_batch_error(self, request: GraphQLRequest, exc: BaseException) -> None:
        self._metrics.record_batch_failed(request, exc)
