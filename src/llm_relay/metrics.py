from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

server_requests_total = Counter(
    "relay_server_requests_total",
    "Total HTTP requests handled by server",
    labelnames=["path", "status"],
)

server_request_latency_seconds = Histogram(
    "relay_server_request_latency_seconds",
    "HTTP request latency until the response starts (seconds)",
    buckets=[0.05, 0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120, 300],
    labelnames=["path"],
)

server_errors_total = Counter(
    "relay_server_errors_total",
    "Total errors returned by server",
    labelnames=["type"],
)

stream_chunks_total = Counter(
    "relay_stream_chunks_total",
    "Upstream chunks relayed to callers as event frames",
)

stream_failures_total = Counter(
    "relay_stream_failures_total",
    "Event streams terminated by an error after the response started",
)

upstream_circuit_breaker_events_total = Counter(
    "relay_upstream_circuit_breaker_events_total",
    "Circuit breaker events",
    labelnames=["event"],
)

upstream_requests_total = Counter(
    "relay_upstream_requests_total",
    "Total calls issued to the upstream service",
    labelnames=["operation", "status"],
)

upstream_request_latency_seconds = Histogram(
    "relay_upstream_request_latency_seconds",
    "Upstream call latency (non-streaming calls)",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60],
    labelnames=["operation"],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
