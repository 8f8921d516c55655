"""Prometheus metrics for AskGate."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

askgate_requests_total = Counter(
    "askgate_requests_total",
    "Total /v1/messages requests",
    ["provider", "model", "stream", "status"],
)
askgate_request_duration_seconds = Histogram(
    "askgate_request_duration_seconds",
    "/v1/messages request duration in seconds",
    ["provider", "model", "stream"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)
askgate_capability_warnings_total = Counter(
    "askgate_capability_warnings_total",
    "Capability mismatches recorded while preparing requests",
    ["kind"],
)
askgate_tool_schema_rejections_total = Counter(
    "askgate_tool_schema_rejections_total",
    "Tools dropped because their schema could not be converted",
)
askgate_stream_aborts_total = Counter(
    "askgate_stream_aborts_total",
    "Streaming sessions that ended with an error event",
    ["reason"],
)
