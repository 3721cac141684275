"""Custom Prometheus metrics for the PhotoFlow API and ticker."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# API latency measured at middleware level with route-normalized path labels.
api_request_latency_seconds = Histogram(
    "photoflow_api_request_latency_seconds",
    "API request latency in seconds.",
    ["method", "path", "status_code"],
    buckets=(
        0.005,
        0.01,
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
    ),
)

upload_total = Counter(
    "photoflow_upload_total",
    "Upload attempts by outcome.",
    ["result"],
)

tick_total = Counter(
    "photoflow_tick_total",
    "Processing ticks by trigger and outcome.",
    ["mode", "result"],
)

tick_duration_seconds = Histogram(
    "photoflow_tick_duration_seconds",
    "Time spent starting/advancing all pending photos in one tick.",
    ["mode"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

simulated_outcome_total = Counter(
    "photoflow_simulated_outcome_total",
    "Simulated processing runs by how they ended.",
    ["outcome"],
)

open_streams = Gauge(
    "photoflow_open_streams",
    "Server-sent event connections currently open.",
)
