"""Prometheus metrics for Heimdall."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

injections_total = Counter(
    "heimdall_injections_total",
    "Workload injection attempts by result.",
    ["result"],
)

queue_retries_total = Counter(
    "heimdall_queue_retries_total",
    "Work queue keys requeued with back-off, by failure category.",
    ["reason"],
)

queue_drops_total = Counter(
    "heimdall_queue_drops_total",
    "Work queue keys dropped without success, by failure category.",
    ["reason"],
)

queue_depth = Gauge(
    "heimdall_queue_depth",
    "Keys currently waiting in the work queue.",
)

materializations_total = Counter(
    "heimdall_materializations_total",
    "ConfigMaps written by the materializer, by action.",
    ["action"],
)

key_requests_total = Counter(
    "heimdall_key_requests_total",
    "Key service requests by key kind and result.",
    ["kind", "result"],
)
