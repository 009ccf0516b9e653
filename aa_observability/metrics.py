"""
Prometheus metrics for the project.

No standalone HTTP server is started here; the operator API mounts the ASGI
exporter at `/metrics` (`prometheus_client.make_asgi_app`).
"""
from __future__ import annotations

from typing import Any, Dict, Tuple, Type

from prometheus_client import Counter, Histogram


# ----------------------------
# Registration helper (avoid duplicate collectors)
# ----------------------------
_METRICS: Dict[Tuple[Type[Any], str], Any] = {}


def get_metric(cls: Type[Any], name: str, *args, **kwargs):
    key = (cls, name)
    if key in _METRICS:
        return _METRICS[key]
    metric = cls(name, *args, **kwargs)
    _METRICS[key] = metric
    return metric


# ----------------------------
# Consent lifecycle
# ----------------------------
consent_transitions_total = get_metric(
    Counter,
    "aa_consent_transitions_total",
    "Applied consent status transitions",
    ["from_status", "to_status", "source"],
)

consent_illegal_transitions_total = get_metric(
    Counter,
    "aa_consent_illegal_transitions_total",
    "Rejected consent status transitions",
    ["to_status"],
)

consent_polls_total = get_metric(
    Counter,
    "aa_consent_polls_total",
    "Consent status polls by outcome",
    ["result"],
)

# ----------------------------
# Fetch & ingestion
# ----------------------------
fetch_batches_total = get_metric(
    Counter,
    "aa_fetch_batches_total",
    "Fetch batches by final status",
    ["fi_type", "status"],
)

fetch_latency_seconds = get_metric(
    Histogram,
    "aa_fetch_latency_seconds",
    "Latency of per-account fetch calls",
    ["fi_type"],
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)

ingest_rows_total = get_metric(
    Counter,
    "aa_ingest_rows_total",
    "Normalized rows processed by the ingestion engine",
    ["kind", "result"],
)

# ----------------------------
# Aggregator HTTP
# ----------------------------
http_requests_total = get_metric(
    Counter,
    "aa_http_requests_total",
    "HTTP requests to the aggregator",
    ["endpoint", "method", "status"],
)

http_latency_seconds = get_metric(
    Histogram,
    "aa_http_latency_seconds",
    "Latency for aggregator HTTP requests",
    ["endpoint"],
)
