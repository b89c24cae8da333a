"""
Prometheus metrics for market-etl

Covers the fetch path (rate gate, cache, upstream), run lifecycle and
symbol resolution. All metrics live on a private registry so tests and
embedding applications do not collide with the default one.
"""
import os
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()


# =======================
# RATE GATE METRICS
# =======================

rate_gate_wait_seconds = Histogram(
    name="etl_rate_gate_wait_seconds",
    documentation="Time callers spent suspended in the rate gate",
    labelnames=["source"],
    buckets=[0.0, 0.01, 0.1, 0.5, 1.0, 2.0, 5.0, 15.0, 60.0],
    registry=REGISTRY,
)

rate_gate_waiting = Gauge(
    name="etl_rate_gate_waiting",
    documentation="Callers currently waiting for a rate token",
    labelnames=["source"],
    registry=REGISTRY,
)

rate_gate_grants_total = Counter(
    name="etl_rate_gate_grants_total",
    documentation="Total rate tokens granted",
    labelnames=["source"],
    registry=REGISTRY,
)

# =======================
# CACHE METRICS
# =======================

cache_lookups_total = Counter(
    name="etl_cache_lookups_total",
    documentation="Cache lookups by outcome",
    labelnames=["source", "outcome"],  # outcome: fresh, stale, miss, skipped
    registry=REGISTRY,
)

cache_coalesced_total = Counter(
    name="etl_cache_coalesced_total",
    documentation="Callers that waited on another caller's in-flight fetch",
    labelnames=["source"],
    registry=REGISTRY,
)

cache_corruption_total = Counter(
    name="etl_cache_corruption_total",
    documentation="Persisted cache payloads that could not be decoded",
    labelnames=["source"],
    registry=REGISTRY,
)

cache_purged_total = Counter(
    name="etl_cache_purged_total",
    documentation="Expired cache entries deleted",
    labelnames=["source"],
    registry=REGISTRY,
)

# =======================
# UPSTREAM METRICS
# =======================

upstream_requests_total = Counter(
    name="etl_upstream_requests_total",
    documentation="Upstream requests by status class",
    labelnames=["source", "status"],  # status: ok, transient, permanent
    registry=REGISTRY,
)

upstream_latency_seconds = Histogram(
    name="etl_upstream_latency_seconds",
    documentation="Upstream request latency",
    labelnames=["source"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)

retries_total = Counter(
    name="etl_retries_total",
    documentation="Retry attempts scheduled by loaders",
    labelnames=["source", "proc_type"],
    registry=REGISTRY,
)

# =======================
# PROCESS METRICS
# =======================

process_transitions_total = Counter(
    name="etl_process_transitions_total",
    documentation="Process run state transitions",
    labelnames=["proc_type", "state"],
    registry=REGISTRY,
)

records_processed_total = Counter(
    name="etl_records_processed_total",
    documentation="Records durably committed by loaders",
    labelnames=["proc_type"],
    registry=REGISTRY,
)

# =======================
# RESOLUTION METRICS
# =======================

resolution_outcomes_total = Counter(
    name="etl_resolution_outcomes_total",
    documentation="Symbol resolution outcomes",
    labelnames=["source", "outcome"],  # outcome: matched, ambiguous, unmatched
    registry=REGISTRY,
)

mapping_conflicts_total = Counter(
    name="etl_mapping_conflicts_total",
    documentation="Cross-provider mapping conflicts",
    labelnames=["source"],
    registry=REGISTRY,
)

missing_symbols_total = Counter(
    name="etl_missing_symbol_sightings_total",
    documentation="Unmatched symbol sightings recorded",
    labelnames=["source"],
    registry=REGISTRY,
)


# =======================
# HELPER FUNCTIONS
# =======================

def generate_metrics() -> bytes:
    """Render the registry in Prometheus text format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def start_metrics_server(port: Optional[int] = None) -> None:
    """
    Start HTTP server for Prometheus metrics

    Args:
        port: Port to listen on (defaults to env var METRICS_PORT or 8000)
    """
    from prometheus_client import start_http_server

    metrics_port = port or int(os.getenv("METRICS_PORT", "8000"))
    start_http_server(metrics_port, registry=REGISTRY)


class track_duration:
    """
    Context manager for timing a block into a histogram.

    Usage:
        with track_duration(upstream_latency_seconds, source="coingecko"):
            response = await upstream.fetch(...)
    """

    def __init__(self, histogram: Histogram, **labels):
        self.histogram = histogram
        self.labels = labels
        self.timer = None

    def __enter__(self):
        self.timer = self.histogram.labels(**self.labels).time()
        self.timer.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.timer.__exit__(exc_type, exc_val, exc_tb)
        return False


def increment_counter(counter: Counter, value: float = 1.0, **labels) -> None:
    counter.labels(**labels).inc(value)


def set_gauge(gauge: Gauge, value: float, **labels) -> None:
    gauge.labels(**labels).set(value)


def observe_histogram(histogram: Histogram, value: float, **labels) -> None:
    histogram.labels(**labels).observe(value)


def get_counter_value(counter: Counter, **labels) -> float:
    """Current value of a labelled counter (0.0 when never incremented)."""
    value = REGISTRY.get_sample_value(f"{counter._name}_total", labels)
    return value or 0.0
