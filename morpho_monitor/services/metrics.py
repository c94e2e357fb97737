"""
Prometheus metrics for the Morpho position monitor.

Exposes chain read, price and cache metrics for the aggregation engine.
"""

import time

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
)

# Create a custom registry to avoid conflicts
REGISTRY = CollectorRegistry()

APP_INFO = Info(
    "morpho_monitor",
    "Morpho position monitor application info",
    registry=REGISTRY,
)
APP_INFO.info({
    "version": "0.1.0",
    "name": "morpho-position-monitor",
})

# Chain read metrics
RPC_REQUESTS_TOTAL = Counter(
    "morpho_monitor_rpc_requests_total",
    "Total number of contract read requests",
    ["mode", "status"],
    registry=REGISTRY,
)

RPC_CALLS_TOTAL = Counter(
    "morpho_monitor_rpc_calls_total",
    "Total number of individual contract calls by outcome",
    ["status"],
    registry=REGISTRY,
)

MULTICALL_FALLBACKS_TOTAL = Counter(
    "morpho_monitor_multicall_fallbacks_total",
    "Number of times a batched read fell back to individual calls",
    registry=REGISTRY,
)

# Price metrics
PRICE_FETCHES_TOTAL = Counter(
    "morpho_monitor_price_fetches_total",
    "Total number of price fetches",
    ["source", "status"],
    registry=REGISTRY,
)

PRICE_USD = Gauge(
    "morpho_monitor_price_usd",
    "Last resolved USD price",
    ["symbol"],
    registry=REGISTRY,
)

# Morpho API metrics
API_QUERIES_TOTAL = Counter(
    "morpho_monitor_api_queries_total",
    "Morpho GraphQL API queries by chain and outcome",
    ["chain", "status"],
    registry=REGISTRY,
)

# Health status metrics
STATUS_TRANSITIONS_TOTAL = Counter(
    "morpho_monitor_status_transitions_total",
    "Health status transitions that raised a notification",
    ["severity"],
    registry=REGISTRY,
)

# Cache metrics
POSITION_CACHE_TOTAL = Counter(
    "morpho_monitor_position_cache_total",
    "Position cache lookups by result",
    ["result"],
    registry=REGISTRY,
)

# Reconstruction metrics
RECONSTRUCTION_DURATION_SECONDS = Histogram(
    "morpho_monitor_reconstruction_duration_seconds",
    "Duration of a full position reconstruction in seconds",
    buckets=[0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)

RECONSTRUCTIONS_TOTAL = Counter(
    "morpho_monitor_reconstructions_total",
    "Total number of position reconstructions",
    ["status"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Get all metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the Prometheus content type."""
    return CONTENT_TYPE_LATEST


def record_rpc_request(mode: str, status: str):
    RPC_REQUESTS_TOTAL.labels(mode=mode, status=status).inc()


def record_call_results(succeeded: int, failed: int):
    """Record per-call outcomes of one batch."""
    if succeeded:
        RPC_CALLS_TOTAL.labels(status="success").inc(succeeded)
    if failed:
        RPC_CALLS_TOTAL.labels(status="failure").inc(failed)


def record_multicall_fallback():
    MULTICALL_FALLBACKS_TOTAL.inc()


def record_price_fetch(source: str, status: str):
    PRICE_FETCHES_TOTAL.labels(source=source, status=status).inc()


def update_price(symbol: str, price: float):
    PRICE_USD.labels(symbol=symbol).set(price)


def record_api_query(chain: str, status: str):
    API_QUERIES_TOTAL.labels(chain=chain, status=status).inc()


def record_status_transition(severity: str):
    """Record a health status transition ("warning" or "danger")."""
    STATUS_TRANSITIONS_TOTAL.labels(severity=severity).inc()


def record_cache_lookup(result: str):
    """Record a position cache lookup ("hit", "miss" or "stale")."""
    POSITION_CACHE_TOTAL.labels(result=result).inc()


class ReconstructionTimer:
    """Context manager for timing position reconstructions."""

    def __init__(self):
        self._start_time = None

    def __enter__(self):
        self._start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self._start_time
        RECONSTRUCTION_DURATION_SECONDS.observe(duration)

        status = "success" if exc_type is None else "error"
        RECONSTRUCTIONS_TOTAL.labels(status=status).inc()

        return False  # Don't suppress exceptions
