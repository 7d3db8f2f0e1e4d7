"""Prometheus metrics for job and item execution.

API latency and queueing latency are kept in separate histograms so
dashboards can tell a slow provider from a saturated quota.
"""
from prometheus_client import CollectorRegistry, Counter, Histogram


def create_metrics() -> dict[str, object]:
    """Creates and returns the isolated metrics objects with a custom registry."""
    # Create a custom registry to avoid clashing with the global one.
    registry = CollectorRegistry()

    metrics = {
        "items": Counter(
            name="batchgate_items_total",
            documentation="Settled items",
            labelnames=["model_class", "status"],
            registry=registry,
        ),
        "item_api_seconds": Histogram(
            name="batchgate_item_api_seconds",
            documentation="External API time per item",
            labelnames=["model_class"],
            registry=registry,
        ),
        "item_wait_seconds": Histogram(
            name="batchgate_item_wait_seconds",
            documentation="Semaphore and quota wait per item",
            labelnames=["model_class"],
            registry=registry,
        ),
        "jobs": Counter(
            name="batchgate_jobs_total",
            documentation="Jobs reaching a terminal state",
            labelnames=["status"],
            registry=registry,
        ),
        "registry": registry,
    }
    return metrics
