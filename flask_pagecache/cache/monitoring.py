"""
Prometheus metrics for the page cache.

Counters cover every decision the engine takes: hits, misses (by reason), stores,
stale serves during a busy-lock window, conditional 304 answers, invalidated keys and
backend errors. Metrics are registered against an injectable ``CollectorRegistry`` so
tests and multi-app processes can keep their own.
"""

import time
from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram


class PageCacheMetrics:
    """
    Page cache metrics collection.

    Args:
        registry: Prometheus registry the collectors are registered with
        namespace: Metric name prefix
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY, namespace: str = "flask_page_cache"):
        self._registry = registry

        self.hits_total = Counter(
            f"{namespace}_hits_total",
            "Requests answered from the page cache",
            ["backend"],
            registry=registry
        )
        self.misses_total = Counter(
            f"{namespace}_misses_total",
            "Requests passed through to the application",
            ["backend", "reason"],
            registry=registry
        )
        self.stores_total = Counter(
            f"{namespace}_stores_total",
            "Responses written to the page cache",
            ["backend", "trigger"],
            registry=registry
        )
        self.stale_served_total = Counter(
            f"{namespace}_stale_served_total",
            "Expired entries served while another request regenerates them",
            ["backend"],
            registry=registry
        )
        self.not_modified_total = Counter(
            f"{namespace}_not_modified_total",
            "Conditional requests answered with 304 Not Modified",
            ["backend"],
            registry=registry
        )
        self.invalidations_total = Counter(
            f"{namespace}_invalidated_keys_total",
            "Keys removed through pattern invalidation",
            ["backend"],
            registry=registry
        )
        self.errors_total = Counter(
            f"{namespace}_errors_total",
            "Cache failures that degraded a request to live serving",
            ["backend", "stage", "error_code"],
            registry=registry
        )
        self.operation_duration_seconds = Histogram(
            f"{namespace}_operation_duration_seconds",
            "Duration of page cache hook processing",
            ["stage"],
            buckets=[0.0005, 0.001, 0.002, 0.005, 0.01, 0.025, 0.05, 0.1],
            registry=registry
        )

    def record_hit(self, backend: str) -> None:
        self.hits_total.labels(backend=backend).inc()

    def record_miss(self, backend: str, reason: str) -> None:
        self.misses_total.labels(backend=backend, reason=reason).inc()

    def record_store(self, backend: str, trigger: str) -> None:
        self.stores_total.labels(backend=backend, trigger=trigger).inc()

    def record_stale_served(self, backend: str) -> None:
        self.stale_served_total.labels(backend=backend).inc()

    def record_not_modified(self, backend: str) -> None:
        self.not_modified_total.labels(backend=backend).inc()

    def record_invalidation(self, backend: str, keys_count: int = 1) -> None:
        if keys_count > 0:
            self.invalidations_total.labels(backend=backend).inc(keys_count)

    def record_error(self, backend: str, stage: str, error_code: str) -> None:
        self.errors_total.labels(backend=backend, stage=stage, error_code=error_code).inc()

    @contextmanager
    def time_stage(self, stage: str) -> Iterator[None]:
        """Observe how long a hook stage takes."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            self.operation_duration_seconds.labels(stage=stage).observe(
                time.perf_counter() - start_time
            )

    def get_metrics_summary(self) -> Dict[str, float]:
        """Totals per counter, summed over labels, for health endpoints and debugging."""
        summary = {}
        for name, counter in (
            ("hits", self.hits_total),
            ("misses", self.misses_total),
            ("stores", self.stores_total),
            ("stale_served", self.stale_served_total),
            ("not_modified", self.not_modified_total),
            ("invalidated_keys", self.invalidations_total),
            ("errors", self.errors_total),
        ):
            total = 0.0
            for metric in counter.collect():
                for sample in metric.samples:
                    if sample.name.endswith("_total"):
                        total += sample.value
            summary[name] = total
        return summary


_default_metrics: Optional[PageCacheMetrics] = None
_default_metrics_lock = Lock()


def get_page_cache_metrics() -> PageCacheMetrics:
    """
    Process-wide metrics registered with the default Prometheus registry.

    Collectors can only be registered once per registry, so every extension instance
    that does not bring its own metrics shares this one.
    """
    global _default_metrics

    with _default_metrics_lock:
        if _default_metrics is None:
            _default_metrics = PageCacheMetrics()
        return _default_metrics


__all__ = [
    "PageCacheMetrics",
    "get_page_cache_metrics",
]
