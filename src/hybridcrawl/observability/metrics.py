"""
Defines and manages Prometheus metrics for the crawl engine.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from hybridcrawl.config.config import MonitoringConfig

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Re-importing this module (test collection, reloads) must not raise
# "Duplicated timeseries" from the default registry.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        "cache_hits": Counter("hybridcrawl_cache_hits_total", "Response cache hits"),
        "cache_misses": Counter("hybridcrawl_cache_misses_total", "Response cache misses"),
        "cache_evictions": Counter("hybridcrawl_cache_evictions_total", "Entries evicted to stay under the size limit"),
        "cache_size_bytes": Gauge("hybridcrawl_cache_size_bytes", "Accounted size of the response cache"),
        "fetch_latency_seconds": Histogram(
            "hybridcrawl_fetch_latency_seconds",
            "Time taken to fetch a page including retries",
            ["strategy"],
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
        ),
        "fetch_errors": Counter(
            "hybridcrawl_fetch_errors_total",
            "Fetch failures by fetcher and error code",
            ["fetcher", "code"],
        ),
        "strategy_decisions": Counter(
            "hybridcrawl_strategy_decisions_total",
            "Strategies chosen by the hybrid selector",
            ["strategy"],
        ),
        "browser_contexts_available": Gauge(
            "hybridcrawl_browser_contexts_available",
            "Idle browser contexts in the pool",
        ),
        "rate_limit_wait_seconds": Histogram(
            "hybridcrawl_rate_limit_wait_seconds",
            "Time spent waiting for a rate-limit token",
            buckets=[0.0, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        ),
        "retry_attempts": Counter("hybridcrawl_retry_attempts_total", "Retries performed after a failed attempt"),
        "batch_results": Counter(
            "hybridcrawl_batch_results_total",
            "Batch job outcomes",
            ["pool", "outcome"],
        ),
        "bytes_downloaded": Counter("hybridcrawl_bytes_downloaded_total", "Bytes written by the downloader"),
    }


METRICS: Dict[str, Any] = _create_metrics()


def start_metrics_server(config: MonitoringConfig) -> Optional[int]:
    """Expose /metrics on the configured port. Returns the port or None when disabled."""
    if not config.prometheus_port:
        return None
    start_http_server(config.prometheus_port)
    return config.prometheus_port
