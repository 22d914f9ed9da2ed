"""
Defines the Prometheus metrics exported by PaceCore.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from pacecore.config.config import MonitoringConfig

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Importing this module twice (test reloads, plugin loaders) must not raise
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
            # Registration lost the race; reuse the collector that won.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        "ratelimit_waits": Counter(
            "pacecore_ratelimit_waits_total",
            "Number of times a request waited for domain spacing or backoff",
        ),
        "ratelimit_hits": Counter(
            "pacecore_ratelimit_hits_total",
            "Rate-limit responses received, per domain",
            ["domain"],
        ),
        "ratelimit_queue_depth": Gauge(
            "pacecore_ratelimit_queue_depth",
            "Requests waiting in a domain queue",
            ["domain"],
        ),
        "robots_fetch": Counter(
            "pacecore_robots_fetch_total",
            "robots.txt fetches by outcome",
            ["outcome"],
        ),
        "reputation_records": Counter(
            "pacecore_reputation_records_total",
            "Reputation outcomes recorded",
            ["outcome"],
        ),
        "scheduler_running": Gauge(
            "pacecore_scheduler_running",
            "Tasks currently executing in the scheduler",
        ),
        "scheduler_pending": Gauge(
            "pacecore_scheduler_pending",
            "Tasks waiting for a scheduler slot",
        ),
        "fetch_latency_seconds": Histogram(
            "pacecore_fetch_latency_seconds",
            "Time taken by the fetch primitive for one attempt",
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


def start_metrics_server(config: MonitoringConfig) -> bool:
    """Start the Prometheus exporter when a port is configured."""
    if not config.prometheus_port:
        return False
    logger.info("Starting Prometheus metrics server", port=config.prometheus_port)
    start_http_server(config.prometheus_port)
    return True
