"""Structured logging and Prometheus metrics."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from .logging import configure_logging
from .metrics import METRICS, start_metrics_server

__all__ = ["METRICS", "configure_logging", "gauge", "histogram", "increment", "start_metrics_server"]


def _collector(name: str, labels: Optional[Mapping[str, Any]]) -> Any:
    # Unregistered names are a no-op so call sites never need to guard.
    metric = METRICS.get(name)
    if metric is None or labels is None:
        return metric
    return metric.labels(**labels)


def increment(name: str, value: float = 1.0, labels: Optional[Mapping[str, Any]] = None) -> None:
    """Add ``value`` to a counter."""
    collector = _collector(name, labels)
    if collector is not None:
        collector.inc(value)


def gauge(name: str, value: float, labels: Optional[Mapping[str, Any]] = None) -> None:
    collector = _collector(name, labels)
    if collector is not None:
        collector.set(value)


def histogram(name: str, value: float, labels: Optional[Mapping[str, Any]] = None) -> None:
    collector = _collector(name, labels)
    if collector is not None:
        collector.observe(value)
