"""Pegkeeper – In-process metrics.

This module provides a very small, in-process metrics API used to
publish engine gauges (supply, reserve ratio, stability score, ...) and
counters (rebalances, rejected observations). Values are kept in memory
and exposed via the monitoring web API.

The design is backend-agnostic so that a real metrics sink can be
plugged in without changing call sites.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Iterable, Mapping, MutableMapping, Optional

from pegkeeper.core.logging import get_logger


logger = get_logger(__name__)


@dataclass
class MetricPoint:
    """Single metric observation.

    Attributes:
        name: Metric name (e.g. "stablecoin.total_supply").
        value: Numeric value.
        tags: Optional tag mapping (e.g. {"engine": "main"}).
        timestamp: UTC timestamp of the observation.
    """

    name: str
    value: float
    tags: Mapping[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# Latest value per (name, sorted_tags_key).
_latest_metrics: MutableMapping[tuple[str, tuple[tuple[str, str], ...]], MetricPoint] = {}
_lock = Lock()


def _normalise_tags(tags: Optional[Mapping[str, str]]) -> tuple[tuple[str, str], ...]:
    if not tags:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in tags.items()))


def record_metric(name: str, value: float, tags: Optional[Mapping[str, str]] = None) -> None:
    """Record the latest value of a gauge."""

    key = (name, _normalise_tags(tags))
    point = MetricPoint(name=name, value=float(value), tags=dict(tags or {}))
    with _lock:
        _latest_metrics[key] = point
    logger.debug("metric recorded", extra={"metric_name": name, "value": value, "tags": tags or {}})


def increment_counter(name: str, amount: float = 1.0, tags: Optional[Mapping[str, str]] = None) -> float:
    """Add ``amount`` to a counter and return its new value."""

    key = (name, _normalise_tags(tags))
    with _lock:
        previous = _latest_metrics.get(key)
        value = (previous.value if previous is not None else 0.0) + float(amount)
        _latest_metrics[key] = MetricPoint(name=name, value=value, tags=dict(tags or {}))
    return value


def record_metrics(values: Mapping[str, float], tags: Optional[Mapping[str, str]] = None) -> None:
    """Record several gauges sharing the same tags."""

    for name, value in values.items():
        record_metric(name, value, tags)


def get_latest_metrics(prefix: str | None = None) -> Iterable[MetricPoint]:
    """Return the latest recorded metrics, optionally filtered by prefix."""

    with _lock:
        points = list(_latest_metrics.values())

    if prefix is None:
        return points
    return [p for p in points if p.name.startswith(prefix)]


def metrics_as_dict(prefix: str | None = None) -> Dict[str, float]:
    """Return ``{name: value}`` for untagged-or-tagged points (last write wins)."""

    return {p.name: p.value for p in get_latest_metrics(prefix)}


def reset_metrics() -> None:
    """Clear all in-memory metrics (useful in tests)."""

    with _lock:
        _latest_metrics.clear()
