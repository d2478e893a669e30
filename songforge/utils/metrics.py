"""Prometheus metrics shared by the orchestrator components."""

from __future__ import annotations

from collections.abc import Sequence
from threading import RLock
from typing import Final

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

__all__ = [
    "counter",
    "get_registry",
    "histogram",
    "render_latest",
    "reset_registry",
    "sample_value",
]

# Generation jobs routinely take minutes; the upper buckets matter most.
_DEFAULT_BUCKETS: Final[tuple[float, ...]] = (
    1.0,
    5.0,
    15.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    1800.0,
)

_registry_lock = RLock()
_registry: CollectorRegistry = CollectorRegistry()
_counters: dict[tuple[str, tuple[str, ...]], Counter] = {}
_histograms: dict[tuple[str, tuple[str, ...]], Histogram] = {}


def get_registry() -> CollectorRegistry:
    """Return the registry every SongForge metric is registered on."""

    return _registry


def reset_registry() -> None:
    """Drop all metrics and start from an empty registry (used in tests)."""

    global _registry
    with _registry_lock:
        _registry = CollectorRegistry()
        _counters.clear()
        _histograms.clear()


def counter(
    name: str,
    documentation: str,
    *,
    label_names: Sequence[str] | None = None,
) -> Counter:
    """Return (or create) a labelled counter on the shared registry."""

    labels = tuple(label_names or ())
    cache_key = (name, labels)
    with _registry_lock:
        metric = _counters.get(cache_key)
        if metric is None:
            metric = Counter(
                name,
                documentation,
                labelnames=labels,
                registry=_registry,
            )
            _counters[cache_key] = metric
        return metric


def histogram(
    name: str,
    documentation: str,
    *,
    label_names: Sequence[str] | None = None,
    buckets: Sequence[float] | None = None,
) -> Histogram:
    """Return (or create) a labelled histogram on the shared registry."""

    labels = tuple(label_names or ())
    cache_key = (name, labels)
    with _registry_lock:
        metric = _histograms.get(cache_key)
        if metric is None:
            metric = Histogram(
                name,
                documentation,
                labelnames=labels,
                buckets=tuple(buckets or _DEFAULT_BUCKETS),
                registry=_registry,
            )
            _histograms[cache_key] = metric
        return metric


def render_latest() -> bytes:
    """Serialise the registry in the Prometheus text exposition format."""

    return generate_latest(_registry)


def sample_value(name: str, labels: dict[str, str] | None = None) -> float:
    """Return the current value of sample ``name`` or ``0.0`` when absent."""

    value = _registry.get_sample_value(name, labels or {})
    return float(value) if value is not None else 0.0
