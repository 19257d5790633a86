"""
core_metrics – tiny helpers so services can record counters / histograms
against the in-process Prometheus registry without declaring collectors up
front. Label names are fixed by the first call for a metric name.
"""

from __future__ import annotations

import threading
from typing import Any, Dict
import time as _time

from prometheus_client import (
    REGISTRY as _PROM_REGISTRY,
    Counter as _pCounter,
    Histogram as _pHistogram,
)

_P_COUNTERS: Dict[str, _pCounter] = {}
_P_HISTOS: Dict[str, _pHistogram] = {}
_LOCK = threading.Lock()


def _collector(cache: Dict[str, Any], factory, name: str, kind: str, labelnames: tuple[str, ...]):
    with _LOCK:
        c = cache.get(name)
        if c is None:
            existing = _PROM_REGISTRY._names_to_collectors.get(name)  # type: ignore[attr-defined]
            c = existing if existing is not None else factory(name, f"{kind} for {name}", labelnames=labelnames)
            cache[name] = c
    return c


def _labelled(metric: Any, attrs: Dict[str, Any]) -> Any:
    if not attrs:
        return metric
    return metric.labels(**{k: str(v) for k, v in attrs.items()})


# --------------------------------------------------------------------------- #
# Public helpers                                                              #
# --------------------------------------------------------------------------- #
def counter(name: str, inc: int | float = 1, **attrs: Any) -> None:
    """Increment *name* by *inc* (default 1)."""
    pc = _collector(_P_COUNTERS, _pCounter, name, "Counter", tuple(sorted(attrs)))
    try:
        _labelled(pc, attrs).inc(inc)
    except ValueError:
        # Label-set drift between call sites; metrics must never break the request path
        pass


def histogram(name: str, value: float, **attrs: Any) -> None:
    """Record *value* in histogram *name*."""
    ph = _collector(_P_HISTOS, _pHistogram, name, "Histogram", tuple(sorted(attrs)))
    try:
        _labelled(ph, attrs).observe(value)
    except ValueError:
        pass


def record_latency_ms(metric_base: str, t0: float, **attrs: Any) -> float:
    """
    Convenience: record elapsed time since *t0* as histogram
    ``{metric_base}_latency_ms``. Returns the measured latency in ms.
    """
    dt_ms = (_time.perf_counter() - t0) * 1000.0
    histogram(f"{metric_base}_latency_ms", dt_ms, **attrs)
    return dt_ms


__all__ = ["counter", "histogram", "record_latency_ms"]
