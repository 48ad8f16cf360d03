"""In-memory metrics for the import pipeline."""
from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

HISTOGRAM_WINDOW = 100


class MetricsCollector:
    """Thread-safe counters, gauges and bounded histograms."""

    def __init__(self, histogram_window: int = HISTOGRAM_WINDOW):
        self._lock = threading.RLock()
        self._window = histogram_window
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, deque[float]] = {}

    @staticmethod
    def _key(name: str, labels: dict[str, str] | None) -> str:
        if not labels:
            return name
        rendered = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{rendered}}}"

    def increment(self, name: str, value: float = 1.0, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[self._key(name, labels)] += value

    def gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[self._key(name, labels)] = value

    def histogram(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        key = self._key(name, labels)
        with self._lock:
            bucket = self._histograms.get(key)
            if bucket is None:
                bucket = deque(maxlen=self._window)
                self._histograms[key] = bucket
            bucket.append(value)

    @contextmanager
    def timer(self, name: str, labels: dict[str, str] | None = None) -> Generator[None, None, None]:
        """Time the block and record it as ``<name>_duration_ms``."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.histogram(f"{name}_duration_ms", (time.perf_counter() - start) * 1000, labels)

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._counters.get(self._key(name, labels), 0.0)

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        with self._lock:
            return self._gauges.get(self._key(name, labels))

    def get_histogram_stats(self, name: str, labels: dict[str, str] | None = None) -> dict[str, float]:
        return self._stats_for_key(self._key(name, labels))

    def _stats_for_key(self, key: str) -> dict[str, float]:
        with self._lock:
            values = sorted(self._histograms.get(key, ()))
        if not values:
            return {}
        count = len(values)
        return {
            "count": count,
            "min": values[0],
            "max": values[-1],
            "avg": sum(values) / count,
            "p50": values[int(count * 0.5)],
            "p95": values[min(int(count * 0.95), count - 1)],
        }

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            histogram_keys = list(self._histograms)
            data: dict[str, Any] = {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
            }
        data["histograms"] = {key: self._stats_for_key(key) for key in histogram_keys}
        data["collected_at"] = datetime.now(timezone.utc).isoformat()
        return data

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


# Process-wide collector
metrics = MetricsCollector()


def _flag(success: bool) -> str:
    return str(bool(success)).lower()


def record_llm_call(model: str, duration_ms: float, success: bool) -> None:
    labels = {"model": model, "success": _flag(success)}
    metrics.histogram("llm_call_duration_ms", duration_ms, labels)
    metrics.increment("llm_calls_total", labels=labels)
    if not success:
        metrics.increment("llm_errors_total", labels={"model": model})


def record_service_call(service: str, duration_ms: float, success: bool) -> None:
    """Outbound HTTP calls: page fetch, reader proxy, transcription."""
    labels = {"service": service, "success": _flag(success)}
    metrics.histogram("service_call_duration_ms", duration_ms, labels)
    metrics.increment("service_calls_total", labels=labels)


def record_tool_run(tool: str, duration_ms: float, success: bool = True) -> None:
    labels = {"tool": tool, "success": _flag(success)}
    metrics.histogram("tool_run_duration_ms", duration_ms, labels)
    metrics.increment("tool_runs_total", labels=labels)


def record_import(kind: str, outcome: str, duration_ms: float) -> None:
    labels = {"kind": kind, "outcome": outcome}
    metrics.histogram("import_duration_ms", duration_ms, labels)
    metrics.increment("imports_total", labels=labels)


def record_abstain(source: str, reason: str) -> None:
    metrics.increment("import_abstains_total", labels={"source": source, "reason": reason})
