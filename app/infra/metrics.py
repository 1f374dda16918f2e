# app/infra/metrics.py
from __future__ import annotations
from collections import defaultdict
from threading import Lock
from typing import Dict, Any
from dataclasses import dataclass, field
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Counter:
    """Simple counter metric"""
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


@dataclass
class Histogram:
    """Track distribution of values (e.g., response times)"""
    values: list[float] = field(default_factory=list)

    def observe(self, value: float) -> None:
        self.values.append(value)

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0, "p99": 0}

        sorted_values = sorted(self.values)
        count = len(sorted_values)

        def percentile(p: float) -> float:
            idx = int(count * p)
            return sorted_values[min(idx, count - 1)]

        return {
            "count": count,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "avg": sum(sorted_values) / count,
            "p95": percentile(0.95),
            "p99": percentile(0.99),
        }


class MetricsCollector:
    """
    Lightweight in-process metrics collection.
    Counters and histograms are keyed by name plus sorted labels.
    """

    def __init__(self):
        self._counters: Dict[str, Counter] = defaultdict(Counter)
        self._histograms: Dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        """Increment a counter metric"""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key].inc(amount)

    def get_counter(self, name: str, labels: dict | None = None) -> int:
        key = self._make_key(name, labels)
        with self._lock:
            counter = self._counters.get(key)
            return counter.value if counter else 0

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        """Add a value to histogram"""
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_metrics(self) -> dict:
        """Get all current metrics"""
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {
            "counters": counters,
            "histograms": histograms,
        }

    def reset(self) -> None:
        """Reset all metrics"""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        """Create a metric key from name and labels"""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


def _percent(part: int, whole: int) -> str:
    if whole <= 0:
        return "0%"
    return f"{part / whole * 100:.1f}%"


class DownloadMetrics:
    """
    Cumulative download orchestration metrics.

    Counters:
        requests_total, cache_hits_total, downloads_succeeded_total,
        downloads_failed_total, requests_deduplicated_total,
        strategy_{attempts,successes,failures}_total{strategy=...}
    Histogram:
        response_time_ms
    """

    def __init__(self, collector: MetricsCollector | None = None):
        self.collector = collector or MetricsCollector()
        self._strategy_names: set[str] = set()
        self._names_lock = Lock()

    def request_received(self) -> None:
        self.collector.inc_counter("requests_total")

    def cache_hit(self) -> None:
        self.collector.inc_counter("cache_hits_total")

    def download_succeeded(self) -> None:
        self.collector.inc_counter("downloads_succeeded_total")

    def download_failed(self) -> None:
        self.collector.inc_counter("downloads_failed_total")

    def request_deduplicated(self) -> None:
        self.collector.inc_counter("requests_deduplicated_total")

    def strategy_attempt(self, strategy: str, success: bool) -> None:
        with self._names_lock:
            self._strategy_names.add(strategy)
        labels = {"strategy": strategy}
        self.collector.inc_counter("strategy_attempts_total", 1, labels)
        if success:
            self.collector.inc_counter("strategy_successes_total", 1, labels)
        else:
            self.collector.inc_counter("strategy_failures_total", 1, labels)

    def observe_response_time(self, elapsed_ms: int) -> None:
        self.collector.observe_histogram("response_time_ms", elapsed_ms)

    def snapshot(self) -> dict[str, Any]:
        """Read-only view for the health/metrics surface"""
        c = self.collector
        total = c.get_counter("requests_total")
        hits = c.get_counter("cache_hits_total")
        succeeded = c.get_counter("downloads_succeeded_total")
        failed = c.get_counter("downloads_failed_total")

        with self._names_lock:
            names = sorted(self._strategy_names)

        strategies: dict[str, dict[str, Any]] = {}
        for name in names:
            labels = {"strategy": name}
            attempts = c.get_counter("strategy_attempts_total", labels)
            successes = c.get_counter("strategy_successes_total", labels)
            strategies[name] = {
                "attempts": attempts,
                "successes": successes,
                "failures": c.get_counter("strategy_failures_total", labels),
                "success_rate": _percent(successes, attempts),
            }

        histograms = c.get_metrics()["histograms"]
        return {
            "total_requests": total,
            "cache_hits": hits,
            "successful_downloads": succeeded,
            "failed_downloads": failed,
            "deduplicated_requests": c.get_counter("requests_deduplicated_total"),
            # Cache hits count as successes for the caller
            "cache_hit_rate": _percent(hits, total),
            "success_rate": _percent(succeeded + hits, total),
            "strategies": strategies,
            "response_time_ms": histograms.get("response_time_ms", Histogram().get_stats()),
        }

    def reset(self) -> None:
        with self._names_lock:
            self._strategy_names.clear()
        self.collector.reset()
