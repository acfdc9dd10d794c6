from __future__ import annotations

import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from typing import Any, Iterator


@dataclass
class _TimingStats:
    count: int = 0
    sum_ms: float = 0.0
    max_ms: float = 0.0

    def add(self, duration_ms: float) -> None:
        self.count += 1
        self.sum_ms += duration_ms
        self.max_ms = max(self.max_ms, duration_ms)

    def as_dict(self) -> dict[str, Any]:
        avg = round(self.sum_ms / self.count, 2) if self.count else 0.0
        return {
            "count": self.count,
            "avg_ms": avg,
            "max_ms": round(self.max_ms, 2),
            "sum_ms": round(self.sum_ms, 2),
        }


class RuntimeMetrics:
    """In-process counters for HTTP traffic, recharge calls, retries and cron runs."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._started_at = int(time.time())
        self._requests = _TimingStats()
        self._errors_5xx = 0
        self._paths: Counter[str] = Counter()
        self._statuses: Counter[str] = Counter()
        self._counters: Counter[str] = Counter()
        self._timings: dict[str, _TimingStats] = {}

    def record_request(self, *, path: str, status_code: int, duration_ms: int) -> None:
        with self._lock:
            self._requests.add(float(duration_ms))
            self._paths[str(path or "/").strip() or "/"] += 1
            self._statuses[str(int(status_code))] += 1
            if int(status_code) >= 500:
                self._errors_5xx += 1

    def record_counter(self, *, name: str, value: int = 1) -> None:
        metric = str(name or "").strip().lower()
        if metric:
            with self._lock:
                self._counters[metric] += int(value)

    def record_timing(self, *, name: str, duration_ms: int | float) -> None:
        metric = str(name or "").strip().lower()
        if not metric:
            return
        with self._lock:
            self._timings.setdefault(metric, _TimingStats()).add(max(0.0, float(duration_ms)))

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            requests = self._requests.as_dict()
            return {
                "started_at": self._started_at,
                "uptime_seconds": max(0, int(time.time()) - self._started_at),
                "requests_total": requests["count"],
                "errors_5xx_total": self._errors_5xx,
                "latency_avg_ms": requests["avg_ms"],
                "latency_max_ms": requests["max_ms"],
                "status_counts": dict(sorted(self._statuses.items())),
                "top_paths": self._paths.most_common(20),
                "custom_counters": dict(sorted(self._counters.items())),
                "custom_timers": {key: stats.as_dict() for key, stats in sorted(self._timings.items())},
            }


_RUNTIME_METRICS = RuntimeMetrics()


def record_request_metric(*, path: str, status_code: int, duration_ms: int) -> None:
    _RUNTIME_METRICS.record_request(path=path, status_code=status_code, duration_ms=duration_ms)


def record_counter_metric(*, name: str, value: int = 1) -> None:
    _RUNTIME_METRICS.record_counter(name=name, value=value)


def record_timing_metric(*, name: str, duration_ms: int | float) -> None:
    _RUNTIME_METRICS.record_timing(name=name, duration_ms=duration_ms)


@contextmanager
def timed(name: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        record_timing_metric(name=name, duration_ms=(time.perf_counter() - started) * 1000)


def get_runtime_metrics_snapshot() -> dict[str, Any]:
    return _RUNTIME_METRICS.snapshot()
