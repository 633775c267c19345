"""Lightweight in-process metrics for callrouter.

Tracks HTTP request latency, routing outcome counters and how long emergency
calls take to reach a person. No Prometheus client required.
"""

from __future__ import annotations

from collections import defaultdict, deque
from threading import Lock
from typing import Iterable


def _percentiles(samples: Iterable[float]) -> dict:
    ordered = sorted(samples)

    def pick(p: float) -> float:
        if not ordered:
            return 0.0
        return round(ordered[int((len(ordered) - 1) * p)], 2)

    return {"samples": len(ordered), "p50": pick(0.50), "p95": pick(0.95), "p99": pick(0.99)}


class InMemoryMetrics:
    def __init__(self, latency_window: int = 2000, answer_window: int = 500) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._status_counts: dict[str, int] = defaultdict(int)
        self._path_counts: dict[str, int] = defaultdict(int)
        self._latencies_ms = deque(maxlen=latency_window)
        self._routing_counts: dict[str, int] = defaultdict(int)
        self._answer_seconds = deque(maxlen=answer_window)

    def observe_request(self, path: str, status_code: int, duration_ms: float) -> None:
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._requests_total += 1
            self._status_counts[bucket] += 1
            self._path_counts[path] += 1
            self._latencies_ms.append(float(duration_ms))

    def count(self, name: str, amount: int = 1) -> None:
        """Bump a routing counter such as ``calls_initiated`` or ``call_missed``."""
        with self._lock:
            self._routing_counts[name] += amount

    def routing_count(self, name: str) -> int:
        with self._lock:
            return self._routing_counts.get(name, 0)

    def observe_time_to_answer(self, seconds: float) -> None:
        """Seconds from incident creation to the first person picking up."""
        with self._lock:
            self._answer_seconds.append(max(float(seconds), 0.0))

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "requests_total": self._requests_total,
                "status_counts": dict(self._status_counts),
                "path_counts": dict(self._path_counts),
                "latency_ms": _percentiles(self._latencies_ms),
                "routing": dict(self._routing_counts),
                "time_to_answer_seconds": _percentiles(self._answer_seconds),
            }


metrics = InMemoryMetrics()
