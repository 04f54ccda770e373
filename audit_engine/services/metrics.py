"""
Sweep-scoped metrics.

Evaluators take a MetricsSink instead of writing to a process-wide cache, so
each sweep (and each test) sees only its own counts.
"""
import threading
from collections import Counter
from typing import Dict


class MetricsSink:
    """Receives counters from the engine. The base sink discards them."""

    def increment(self, name: str, value: int = 1) -> None:
        pass


class SweepMetrics(MetricsSink):
    """In-memory counters for one sweep invocation."""

    def __init__(self):
        self._counts: Counter = Counter()
        self._lock = threading.Lock()

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counts[name] += value

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts[name]

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)
