"""
Metrics collection and Prometheus-compatible exposition.

Counts link, subscription and notification outcomes for monitoring, and
tracks point-in-time values such as user locks currently held.
"""

from __future__ import annotations

import time
from collections import defaultdict


class MetricsCollector:
    """
    Counters and gauges with Prometheus text format export.
    """

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        self._counters[f"relay_{name}"] += value

    def set_gauge(self, name: str, value: float) -> None:
        self._gauges[f"relay_{name}"] = value

    def add_gauge(self, name: str, delta: float) -> None:
        key = f"relay_{name}"
        self._gauges[key] = self._gauges.get(key, 0) + delta

    def get(self, name: str) -> float:
        key = f"relay_{name}"
        if key in self._gauges:
            return self._gauges[key]
        return self._counters.get(key, 0)

    def to_prometheus(self) -> str:
        """Export all metrics in Prometheus text format."""
        lines = []
        for name, value in sorted(self._counters.items()):
            lines.append(f"# TYPE {name} counter")
            lines.append(f"{name} {value}")
        for name, value in sorted(self._gauges.items()):
            lines.append(f"# TYPE {name} gauge")
            lines.append(f"{name} {value:g}")
        uptime = time.time() - self._start_time
        lines.append("# TYPE relay_uptime_seconds gauge")
        lines.append(f"relay_uptime_seconds {uptime:.1f}")
        return "\n".join(lines) + "\n"
