"""
Metrics collection and Prometheus-compatible exposition.

Counts hub requests, token refreshes, signature failures and delivered
notifications, and tracks subscription gauges. Series may carry labels,
e.g. ``inc("notifications_total", type="stream_changed")``.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

PREFIX = "webhooks_"

Labels = tuple[tuple[str, str], ...]


def _labels(labels: dict[str, Any]) -> Labels:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


def _series(name: str, labels: Labels) -> str:
    if not labels:
        return name
    rendered = ",".join(f'{k}="{v}"' for k, v in labels)
    return f"{name}{{{rendered}}}"


class MetricsCollector:
    """Counters and gauges with Prometheus text export."""

    def __init__(self) -> None:
        self._counters: dict[str, dict[Labels, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[Labels, float]] = defaultdict(dict)
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1, **labels: Any) -> None:
        """Increment a counter."""
        self._counters[f"{PREFIX}{name}"][_labels(labels)] += value

    def set_gauge(self, name: str, value: float, **labels: Any) -> None:
        """Set a gauge value."""
        self._gauges[f"{PREFIX}{name}"][_labels(labels)] = value

    def get(self, name: str, **labels: Any) -> int | float:
        """Value of one series, or the sum over all series when no labels are given."""
        full = f"{PREFIX}{name}"
        series = self._gauges.get(full) or self._counters.get(full) or {}
        if labels:
            return series.get(_labels(labels), 0)
        return sum(series.values())

    def to_prometheus(self) -> str:
        """Export all metrics in Prometheus text format."""
        lines = []
        for kind, metrics in (("counter", self._counters), ("gauge", self._gauges)):
            for name in sorted(metrics):
                lines.append(f"# TYPE {name} {kind}")
                for labels, value in sorted(metrics[name].items()):
                    lines.append(f"{_series(name, labels)} {value}")
        uptime = time.time() - self._start_time
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {uptime:.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        """Snapshot of every series, keyed by rendered series name."""
        return {
            "counters": {
                _series(name, labels): value
                for name, series in self._counters.items()
                for labels, value in series.items()
            },
            "gauges": {
                _series(name, labels): value
                for name, series in self._gauges.items()
                for labels, value in series.items()
            },
            "uptime_seconds": time.time() - self._start_time,
        }
