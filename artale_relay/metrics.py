"""
Relay counters and gauges with Prometheus text exposition.

Counters may carry labels, e.g. delivery failures are counted per error code
so a permissions problem is distinguishable from rate limiting.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

PREFIX = "relay_"

_Key = tuple[str, tuple[tuple[str, str], ...]]


def _key(name: str, labels: dict[str, str] | None) -> _Key:
    return f"{PREFIX}{name}", tuple(sorted((labels or {}).items()))


def _render(key: _Key) -> str:
    name, labels = key
    if not labels:
        return name
    inner = ",".join(f'{k}="{v}"' for k, v in labels)
    return f"{name}{{{inner}}}"


class MetricsCollector:
    """In-process metric registry for the feed listener and dispatcher."""

    def __init__(self) -> None:
        self._counters: dict[_Key, int] = defaultdict(int)
        self._gauges: dict[_Key, float] = {}
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1, **labels: str) -> None:
        self._counters[_key(name, labels)] += value

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        self._gauges[_key(name, labels)] = value

    def get(self, name: str, **labels: str) -> int | float:
        """Current value of a gauge or counter; 0 for unknown counters."""
        key = _key(name, labels)
        if key in self._gauges:
            return self._gauges[key]
        return self._counters.get(key, 0)

    def total(self, name: str) -> int:
        """Sum of a counter across all label sets."""
        full = f"{PREFIX}{name}"
        return sum(v for (n, _), v in self._counters.items() if n == full)

    def to_prometheus(self) -> str:
        lines: list[str] = []
        typed: set[str] = set()
        for kind, series in (("counter", self._counters), ("gauge", self._gauges)):
            for key in sorted(series):
                if key[0] not in typed:
                    lines.append(f"# TYPE {key[0]} {kind}")
                    typed.add(key[0])
                lines.append(f"{_render(key)} {series[key]}")
        uptime = time.time() - self._start_time
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {uptime:.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "counters": {_render(k): v for k, v in self._counters.items()},
            "gauges": {_render(k): v for k, v in self._gauges.items()},
            "uptime_seconds": time.time() - self._start_time,
        }
