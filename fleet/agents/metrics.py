"""In-process counters, gauges and timers kept per agent."""
from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(slots=True)
class TimerStats:
    name: str
    count: int
    total: float
    min: float
    max: float
    avg: float
    p50: float
    p90: float
    p95: float
    p99: float


def _percentile(ordered: List[float], fraction: float) -> float:
    index = max(math.ceil(len(ordered) * fraction) - 1, 0)
    return ordered[min(index, len(ordered) - 1)]


class MetricsCollector:
    """Accumulates task timings and arbitrary counters for one agent."""

    def __init__(self, agent_id: str, max_samples: int = 1000) -> None:
        self.agent_id = agent_id
        self._max_samples = max_samples
        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._timers: Dict[str, List[float]] = defaultdict(list)

    def increment(self, name: str, value: float = 1) -> None:
        self._counters[name] += value

    def counter(self, name: str) -> float:
        return self._counters.get(name, 0)

    def set_gauge(self, name: str, value: float) -> None:
        self._gauges[name] = value

    def gauge(self, name: str) -> Optional[float]:
        return self._gauges.get(name)

    def record_timer(self, name: str, duration_ms: float) -> None:
        samples = self._timers[name]
        samples.append(duration_ms)
        if len(samples) > self._max_samples:
            del samples[0]

    def timer_stats(self, name: str) -> Optional[TimerStats]:
        samples = self._timers.get(name)
        if not samples:
            return None
        ordered = sorted(samples)
        total = sum(ordered)
        return TimerStats(
            name=name,
            count=len(ordered),
            total=total,
            min=ordered[0],
            max=ordered[-1],
            avg=total / len(ordered),
            p50=_percentile(ordered, 0.5),
            p90=_percentile(ordered, 0.9),
            p95=_percentile(ordered, 0.95),
            p99=_percentile(ordered, 0.99),
        )

    def record_task_completion(self, task_type: str, duration_ms: float, success: bool) -> None:
        outcome = "successful" if success else "failed"
        self.increment("tasks.completed")
        self.increment(f"tasks.{outcome}")
        self.increment(f"tasks.{task_type}.{outcome}")
        self.record_timer("task.duration", duration_ms)
        self.record_timer(f"task.{task_type}.duration", duration_ms)

    def summary(self) -> Dict[str, Dict]:
        timers = {}
        for name in self._timers:
            stats = self.timer_stats(name)
            if stats is not None:
                timers[name] = stats
        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "timers": timers,
        }

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()
        self._timers.clear()
