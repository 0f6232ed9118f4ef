"""
Pool performance metrics

Timers for the coordinator heavy operations and hit/miss counters for the
borrow race. Snapshots are reported to the ``zkpool.perf`` logger by the
MetricsReporter supervisor.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator


@dataclass
class TimerStats:
    """Aggregated durations of one timed operation"""
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    min_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def record(self, duration_ms: float):
        if self.count == 0 or duration_ms < self.min_ms:
            self.min_ms = duration_ms
        self.max_ms = max(self.max_ms, duration_ms)
        self.total_ms += duration_ms
        self.count += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'count': self.count,
            'avg_ms': round(self.avg_ms, 3),
            'min_ms': round(self.min_ms, 3),
            'max_ms': round(self.max_ms, 3),
        }


class PoolMetrics:
    """Timers and counters of one pool participant"""

    def __init__(self):
        self.timers: Dict[str, TimerStats] = {}
        self.counters: Dict[str, int] = {}

    @contextmanager
    def time(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self.timers.setdefault(name, TimerStats()).record(elapsed_ms)

    def inc(self, name: str, amount: int = 1):
        self.counters[name] = self.counters.get(name, 0) + amount

    def record_hit_or_miss(self, success: bool):
        self.inc("hit" if success else "miss")

    def snapshot(self) -> Dict[str, Any]:
        return {
            'timers': {name: stats.to_dict() for name, stats in sorted(self.timers.items())},
            'counters': dict(sorted(self.counters.items())),
        }
