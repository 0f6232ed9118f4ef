"""
Periodic metrics reporting to the zkpool.perf logger
"""

import json
import logging

from .base import PeriodicSupervisor

perf_logger = logging.getLogger("zkpool.perf")


class MetricsReporter(PeriodicSupervisor):

    @property
    def enabled(self) -> bool:
        return self.pool.config.metrics_enabled

    @property
    def interval_seconds(self) -> float:
        return self.pool.config.to_seconds(self.pool.config.metric_interval)

    async def run_once(self) -> int:
        snapshot = self.pool.metrics.snapshot()
        perf_logger.info(f"Pool {self.pool.config.name}: {json.dumps(snapshot, sort_keys=True)}")
        return len(snapshot['timers'])
