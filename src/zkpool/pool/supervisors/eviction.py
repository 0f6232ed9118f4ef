"""
Idle object eviction
"""

import logging
import time
from typing import TYPE_CHECKING

from zkpool.core.errors import NoNodeError, ZkPoolError

from .base import PeriodicSupervisor

if TYPE_CHECKING:
    from zkpool.coordinator.base import NodeStat

logger = logging.getLogger(__name__)


class EvictionSupervisor(PeriodicSupervisor):
    """
    Destroys unused objects that have been idle for at least
    max_idle_interval, oldest first, at most num_tests_per_eviction per tick.
    Only one participant evicts at a time.
    """

    @property
    def enabled(self) -> bool:
        return self.pool.config.eviction_enabled

    @property
    def interval_seconds(self) -> float:
        return self.pool.config.to_seconds(self.pool.config.evict_interval)

    async def run_once(self) -> int:
        if self.pool.is_shutdown:
            return 0
        return await self.pool.coordinator.do_synchronized(self.pool.paths.eviction_lock, self.evict)

    async def evict(self) -> int:
        pool = self.pool
        stats = await pool.coordinator.children_stats(pool.paths.unused)
        if not stats:
            return 0

        now_ms = time.time() * 1000
        evicted = 0
        candidates = sorted(stats.items(), key=lambda item: item[1].mtime)
        for node, stat in candidates[:pool.config.num_tests_per_eviction]:
            if not self.should_evict(stat, now_ms):
                # Sorted by mtime, every remaining object is younger
                break
            try:
                if await pool.evict_node(node):
                    evicted += 1
            except NoNodeError:
                logger.warning(f"Object {node} vanished while being evicted")
            except ZkPoolError as e:
                logger.error(f"Failed to evict object {node}: {e}")

        if evicted:
            logger.info(f"Evicted {evicted} idle objects from pool {pool.config.name}")
        return evicted

    def should_evict(self, stat: 'NodeStat', now_ms: float) -> bool:
        idle_seconds = (now_ms - stat.mtime) / 1000
        return idle_seconds >= self.pool.config.to_seconds(self.pool.config.max_idle_interval)
