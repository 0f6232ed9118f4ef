"""
Supervisor lifecycle for one pool participant
"""

import asyncio
import logging
from typing import TYPE_CHECKING, List, Optional, Type, TypeVar

from .base import PoolSupervisor
from .crash_detector import CrashDetector
from .eviction import EvictionSupervisor
from .metrics_reporter import MetricsReporter
from .zombies import ZombieReconciler

if TYPE_CHECKING:
    from zkpool.pool.object_pool import ZkObjectPool

logger = logging.getLogger(__name__)

S = TypeVar('S', bound=PoolSupervisor)


class SupervisorManager:
    """Starts and stops the background supervisors of a pool"""

    def __init__(self, pool: 'ZkObjectPool'):
        self.pool = pool
        self.supervisors: List[PoolSupervisor] = [
            CrashDetector(pool),
            EvictionSupervisor(pool),
            ZombieReconciler(pool),
            MetricsReporter(pool),
        ]
        self.running = False

    def get(self, supervisor_type: Type[S]) -> Optional[S]:
        for supervisor in self.supervisors:
            if isinstance(supervisor, supervisor_type):
                return supervisor
        return None

    async def start(self):
        for supervisor in self.supervisors:
            await supervisor.start()
        self.running = True
        logger.info(f"Supervisors started for pool {self.pool.config.name}")

    async def stop(self, timeout: float = 10.0):
        if not self.running:
            return
        self.running = False
        await asyncio.gather(*(s.stop(timeout) for s in self.supervisors))
        logger.info(f"Supervisors stopped for pool {self.pool.config.name}")
