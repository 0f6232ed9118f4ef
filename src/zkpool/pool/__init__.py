"""
Distributed object pool and its supervisors
"""

from .metrics import PoolMetrics, TimerStats
from .object_pool import ZkObjectPool
from .supervisors import (
    CrashDetector,
    EvictionSupervisor,
    MetricsReporter,
    SupervisorManager,
    ZombieReconciler,
)

__all__ = [
    'ZkObjectPool',
    'PoolMetrics',
    'TimerStats',
    'SupervisorManager',
    'CrashDetector',
    'EvictionSupervisor',
    'ZombieReconciler',
    'MetricsReporter',
]
