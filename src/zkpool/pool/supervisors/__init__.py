"""
Background supervisors of a pool participant
"""

from .base import PeriodicSupervisor, PoolSupervisor
from .crash_detector import CrashDetector
from .eviction import EvictionSupervisor
from .manager import SupervisorManager
from .metrics_reporter import MetricsReporter
from .zombies import ZombieReconciler

__all__ = [
    'PoolSupervisor',
    'PeriodicSupervisor',
    'CrashDetector',
    'EvictionSupervisor',
    'ZombieReconciler',
    'MetricsReporter',
    'SupervisorManager',
]
