"""
Coordinator adapters

- CoordinatorAdapter: contract the pool is written against
- KazooCoordinator: ZooKeeper ensemble through kazoo
- InMemoryCoordinator / InMemoryEnsemble: in-process tree for tests
"""

from zkpool.coordinator.base import (
    CoordinatorAdapter,
    EventType,
    NodeStat,
    Op,
    OpType,
    Transaction,
    WatchedEvent,
)
from zkpool.coordinator.lock import DistributedLock
from zkpool.coordinator.kazoo_adapter import KazooCoordinator
from zkpool.coordinator.memory import InMemoryCoordinator, InMemoryEnsemble

__all__ = [
    'CoordinatorAdapter',
    'Transaction',
    'Op',
    'OpType',
    'NodeStat',
    'EventType',
    'WatchedEvent',
    'DistributedLock',
    'KazooCoordinator',
    'InMemoryCoordinator',
    'InMemoryEnsemble',
]
