"""zkpool - Distributed object pool coordinated through ZooKeeper"""

__version__ = "0.1.0"

from zkpool.core.config import IntervalUnit, PoolConfig, setup_logging
from zkpool.core.errors import ZkPoolError, ZombieError
from zkpool.core.factory import ObjectFactory
from zkpool.core.paths import PoolPaths
from zkpool.pool.object_pool import ZkObjectPool

__all__ = [
    "ZkObjectPool",
    "PoolConfig",
    "IntervalUnit",
    "ObjectFactory",
    "PoolPaths",
    "ZkPoolError",
    "ZombieError",
    "setup_logging",
]
