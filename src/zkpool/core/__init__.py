"""
zkpool core: configuration, errors, path schema and the factory contract
"""

from zkpool.core.config import IntervalUnit, PoolConfig, setup_logging
from zkpool.core.errors import (
    ConfigurationError,
    ConnectionLossError,
    CoordinatorError,
    ErrorCode,
    ErrorDomain,
    FactoryError,
    LockCancelledError,
    NodeExistsError,
    NoNodeError,
    NotEmptyError,
    PoolError,
    PoolShutdownError,
    SessionExpiredError,
    TransactionError,
    ZkPoolError,
    ZombieError,
)
from zkpool.core.factory import ObjectFactory
from zkpool.core.paths import PoolPaths

__all__ = [
    # Configuration
    'PoolConfig',
    'IntervalUnit',
    'setup_logging',

    # Schema and contracts
    'PoolPaths',
    'ObjectFactory',

    # Errors
    'ErrorCode',
    'ErrorDomain',
    'ZkPoolError',
    'ConfigurationError',
    'CoordinatorError',
    'ConnectionLossError',
    'SessionExpiredError',
    'NoNodeError',
    'NodeExistsError',
    'NotEmptyError',
    'TransactionError',
    'LockCancelledError',
    'PoolError',
    'PoolShutdownError',
    'FactoryError',
    'ZombieError',
]
