"""
Error registry for zkpool

Every failure raised by the pool carries an ErrorCode, the domain it belongs to
and whether a caller may retry it. Coordinator client exceptions are translated
into the CoordinatorError family so the pool never depends on the client
library's exception types.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorDomain(Enum):
    """High-level error domains for organizing errors by system component"""
    CONFIGURATION = "configuration"  # Pool configuration, validation
    COORDINATOR = "coordinator"      # ZooKeeper session, nodes, transactions
    POOL = "pool"                    # Pool lifecycle and state machine
    FACTORY = "factory"              # User supplied object factory


class ErrorCode(Enum):
    """Error codes for zkpool"""

    # Configuration Errors (1000-1999)
    CONFIG_VALIDATION_FAILED = "ZP1001"
    CONFIG_FILE_NOT_FOUND = "ZP1002"
    CONFIG_PARSE_ERROR = "ZP1003"
    FACTORY_MISSING = "ZP1004"

    # Coordinator Errors (2000-2999)
    CONNECTION_LOSS = "ZP2001"
    SESSION_EXPIRED = "ZP2002"
    NODE_NOT_FOUND = "ZP2003"
    NODE_EXISTS = "ZP2004"
    NODE_NOT_EMPTY = "ZP2005"
    TRANSACTION_FAILED = "ZP2010"
    TRANSACTION_COMMITTED = "ZP2011"
    LOCK_CANCELLED = "ZP2020"
    COORDINATOR_FAILURE = "ZP2099"

    # Pool Errors (3000-3999)
    POOL_SHUTDOWN = "ZP3001"
    POOL_NOT_INITIALIZED = "ZP3002"

    # Factory Errors (4000-4999)
    OBJECT_ZOMBIE = "ZP4001"
    FACTORY_FAILURE = "ZP4002"


_DOMAINS = {
    "ZP1": ErrorDomain.CONFIGURATION,
    "ZP2": ErrorDomain.COORDINATOR,
    "ZP3": ErrorDomain.POOL,
    "ZP4": ErrorDomain.FACTORY,
}

_TRANSIENT_CODES = {
    ErrorCode.CONNECTION_LOSS,
    ErrorCode.SESSION_EXPIRED,
}


class ZkPoolError(Exception):
    """Base exception for zkpool with structured error information"""

    default_code = ErrorCode.COORDINATOR_FAILURE

    def __init__(
        self,
        message: str,
        error_code: Optional[ErrorCode] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        """
        Initialize zkpool error

        Args:
            message: Human readable description
            error_code: The specific error code, defaults to the class default
            context: Additional context information (path, node id, ...)
            cause: The underlying exception that caused this error
        """
        self.error_code = error_code or self.default_code
        self.context = context or {}
        self.cause = cause
        super().__init__(message)

    @property
    def domain(self) -> ErrorDomain:
        return _DOMAINS[self.error_code.value[:3]]

    @property
    def should_retry(self) -> bool:
        """Check if this error is transient and the operation may be retried"""
        return self.error_code in _TRANSIENT_CODES

    def __str__(self) -> str:
        base = super().__str__()
        if self.context:
            details = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"[{self.error_code.value}] {base} ({details})"
        return f"[{self.error_code.value}] {base}"


class ConfigurationError(ZkPoolError):
    default_code = ErrorCode.CONFIG_VALIDATION_FAILED


# Coordinator errors

class CoordinatorError(ZkPoolError):
    default_code = ErrorCode.COORDINATOR_FAILURE


class ConnectionLossError(CoordinatorError):
    default_code = ErrorCode.CONNECTION_LOSS


class SessionExpiredError(CoordinatorError):
    default_code = ErrorCode.SESSION_EXPIRED


class NodeError(CoordinatorError):
    """Failure tied to a single node path"""

    def __init__(self, path: str, message: Optional[str] = None, cause: Optional[Exception] = None):
        self.path = path
        super().__init__(message or self.describe(path), context={"path": path}, cause=cause)

    @classmethod
    def describe(cls, path: str) -> str:
        return f"Coordinator operation failed on {path}"


class NoNodeError(NodeError):
    default_code = ErrorCode.NODE_NOT_FOUND

    @classmethod
    def describe(cls, path: str) -> str:
        return f"Node {path} does not exist"


class NodeExistsError(NodeError):
    default_code = ErrorCode.NODE_EXISTS

    @classmethod
    def describe(cls, path: str) -> str:
        return f"Node {path} already exists"


class NotEmptyError(NodeError):
    default_code = ErrorCode.NODE_NOT_EMPTY

    @classmethod
    def describe(cls, path: str) -> str:
        return f"Node {path} has children"


class TransactionError(CoordinatorError):
    default_code = ErrorCode.TRANSACTION_COMMITTED


class LockCancelledError(CoordinatorError):
    default_code = ErrorCode.LOCK_CANCELLED


# Pool errors

class PoolError(ZkPoolError):
    default_code = ErrorCode.POOL_NOT_INITIALIZED


class PoolShutdownError(PoolError):
    default_code = ErrorCode.POOL_SHUTDOWN


# Factory errors

class FactoryError(ZkPoolError):
    default_code = ErrorCode.FACTORY_FAILURE


class ZombieError(FactoryError):
    """
    Raised by an ObjectFactory when the state of an object is indeterminate.

    Raised from validate() it means the object may or may not be usable; raised
    from destroy() it means destruction failed in a way that leaves the
    underlying resource in an unknown state. Either way the pool parks the
    object in the zombie set until the reconciler can decide.
    """

    default_code = ErrorCode.OBJECT_ZOMBIE

    def __init__(self, message: str = "Object is a zombie", **kwargs):
        super().__init__(message, **kwargs)
