"""
Coordinator adapter contract

Uniform async wrapper over a ZooKeeper-style coordination service. The pool
only ever talks to a CoordinatorAdapter; KazooCoordinator backs it with a real
ensemble and InMemoryCoordinator with an in-process tree.

Provides:
- Session management with reconnect
- Single node reads and writes, children enumeration with one-shot watches
- Multi-op transactions with connection-loss retries
- Cross-participant critical sections (do_synchronized)
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TypeVar, Union

from zkpool.core.errors import ConnectionLossError, TransactionError
from zkpool.coordinator.lock import DistributedLock

logger = logging.getLogger(__name__)

R = TypeVar('R')


class EventType(Enum):
    """Watch event types, named after the ZooKeeper event types"""
    CREATED = "CREATED"
    DELETED = "DELETED"
    CHANGED = "CHANGED"
    CHILD = "CHILD"
    NONE = "NONE"


@dataclass(frozen=True)
class WatchedEvent:
    """A fired watch"""
    type: EventType
    path: Optional[str]


@dataclass(frozen=True)
class NodeStat:
    """Subset of a znode's stat structure the pool relies on"""
    num_children: int
    mtime: int  # epoch milliseconds
    ctime: int  # epoch milliseconds
    version: int = 0
    ephemeral_owner: int = 0

    @property
    def is_ephemeral(self) -> bool:
        return self.ephemeral_owner != 0


class OpType(Enum):
    CREATE = "create"
    DELETE = "delete"


@dataclass(frozen=True)
class Op:
    """One operation of a multi-op transaction"""
    type: OpType
    path: str
    data: Optional[bytes] = None
    ephemeral: bool = False


Watcher = Callable[[WatchedEvent], Union[None, Awaitable[None]]]
SynchronizedCallback = Callable[[], Union[R, Awaitable[R]]]


class Transaction:
    """
    Builder for an atomic multi-op write.

    Operations are collected locally and applied all-or-nothing on commit.
    Once committed the builder is inert.
    """

    def __init__(self, coordinator: 'CoordinatorAdapter'):
        self._coordinator = coordinator
        self._ops: List[Op] = []
        self._committed = False

    @property
    def operations(self) -> Tuple[Op, ...]:
        return tuple(self._ops)

    @property
    def committed(self) -> bool:
        return self._committed

    def _ensure_not_committed(self):
        if self._committed:
            raise TransactionError("Cannot modify a transaction once it has been committed")

    def create(self, path: str, data: Optional[bytes] = None) -> 'Transaction':
        self._ensure_not_committed()
        self._ops.append(Op(OpType.CREATE, path, data))
        return self

    def create_ephemeral(self, path: str, data: Optional[bytes] = None) -> 'Transaction':
        self._ensure_not_committed()
        self._ops.append(Op(OpType.CREATE, path, data, ephemeral=True))
        return self

    def delete(self, path: str) -> 'Transaction':
        self._ensure_not_committed()
        self._ops.append(Op(OpType.DELETE, path))
        return self

    async def delete_recursive(self, path: str) -> 'Transaction':
        """Delete every descendant of path, bottom-up, then path itself"""
        self._ensure_not_committed()
        for child in await self._coordinator.children(path):
            await self.delete_recursive(f"{path}/{child}")
        self.delete(path)
        return self

    async def commit(self) -> None:
        """
        Apply all collected operations atomically.

        Connection loss is retried up to MAX_RETRIES attempts with
        RETRY_DELAY seconds between them; any other failure propagates as the
        error of the first failing operation.
        """
        self._ensure_not_committed()
        max_attempts = self._coordinator.MAX_RETRIES
        attempt = 1
        while True:
            try:
                if attempt > 1:
                    await self._coordinator.reconnect()
                await self._coordinator._commit(list(self._ops))
                self._committed = True
                return
            except ConnectionLossError:
                if attempt >= max_attempts:
                    logger.error(f"Connection loss after {attempt} commit attempts, giving up")
                    raise
                logger.warning(
                    f"Connection loss while committing transaction, retrying {attempt} of "
                    f"{max_attempts} after {self._coordinator.RETRY_DELAY}s"
                )
                await asyncio.sleep(self._coordinator.RETRY_DELAY)
                attempt += 1

    def __len__(self) -> int:
        return len(self._ops)


class CoordinatorAdapter(ABC):
    """Abstract interface for coordinator backends"""

    MAX_RETRIES = 3
    RETRY_DELAY = 1.0
    LOCK_RETRY_DELAY = 0.5

    def __init__(self):
        self._locks: Set[DistributedLock] = set()
        self._watch_tasks: Set[asyncio.Task] = set()

    # Session

    @abstractmethod
    async def connect(self) -> None:
        """Open a session if there is none and wait until it is connected"""
        pass

    @abstractmethod
    async def reconnect(self) -> None:
        """Re-establish the session if it is no longer connected"""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        pass

    async def close(self) -> None:
        """Abort pending lock acquisitions and close the session"""
        for lock in list(self._locks):
            lock.cancel()
        await self._close()

    @abstractmethod
    async def _close(self) -> None:
        pass

    # Primitives implemented by backends

    @abstractmethod
    async def _create(self, path: str, data: Optional[bytes], ephemeral: bool, sequential: bool) -> str:
        pass

    @abstractmethod
    async def _stat(self, path: str, watcher: Optional[Watcher]) -> Optional[NodeStat]:
        pass

    @abstractmethod
    async def _get_children(self, path: str, watcher: Optional[Watcher]) -> List[str]:
        pass

    @abstractmethod
    async def _get_data(self, path: str) -> Optional[bytes]:
        pass

    @abstractmethod
    async def _delete(self, path: str) -> None:
        pass

    @abstractmethod
    async def _sync(self, path: str) -> None:
        pass

    @abstractmethod
    async def _commit(self, ops: List[Op]) -> None:
        pass

    # Writes

    async def create(
        self,
        path: str,
        data: Optional[bytes] = None,
        ephemeral: bool = False,
        sequential: bool = False
    ) -> str:
        """Create a node and return its absolute path"""
        return await self._create(path, data, ephemeral, sequential)

    async def create_ephemeral(self, path: str, data: Optional[bytes] = None) -> str:
        return await self._create(path, data, True, False)

    async def create_sequential(self, path: str, data: Optional[bytes] = None) -> str:
        return await self._create(path, data, False, True)

    async def create_ephemeral_sequential(self, path: str, data: Optional[bytes] = None) -> str:
        return await self._create(path, data, True, True)

    async def delete(self, path: str) -> None:
        await self._delete(path)

    def transaction(self) -> Transaction:
        return Transaction(self)

    # Reads

    async def exists(self, path: str, watcher: Optional[Watcher] = None) -> bool:
        return await self._retry(f"exists {path}", self._stat, path, watcher) is not None

    async def stat(self, path: str) -> Optional[NodeStat]:
        """Stat of path, None if it does not exist"""
        return await self._retry(f"stat {path}", self._stat, path, None)

    async def children(self, path: str, watcher: Optional[Watcher] = None) -> List[str]:
        return await self._retry(f"children {path}", self._get_children, path, watcher)

    async def children_stats(self, path: str) -> Dict[str, NodeStat]:
        """Stats of every child of path, skipping children that vanish meanwhile"""
        stats: Dict[str, NodeStat] = {}
        for child in await self.children(path):
            stat = await self.stat(f"{path}/{child}")
            if stat is not None:
                stats[child] = stat
        return stats

    async def data(self, path: str) -> Optional[bytes]:
        return await self._retry(f"data {path}", self._get_data, path)

    async def sync(self, path: str) -> None:
        """Flush the local view so subsequent reads observe all prior writes"""
        await self._retry(f"sync {path}", self._sync, path)

    async def _retry(self, description: str, func: Callable[..., Awaitable[Any]], *args) -> Any:
        attempt = 1
        while True:
            try:
                if attempt > 1:
                    await self.reconnect()
                return await func(*args)
            except ConnectionLossError:
                if attempt >= self.MAX_RETRIES:
                    logger.error(f"Connection loss during {description} after {attempt} attempts")
                    raise
                logger.warning(f"Connection loss during {description}, retrying in {self.RETRY_DELAY}s")
                await asyncio.sleep(self.RETRY_DELAY)
                attempt += 1

    # Synchronization

    async def do_synchronized(self, lock_path: str, callback: SynchronizedCallback) -> Any:
        """
        Run callback while holding the cross-participant write lock rooted at
        lock_path. The lock is released on every exit path.
        """
        lock = DistributedLock(self, lock_path, retry_delay=self.LOCK_RETRY_DELAY)
        self._locks.add(lock)
        try:
            await lock.acquire()
            result = callback()
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            self._locks.discard(lock)
            await lock.release()

    # Watches

    def _dispatch_watch(self, watcher: Watcher, event: WatchedEvent) -> None:
        """Invoke a watcher; must run on the event loop thread"""
        try:
            result = watcher(event)
        except Exception as e:
            logger.error(f"Watcher failed for {event.type.value} on {event.path}: {e}")
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._watch_tasks.add(task)
            task.add_done_callback(self._watch_done)

    def _watch_done(self, task: asyncio.Task) -> None:
        self._watch_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Watcher task failed: {exc}")
