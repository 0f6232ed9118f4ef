"""
ZooKeeper coordinator backed by kazoo

kazoo is a blocking, thread based client. Every call is pushed onto the
default executor and kazoo exceptions are translated into the zkpool
CoordinatorError family. Watches fire on kazoo's event thread and are handed
back to the event loop that opened the session.
"""

import asyncio
import functools
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from kazoo.client import KazooClient, KazooState
from kazoo.exceptions import (
    ConnectionClosedError,
    ConnectionLoss,
    KazooException,
    NodeExistsError as KazooNodeExistsError,
    NoNodeError as KazooNoNodeError,
    NotEmptyError as KazooNotEmptyError,
    OperationTimeoutError,
    RolledBackError,
    SessionExpiredError as KazooSessionExpiredError,
)
from kazoo.handlers.threading import KazooTimeoutError
from kazoo.protocol.states import WatchedEvent as KazooWatchedEvent

from zkpool.core.config import DEFAULT_CONNECT_STRING
from zkpool.core.errors import (
    ConnectionLossError,
    CoordinatorError,
    NodeExistsError,
    NoNodeError,
    NotEmptyError,
    SessionExpiredError,
)
from zkpool.coordinator.base import CoordinatorAdapter, EventType, NodeStat, Op, OpType, WatchedEvent, Watcher

logger = logging.getLogger(__name__)


def translate_error(exc: Exception, path: Optional[str] = None) -> CoordinatorError:
    """Map a kazoo exception onto the zkpool error hierarchy"""
    if isinstance(exc, KazooNoNodeError):
        return NoNodeError(path or "", cause=exc)
    if isinstance(exc, KazooNodeExistsError):
        return NodeExistsError(path or "", cause=exc)
    if isinstance(exc, KazooNotEmptyError):
        return NotEmptyError(path or "", cause=exc)
    if isinstance(exc, KazooSessionExpiredError):
        return SessionExpiredError("ZooKeeper session expired", cause=exc)
    if isinstance(exc, (ConnectionLoss, ConnectionClosedError, OperationTimeoutError, KazooTimeoutError)):
        return ConnectionLossError(f"Lost connection to ZooKeeper: {exc!r}", cause=exc)
    return CoordinatorError(f"ZooKeeper operation failed: {exc!r}", context={"path": path}, cause=exc)


class KazooCoordinator(CoordinatorAdapter):
    """Coordinator adapter over a ZooKeeper ensemble"""

    def __init__(
        self,
        connect_string: str = DEFAULT_CONNECT_STRING,
        session_timeout: float = 10.0,
        connect_timeout: float = 30.0,
        client_factory: Callable[..., KazooClient] = KazooClient
    ):
        super().__init__()
        if not connect_string:
            raise ValueError("Please specify a valid connect string")
        self.connect_string = connect_string
        self.session_timeout = session_timeout
        self.connect_timeout = connect_timeout
        self._client_factory = client_factory
        self._client: Optional[KazooClient] = None
        self._client_lock = threading.Lock()
        self._connected = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False
        self._watch_wrappers: Dict[Tuple[str, Watcher], Callable[[KazooWatchedEvent], None]] = {}

    # Session

    async def connect(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._closed = False
        await self._loop.run_in_executor(None, self._ensure_client)

    async def reconnect(self) -> None:
        if self._closed:
            return
        loop = self._loop or asyncio.get_running_loop()
        await loop.run_in_executor(None, self._reconnect_blocking)

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._connected.is_set()

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def client(self) -> KazooClient:
        if self._client is None:
            raise ConnectionLossError("ZooKeeper client is not connected")
        return self._client

    def _ensure_client(self) -> KazooClient:
        with self._client_lock:
            if self._client is not None:
                return self._client

            logger.info(f"Connecting to ZooKeeper at {self.connect_string}")
            client = self._client_factory(hosts=self.connect_string, timeout=self.session_timeout)
            client.add_listener(self._on_state_change)
            try:
                client.start(timeout=self.connect_timeout)
            except KazooTimeoutError as e:
                logger.error(f"Waited {self.connect_timeout}s but never finished connecting to ZooKeeper")
                client.stop()
                client.close()
                raise ConnectionLossError(
                    f"Could not connect to ZooKeeper at {self.connect_string}",
                    cause=e
                ) from e

            self._connected.set()
            self._client = client
            return client

    def _reconnect_blocking(self) -> None:
        if self._client is not None and self._connected.wait(self.connect_timeout):
            return

        logger.warning("ZooKeeper session not connected, forcing reconnect")
        self._stop_client()
        self._ensure_client()

    def _stop_client(self) -> None:
        with self._client_lock:
            client, self._client = self._client, None
            self._connected.clear()
        if client is not None:
            try:
                client.stop()
                client.close()
            except KazooException as e:
                logger.debug(f"Error while stopping ZooKeeper client: {e}")

    def _on_state_change(self, state: str) -> None:
        # Runs on kazoo's event thread and must not block
        if state == KazooState.CONNECTED:
            self._connected.set()
        elif state == KazooState.SUSPENDED:
            self._connected.clear()
            logger.warning("ZooKeeper connection suspended")
        elif state == KazooState.LOST:
            self._connected.clear()
            if not self._closed:
                logger.warning("ZooKeeper session expired, ephemeral nodes of this participant are gone")

    async def _close(self) -> None:
        self._closed = True
        loop = self._loop or asyncio.get_running_loop()
        await loop.run_in_executor(None, self._stop_client)
        self._watch_wrappers.clear()
        logger.info("ZooKeeper session closed")

    # Primitives

    async def _run(self, path: Optional[str], func: Callable[..., Any], *args, **kwargs) -> Any:
        loop = self._loop or asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
        except (KazooException, KazooTimeoutError) as e:
            raise translate_error(e, path) from e

    async def _create(self, path: str, data: Optional[bytes], ephemeral: bool, sequential: bool) -> str:
        return await self._run(
            path, self.client.create, path, data or b"", ephemeral=ephemeral, sequence=sequential
        )

    async def _stat(self, path: str, watcher: Optional[Watcher]) -> Optional[NodeStat]:
        stat = await self._run(path, self.client.exists, path, watch=self._wrap(path, watcher))
        if stat is None:
            # Creation watches on absent nodes are not cached
            self._watch_wrappers.pop((path, watcher), None)
            return None
        return NodeStat(
            num_children=stat.numChildren,
            mtime=stat.mtime,
            ctime=stat.ctime,
            version=stat.version,
            ephemeral_owner=stat.ephemeralOwner
        )

    async def _get_children(self, path: str, watcher: Optional[Watcher]) -> List[str]:
        return await self._run(path, self.client.get_children, path, watch=self._wrap(path, watcher))

    async def _get_data(self, path: str) -> Optional[bytes]:
        data, _ = await self._run(path, self.client.get, path)
        return data

    async def _delete(self, path: str) -> None:
        await self._run(path, self.client.delete, path)

    async def _sync(self, path: str) -> None:
        await self._run(path, self.client.sync, path)

    async def _commit(self, ops: List[Op]) -> None:
        if not ops:
            return
        await self._run(None, self._commit_blocking, ops)

    def _commit_blocking(self, ops: List[Op]) -> None:
        transaction = self.client.transaction()
        for op in ops:
            if op.type is OpType.CREATE:
                transaction.create(op.path, op.data or b"", ephemeral=op.ephemeral)
            else:
                transaction.delete(op.path)

        results = transaction.commit()
        for op, result in zip(ops, results):
            if isinstance(result, Exception) and not isinstance(result, RolledBackError):
                raise translate_error(result, op.path)

    # Watches

    def _wrap(self, path: str, watcher: Optional[Watcher]) -> Optional[Callable[[KazooWatchedEvent], None]]:
        """
        Adapt a watcher to kazoo. The wrapper is cached per path until it
        fires, so registering the same watcher twice on a path results in a
        single notification.
        """
        if watcher is None:
            return None
        key = (path, watcher)
        wrapper = self._watch_wrappers.get(key)
        if wrapper is None:
            wrapper = functools.partial(self._on_watch, key)
            self._watch_wrappers[key] = wrapper
        return wrapper

    def _on_watch(self, key: Tuple[str, Watcher], event: KazooWatchedEvent) -> None:
        # Watches are one-shot, the next registration needs a fresh wrapper
        self._watch_wrappers.pop(key, None)
        loop = self._loop
        if loop is None or loop.is_closed() or self._closed:
            return
        try:
            event_type = EventType(event.type)
        except ValueError:
            event_type = EventType.NONE
        loop.call_soon_threadsafe(self._dispatch_watch, key[1], WatchedEvent(event_type, event.path))
