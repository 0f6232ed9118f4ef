"""
In-process coordinator backend

InMemoryEnsemble holds a ZooKeeper-like node tree (persistent, ephemeral and
sequential nodes, one-shot watches, atomic multi-op) shared by any number of
InMemoryCoordinator sessions. It backs the test-suite and local experiments
where running a ZooKeeper ensemble is not practical. Participants that share an
ensemble see each other exactly as they would through a real one, and a crash
is simulated by expiring a session.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from zkpool.core.errors import (
    ConnectionLossError,
    CoordinatorError,
    NodeExistsError,
    NoNodeError,
    NotEmptyError,
    SessionExpiredError,
)
from zkpool.coordinator.base import (
    CoordinatorAdapter,
    EventType,
    NodeStat,
    Op,
    OpType,
    WatchedEvent,
    Watcher,
)

logger = logging.getLogger(__name__)

Delivery = Callable[[Watcher, WatchedEvent], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _parent(path: str) -> str:
    index = path.rfind("/")
    return "/" if index == 0 else path[:index]


def _join(parent: str, child: str) -> str:
    return f"/{child}" if parent == "/" else f"{parent}/{child}"


@dataclass
class _Node:
    data: bytes
    ephemeral_owner: int
    ctime: int
    mtime: int
    version: int = 0
    children: Set[str] = field(default_factory=set)
    sequence: int = 0

    def stat(self) -> NodeStat:
        return NodeStat(
            num_children=len(self.children),
            mtime=self.mtime,
            ctime=self.ctime,
            version=self.version,
            ephemeral_owner=self.ephemeral_owner
        )


class InMemoryEnsemble:
    """Shared node tree standing in for a ZooKeeper ensemble"""

    def __init__(self):
        now = _now_ms()
        self._nodes: Dict[str, _Node] = {"/": _Node(b"", 0, now, now)}
        self._sessions: Dict[int, Delivery] = {}
        self._next_session = 1
        self._child_watches: Dict[str, List[Tuple[int, Watcher]]] = {}
        self._exists_watches: Dict[str, List[Tuple[int, Watcher]]] = {}
        self._lock = threading.RLock()

    # Sessions

    def open_session(self, delivery: Delivery) -> int:
        with self._lock:
            session_id = self._next_session
            self._next_session += 1
            self._sessions[session_id] = delivery
            return session_id

    def close_session(self, session_id: int) -> None:
        """End a session, deleting its ephemeral nodes and dropping its watches"""
        with self._lock:
            if session_id not in self._sessions:
                return
            events: List[Tuple[str, EventType]] = []
            owned = [p for p, n in self._nodes.items() if n.ephemeral_owner == session_id]
            for path in sorted(owned, key=len, reverse=True):
                self._remove(path, events)
            for watches in (self._child_watches, self._exists_watches):
                for path in list(watches):
                    watches[path] = [w for w in watches[path] if w[0] != session_id]
                    if not watches[path]:
                        del watches[path]
            del self._sessions[session_id]
            self._fire(events)

    def session_alive(self, session_id: int) -> bool:
        return session_id in self._sessions

    def _check_session(self, session_id: int):
        if session_id not in self._sessions:
            raise SessionExpiredError("Session has expired", context={"session": session_id})

    # Reads

    def stat(self, session_id: int, path: str, watcher: Optional[Watcher] = None) -> Optional[NodeStat]:
        with self._lock:
            self._check_session(session_id)
            if watcher is not None:
                self._add_watch(self._exists_watches, path, session_id, watcher)
            node = self._nodes.get(path)
            return node.stat() if node else None

    def get_children(self, session_id: int, path: str, watcher: Optional[Watcher] = None) -> List[str]:
        with self._lock:
            self._check_session(session_id)
            node = self._nodes.get(path)
            if node is None:
                raise NoNodeError(path)
            if watcher is not None:
                self._add_watch(self._child_watches, path, session_id, watcher)
            return list(node.children)

    def get_data(self, session_id: int, path: str) -> bytes:
        with self._lock:
            self._check_session(session_id)
            node = self._nodes.get(path)
            if node is None:
                raise NoNodeError(path)
            return node.data

    def node_paths(self) -> List[str]:
        """Every node path except the root, sorted"""
        with self._lock:
            return sorted(p for p in self._nodes if p != "/")

    # Writes

    def create(
        self,
        session_id: int,
        path: str,
        data: Optional[bytes],
        ephemeral: bool,
        sequential: bool
    ) -> str:
        with self._lock:
            self._check_session(session_id)
            if not path.startswith("/") or path == "/":
                raise CoordinatorError(f"Invalid path {path!r}")

            parent = self._nodes.get(_parent(path))
            if parent is None:
                raise NoNodeError(path)
            if parent.ephemeral_owner:
                raise CoordinatorError(f"Ephemeral node {_parent(path)} cannot have children")

            if sequential:
                path = f"{path}{parent.sequence:010d}"
                parent.sequence += 1
            if path in self._nodes:
                raise NodeExistsError(path)

            events: List[Tuple[str, EventType]] = []
            self._add(path, data, session_id if ephemeral else 0, events)
            self._fire(events)
            return path

    def multi(self, session_id: int, ops: List[Op]) -> None:
        """Apply ops atomically: validated against a staged view, then applied"""
        with self._lock:
            self._check_session(session_id)
            created: Dict[str, Op] = {}
            deleted: Set[str] = set()

            def exists(p: str) -> bool:
                return p in created or (p in self._nodes and p not in deleted)

            def has_children(p: str) -> bool:
                node = self._nodes.get(p)
                if node is not None and p not in deleted:
                    if any(_join(p, c) not in deleted for c in node.children):
                        return True
                return any(_parent(c) == p for c in created)

            for op in ops:
                if op.type is OpType.CREATE:
                    if not exists(_parent(op.path)):
                        raise NoNodeError(op.path)
                    if exists(op.path):
                        raise NodeExistsError(op.path)
                    created[op.path] = op
                else:
                    if not exists(op.path):
                        raise NoNodeError(op.path)
                    if has_children(op.path):
                        raise NotEmptyError(op.path)
                    created.pop(op.path, None)
                    if op.path in self._nodes:
                        deleted.add(op.path)

            events: List[Tuple[str, EventType]] = []
            for op in ops:
                if op.type is OpType.CREATE:
                    self._add(op.path, op.data, session_id if op.ephemeral else 0, events)
                else:
                    self._remove(op.path, events)
            self._fire(events)

    def delete(self, session_id: int, path: str) -> None:
        self.multi(session_id, [Op(OpType.DELETE, path)])

    # Internals, called with the lock held

    def _add(self, path: str, data: Optional[bytes], owner: int, events: List[Tuple[str, EventType]]):
        now = _now_ms()
        self._nodes[path] = _Node(data or b"", owner, now, now)
        parent_path = _parent(path)
        self._nodes[parent_path].children.add(path[path.rfind("/") + 1:])
        events.append((path, EventType.CREATED))
        events.append((parent_path, EventType.CHILD))

    def _remove(self, path: str, events: List[Tuple[str, EventType]]):
        del self._nodes[path]
        parent_path = _parent(path)
        parent = self._nodes.get(parent_path)
        if parent is not None:
            parent.children.discard(path[path.rfind("/") + 1:])
        events.append((path, EventType.DELETED))
        events.append((parent_path, EventType.CHILD))

    @staticmethod
    def _add_watch(watches: Dict[str, List[Tuple[int, Watcher]]], path: str, session_id: int, watcher: Watcher):
        registered = watches.setdefault(path, [])
        if (session_id, watcher) not in registered:
            registered.append((session_id, watcher))

    def _fire(self, events: List[Tuple[str, EventType]]):
        for path, event_type in events:
            triggered: List[Tuple[int, Watcher]] = []
            if event_type is EventType.CHILD:
                triggered.extend(self._child_watches.pop(path, []))
            elif event_type is EventType.DELETED:
                triggered.extend(self._child_watches.pop(path, []))
                triggered.extend(self._exists_watches.pop(path, []))
            else:
                triggered.extend(self._exists_watches.pop(path, []))

            for session_id, watcher in triggered:
                delivery = self._sessions.get(session_id)
                if delivery is not None:
                    delivery(watcher, WatchedEvent(event_type, path))


class InMemoryCoordinator(CoordinatorAdapter):
    """Coordinator session against an InMemoryEnsemble"""

    def __init__(self, ensemble: Optional[InMemoryEnsemble] = None, latency: float = 0.0):
        super().__init__()
        self.ensemble = ensemble or InMemoryEnsemble()
        self.latency = latency
        self.session_id: Optional[int] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False
        self._crashed = False
        self._pending_failures = 0

    # Session

    async def connect(self) -> None:
        if self._crashed:
            raise SessionExpiredError("Participant has crashed")
        self._loop = asyncio.get_running_loop()
        self._closed = False
        if self.session_id is None:
            self.session_id = self.ensemble.open_session(self._deliver_threadsafe)
            logger.info(f"In-memory coordinator session {self.session_id} opened")

    async def reconnect(self) -> None:
        if self.is_closed:
            return
        if self.session_id is None or not self.ensemble.session_alive(self.session_id):
            self.session_id = None
            await self.connect()

    @property
    def is_connected(self) -> bool:
        return self.session_id is not None and self.ensemble.session_alive(self.session_id)

    @property
    def is_closed(self) -> bool:
        return self._closed or self._crashed

    async def _close(self) -> None:
        if self.session_id is not None:
            self.ensemble.close_session(self.session_id)
            logger.info(f"In-memory coordinator session {self.session_id} closed")
        self.session_id = None
        self._closed = True

    # Fault injection

    def expire_session(self) -> None:
        """Expire the current session; the next operation opens a new one"""
        if self.session_id is not None:
            self.ensemble.close_session(self.session_id)
            self.session_id = None

    def crash(self) -> None:
        """Simulate the death of this participant's process"""
        self._crashed = True
        for lock in list(self._locks):
            lock.cancel()
        self.expire_session()

    def inject_connection_loss(self, count: int = 1) -> None:
        """Make the next count operations fail with ConnectionLossError"""
        self._pending_failures += count

    # Primitives

    async def _session(self) -> int:
        if self.latency:
            await asyncio.sleep(self.latency)
        else:
            await asyncio.sleep(0)

        if self.is_closed:
            raise SessionExpiredError("Coordinator session is closed")
        if self._pending_failures:
            self._pending_failures -= 1
            raise ConnectionLossError("Simulated connection loss")
        if self.session_id is None:
            await self.connect()
        return self.session_id

    async def _create(self, path: str, data: Optional[bytes], ephemeral: bool, sequential: bool) -> str:
        session_id = await self._session()
        return self.ensemble.create(session_id, path, data, ephemeral, sequential)

    async def _stat(self, path: str, watcher: Optional[Watcher]) -> Optional[NodeStat]:
        session_id = await self._session()
        return self.ensemble.stat(session_id, path, watcher)

    async def _get_children(self, path: str, watcher: Optional[Watcher]) -> List[str]:
        session_id = await self._session()
        return self.ensemble.get_children(session_id, path, watcher)

    async def _get_data(self, path: str) -> Optional[bytes]:
        session_id = await self._session()
        return self.ensemble.get_data(session_id, path)

    async def _delete(self, path: str) -> None:
        session_id = await self._session()
        self.ensemble.delete(session_id, path)

    async def _sync(self, path: str) -> None:
        await self._session()

    async def _commit(self, ops: List[Op]) -> None:
        session_id = await self._session()
        self.ensemble.multi(session_id, ops)

    # Watches

    def _deliver_threadsafe(self, watcher: Watcher, event: WatchedEvent) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._deliver, watcher, event)

    def _deliver(self, watcher: Watcher, event: WatchedEvent) -> None:
        if self.is_closed:
            return
        self._dispatch_watch(watcher, event)
