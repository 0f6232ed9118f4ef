"""
Distributed write lock built on ephemeral-sequential nodes

Each contender creates <lock-root>/<uuid>-lock-<seq>. The contender owning the
lowest sequence holds the lock; every other contender watches its immediate
predecessor and re-checks at least every retry_delay seconds.
"""

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, List, Optional

from zkpool.core.errors import ConnectionLossError, CoordinatorError, LockCancelledError, NoNodeError

if TYPE_CHECKING:
    from zkpool.coordinator.base import CoordinatorAdapter, WatchedEvent

logger = logging.getLogger(__name__)

LOCK_NODE_MARKER = "-lock-"


def _sequence(name: str) -> int:
    return int(name[name.rfind(LOCK_NODE_MARKER) + len(LOCK_NODE_MARKER):])


class DistributedLock:
    """Exclusive advisory lock shared by every participant of a pool"""

    def __init__(self, coordinator: 'CoordinatorAdapter', path: str, retry_delay: float = 0.5):
        self.coordinator = coordinator
        self.path = path.rstrip("/")
        self.retry_delay = retry_delay
        self.prefix = f"{uuid.uuid4().hex}{LOCK_NODE_MARKER}"
        self.node: Optional[str] = None
        self.acquired = False
        self._cancelled = False
        self._wakeup = asyncio.Event()

    async def acquire(self) -> bool:
        """Block until the lock is held; restarts after connection loss"""
        while True:
            self._ensure_not_cancelled()
            try:
                return await self._attempt()
            except ConnectionLossError:
                logger.warning(
                    f"Connection lost while acquiring lock {self.path}, trying again in {self.retry_delay}s"
                )
                await asyncio.sleep(self.retry_delay)
                try:
                    await self.coordinator.reconnect()
                except ConnectionLossError:
                    pass
            except CoordinatorError:
                # Closing the session cancels the lock, report the cancellation
                self._ensure_not_cancelled()
                raise

    async def _attempt(self) -> bool:
        if self.node is None:
            self.node = await self._find_own_node()
        if self.node is None:
            self.node = await self.coordinator.create_ephemeral_sequential(f"{self.path}/{self.prefix}")

        while True:
            self._ensure_not_cancelled()
            contenders = await self._contenders()
            name = self.node[self.node.rfind("/") + 1:]

            if name not in contenders:
                # Our node vanished with a previous session
                self.node = await self.coordinator.create_ephemeral_sequential(f"{self.path}/{self.prefix}")
                continue

            index = contenders.index(name)
            if index == 0:
                self.acquired = True
                logger.debug(f"Acquired lock {self.path} with {name}")
                return True

            predecessor = f"{self.path}/{contenders[index - 1]}"
            self._wakeup.clear()
            if await self.coordinator.exists(predecessor, watcher=self._on_predecessor_event):
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.retry_delay)
                except asyncio.TimeoutError:
                    pass

    async def _contenders(self) -> List[str]:
        children = await self.coordinator.children(self.path)
        return sorted((c for c in children if LOCK_NODE_MARKER in c), key=_sequence)

    async def _find_own_node(self) -> Optional[str]:
        try:
            children = await self.coordinator.children(self.path)
        except NoNodeError:
            return None
        for child in children:
            if child.startswith(self.prefix):
                return f"{self.path}/{child}"
        return None

    def _on_predecessor_event(self, event: 'WatchedEvent') -> None:
        self._wakeup.set()

    def _ensure_not_cancelled(self):
        if self._cancelled:
            raise LockCancelledError(f"Acquisition of lock {self.path} was cancelled")

    def cancel(self) -> None:
        """Abort a pending acquisition"""
        self._cancelled = True
        self._wakeup.set()

    async def release(self) -> None:
        node, self.node = self.node, None
        self.acquired = False
        if node is None:
            return
        try:
            await self.coordinator.delete(node)
            logger.debug(f"Released lock {self.path}")
        except NoNodeError:
            pass
        except CoordinatorError as e:
            logger.warning(f"Failed to release lock node {node}: {e}")
