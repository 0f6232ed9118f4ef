"""
Crash detection

A participant that dies without shutting down leaves its used/<id> markers
behind only until its session expires; afterwards those objects are neither
used nor unused. The CrashDetector watches the participants node and, when the
number of live participants drops, puts every such orphaned object back under
unused/.
"""

import logging
from typing import TYPE_CHECKING, List, Optional

from zkpool.core.errors import NodeExistsError, NoNodeError, ZkPoolError
from zkpool.coordinator.base import EventType, WatchedEvent

from .base import PoolSupervisor

if TYPE_CHECKING:
    from zkpool.pool.object_pool import ZkObjectPool

logger = logging.getLogger(__name__)


class CrashDetector(PoolSupervisor):
    """Restores objects orphaned by participants that crashed"""

    def __init__(self, pool: 'ZkObjectPool'):
        super().__init__(pool)
        self.coordinator = pool.coordinator
        self.paths = pool.paths
        self.last_known_participants = 0

    async def start(self) -> None:
        self.running = True
        participants = await self.coordinator.children(self.paths.participants, watcher=self.on_event)
        self.last_known_participants = len(participants)
        logger.info(f"CrashDetector watching {self.last_known_participants} participants")

    async def stop(self, timeout: float = 10.0) -> None:
        self.running = False

    def is_participant_change(self, event: Optional[WatchedEvent]) -> bool:
        if event is None or event.path is None:
            return False
        if event.type in (EventType.DELETED, EventType.NONE) and event.path == self.paths.participants:
            return False
        return True

    async def on_event(self, event: WatchedEvent) -> None:
        if not self.running or self.pool.is_shutdown or self.coordinator.is_closed:
            return
        if not self.is_participant_change(event):
            return

        try:
            participants = await self.coordinator.children(self.paths.participants, watcher=self.on_event)
        except NoNodeError:
            logger.debug("Participants node is gone, pool has been removed")
            return

        previous, active = self.last_known_participants, len(participants)
        self.last_known_participants = active
        if 0 < active < previous:
            logger.info(f"Participants have dropped to {active} from {previous}, initiating cleanup")
            try:
                await self.coordinator.do_synchronized(self.paths.crash_cleanup_lock, self.cleanup)
            except ZkPoolError as e:
                logger.error(f"Crash cleanup failed for pool {self.pool.config.name}: {e}")

    async def cleanup(self) -> int:
        """Restore every missing object, returning how many were restored"""
        missing = await self.find_missing_nodes()
        if not missing:
            logger.info("No missing nodes found")
            return 0

        restored = 0
        for node in missing:
            if await self._restore(node):
                restored += 1
        logger.info(f"Restored {restored} of {len(missing)} missing objects")
        return restored

    async def find_missing_nodes(self) -> List[str]:
        """Objects under master/ that are in none of used, unused or zombies"""
        master = await self.coordinator.children(self.paths.master)
        unused = await self.coordinator.children(self.paths.unused)
        used = await self.coordinator.children(self.paths.used)
        zombies = await self.coordinator.children(self.paths.zombies)
        logger.info(
            f"Looking for missing nodes: master {len(master)}, used {len(used)}, unused {len(unused)}"
        )

        if len(used) + len(unused) >= len(master):
            return []
        missing = set(master) - set(used) - set(unused) - set(zombies)
        return sorted(missing, key=int)

    async def _restore(self, node: str) -> bool:
        if await self.coordinator.exists(self.paths.used_node(node)):
            logger.warning(f"Object {node} is in use again, skipping")
            return False
        try:
            await self.coordinator.create(self.paths.unused_node(node))
            return True
        except NodeExistsError:
            logger.info(f"Object {node} was caught in transition, already unused")
            return False
