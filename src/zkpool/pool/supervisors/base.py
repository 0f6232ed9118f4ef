"""
Base classes for pool background supervisors
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from zkpool.pool.object_pool import ZkObjectPool

logger = logging.getLogger(__name__)


class PoolSupervisor(ABC):
    """A background activity attached to one pool participant"""

    def __init__(self, pool: 'ZkObjectPool'):
        self.pool = pool
        self.running = False

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @property
    def enabled(self) -> bool:
        return True

    @abstractmethod
    async def start(self) -> None:
        pass

    @abstractmethod
    async def stop(self, timeout: float = 10.0) -> None:
        pass


class PeriodicSupervisor(PoolSupervisor):
    """
    Supervisor running run_once every interval_seconds on its own task.

    A failing tick is logged and the next tick runs as scheduled. Stopping lets
    an in-flight tick finish for up to timeout seconds before cancelling it.
    """

    def __init__(self, pool: 'ZkObjectPool'):
        super().__init__(pool)
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    @abstractmethod
    def interval_seconds(self) -> float:
        pass

    @abstractmethod
    async def run_once(self) -> int:
        """Perform one tick, returning the number of objects acted upon"""
        pass

    async def start(self) -> None:
        if not self.enabled:
            logger.debug(f"{self.name} is disabled for pool {self.pool.config.name}")
            return
        if self._task is not None:
            return

        self.running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"{self.name} started, running every {self.interval_seconds}s")

    async def _run_loop(self):
        interval = self.interval_seconds
        while self.running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"{self.name} failed for pool {self.pool.config.name}: {e}")

    async def stop(self, timeout: float = 10.0) -> None:
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()

        task, self._task = self._task, None
        if task is None:
            return

        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            logger.warning(f"{self.name} did not finish within {timeout}s, cancelling")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        logger.info(f"{self.name} stopped")
