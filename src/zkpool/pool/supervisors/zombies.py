"""
Zombie reconciliation

A zombie is an object whose factory could not tell whether it is usable. The
ZombieReconciler periodically asks the factory again: valid objects go back to
unused/, invalid ones are dropped, and objects that are still indeterminate
stay zombies until the next tick.
"""

import logging

from zkpool.core.errors import ZombieError

from .base import PeriodicSupervisor

logger = logging.getLogger(__name__)


class ZombieReconciler(PeriodicSupervisor):

    @property
    def interval_seconds(self) -> float:
        return self.pool.config.to_seconds(self.pool.config.zombie_detection_interval)

    async def run_once(self) -> int:
        if self.pool.is_shutdown:
            return 0

        zombies = await self.pool.zombies()
        if zombies == 0:
            return 0

        logger.info(f"Found {zombies} zombies in pool {self.pool.config.name}, reconciling")
        cleaned = await self.pool.coordinator.do_synchronized(self.pool.paths.zombies_lock, self.reconcile)
        if cleaned:
            logger.info(f"Reconciled {cleaned} zombies")
        return cleaned

    async def reconcile(self) -> int:
        cleaned = 0
        for node in await self.pool.zombie_nodes():
            try:
                obj = await self.pool.load(node)
                if await self.pool.is_valid(obj):
                    await self.pool.unzombie(node)
                else:
                    await self.pool.drop(node)
                cleaned += 1
            except ZombieError:
                # Factory still cannot decide, try again on the next tick
                logger.info(f"Object {node} is still a zombie")
                break
            except Exception as e:
                logger.error(f"Error reconciling zombie {node}: {e}")
        return cleaned
