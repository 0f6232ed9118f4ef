"""
Distributed object pool

ZkObjectPool is one participant of a pool shared by many processes. The
coordinator is the single source of truth: every lifecycle transition of a
pooled object is a (multi-op) write under /<pool-name>, and the only state kept
in process is which local object instance maps to which object id.

    master/<id>        persistent, serialized object
    unused/<id>        persistent, object available
    used/<id>          ephemeral, object held by the participant that created the marker
    zombies/<id>       persistent, object state indeterminate (also under used/)
    participants/<n>   ephemeral-sequential, one per live participant
"""

import asyncio
import logging
import threading
import time
from typing import Dict, Generic, List, Optional, Set, Tuple, TypeVar

from zkpool.core.config import PoolConfig
from zkpool.core.errors import (
    ConfigurationError,
    ErrorCode,
    NodeExistsError,
    NoNodeError,
    PoolShutdownError,
    ZkPoolError,
    ZombieError,
)
from zkpool.core.factory import ObjectFactory
from zkpool.core.net import get_address
from zkpool.core.paths import PoolPaths
from zkpool.coordinator.base import CoordinatorAdapter
from zkpool.coordinator.kazoo_adapter import KazooCoordinator
from zkpool.pool.metrics import PoolMetrics
from zkpool.pool.supervisors import SupervisorManager

logger = logging.getLogger(__name__)

T = TypeVar('T')

UNKNOWN_PARTICIPANT_ADDRESS = "address-unknown"


class ZkObjectPool(Generic[T]):
    """
    A pool of objects shared by every participant using the same pool name.

    Usage:
        pool = ZkObjectPool(config, factory=ConnectionFactory())
        await pool.initialize()

        conn = await pool.borrow()
        if conn is not None:
            try:
                ...
            finally:
                await pool.return_object(conn)

        await pool.shutdown()
    """

    SELECTION_RATIO = 0.4
    SUPERVISOR_DRAIN_TIMEOUT = 10.0

    def __init__(
        self,
        config: PoolConfig,
        factory: Optional[ObjectFactory[T]] = None,
        coordinator: Optional[CoordinatorAdapter] = None
    ):
        if config is None:
            raise ConfigurationError("Please provide a valid pool configuration")
        config.validate()

        self.config = config
        self.factory = factory
        self.paths = PoolPaths(config.name)
        self.coordinator = coordinator or KazooCoordinator(
            config.connect_string,
            session_timeout=config.session_timeout,
            connect_timeout=config.connect_timeout
        )
        self.metrics = PoolMetrics()
        self.participant_id: Optional[str] = None

        # id(obj) -> (obj, node id); keyed by identity so unhashable objects can be pooled
        self._borrowed: Dict[int, Tuple[T, str]] = {}
        self._register_lock = asyncio.Lock()
        self._supervisors: Optional[SupervisorManager] = None
        self._initialized = False
        self._shutdown = False

    def set_factory(self, factory: ObjectFactory[T]) -> None:
        self.factory = factory

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def borrowed_count(self) -> int:
        return len(self._borrowed)

    @property
    def supervisors(self) -> Optional[SupervisorManager]:
        return self._supervisors

    async def __aenter__(self) -> 'ZkObjectPool[T]':
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    # Lifecycle

    async def initialize(self) -> None:
        """
        Join the pool, bootstrapping it first if this participant is the one
        that creates the path schema.
        """
        if self._shutdown:
            raise PoolShutdownError(f"Pool {self.config.name} has been shut down")
        if self._initialized:
            return

        self.config.validate()
        if self.factory is None:
            raise ConfigurationError(
                "An ObjectFactory must be set before the pool is initialized",
                error_code=ErrorCode.FACTORY_MISSING
            )

        with self.metrics.time("initialize"):
            await self.coordinator.connect()
            if await self._construct_paths():
                logger.info(
                    f"Constructed storage paths for pool {self.config.name}, "
                    f"filling pool to its initial capacity of {self.config.init_size}"
                )
                await self._fill()

            await self._register_participant()
            await self.coordinator.sync(self.paths.used)

            self._supervisors = SupervisorManager(self)
            await self._supervisors.start()
            self._initialized = True

        logger.info(f"Pool {self.config.name} initialized, participant {self.participant_id}")

    async def shutdown(self) -> None:
        """
        Leave the pool. The last participant to leave destroys every object
        and removes the pool from the coordinator.
        """
        if self._shutdown:
            return
        self._shutdown = True
        logger.info(f"Shutting down pool {self.config.name}")

        try:
            if self._initialized:
                await self.coordinator.do_synchronized(self.paths.shutdown_lock, self._shutdown_locked)
        except Exception as e:
            logger.error(f"Error while shutting down pool {self.config.name}: {e}")
        finally:
            if self._supervisors is not None:
                await self._supervisors.stop(timeout=self.SUPERVISOR_DRAIN_TIMEOUT)
            await self.coordinator.close()

    async def _shutdown_locked(self) -> int:
        if self._supervisors is not None:
            await self._supervisors.stop(timeout=self.SUPERVISOR_DRAIN_TIMEOUT)

        logger.info(f"Deregistering participant {self.participant_id}")
        await self._deregister()

        participants_left = len(await self.coordinator.children(self.paths.participants))
        await self._destroy_all_objects(participants_left)
        return participants_left

    async def _destroy_all_objects(self, participants_left: int) -> None:
        await self._release_borrowed(participants_left)
        if participants_left:
            logger.info(f"There are still {participants_left} participants in the pool, leaving pool intact")
            return

        logger.info(f"No participants left in pool {self.config.name}, cleaning up")
        for node in await self.coordinator.children(self.paths.master):
            try:
                obj = await self.load(node)
            except Exception as e:
                logger.error(f"Could not load object {node} for destruction: {e}")
                continue
            await self._destroy(node, obj)

        transaction = self.coordinator.transaction()
        await transaction.delete_recursive(self.paths.base)
        await transaction.commit()
        logger.info(f"Removed pool {self.config.name} from the coordinator")

    async def _release_borrowed(self, participants_left: int) -> None:
        if not self._borrowed:
            return

        logger.warning(f"There are {len(self._borrowed)} objects still in use, proceeding with shutdown")
        if participants_left:
            # Hand them back to the remaining participants
            for _, node in list(self._borrowed.values()):
                try:
                    await self.mark_unused(node)
                except ZkPoolError as e:
                    logger.error(f"Failed to return object {node} during shutdown: {e}")
        self._borrowed.clear()

    # Borrowing

    async def borrow(self) -> Optional[T]:
        """
        Borrow an object, or None when the pool is saturated or shut down.
        Never raises.
        """
        if self._shutdown:
            return None

        try:
            if await self._is_full():
                return None
            with self.metrics.time("borrow"):
                await self._register_participant()
                return await self._borrow_loop()
        except Exception as e:
            logger.error(f"Failed to borrow from pool {self.config.name}: {e}")
            return None

    async def _borrow_loop(self) -> Optional[T]:
        zombies: Set[str] = set()
        failed_validations = 0
        max_failed_validations = 2 * self.config.size

        while not self._shutdown:
            node = await self._find()
            if node is None:
                return None

            obj = await self._load_claimed(node)
            try:
                if await self.is_valid(obj):
                    return obj
            except ZombieError:
                logger.warning(f"Object {node} reported as zombie during validation")
                self._forget(obj)
                await self._handle_zombie(node)
                zombies.add(node)
                if len(zombies) >= self.config.size:
                    logger.warning(f"Every object of pool {self.config.name} is a zombie, giving up")
                    return None
                continue

            await self.invalidate(obj)
            failed_validations += 1
            if failed_validations >= max_failed_validations:
                logger.warning(f"{failed_validations} objects failed validation in a row, giving up")
                return None
        return None

    async def borrow_specific(self, node: str) -> Optional[T]:
        """Borrow the object with the given id if it is still unused"""
        if self._shutdown or not await self.mark_used(node):
            return None

        obj = await self._load_claimed(node)
        try:
            if await self.is_valid(obj):
                return obj
        except ZombieError:
            self._forget(obj)
            await self._handle_zombie(node)
            return None

        await self.invalidate(obj)
        return None

    async def return_object(self, obj: T) -> None:
        with self.metrics.time("return"):
            entry = self._borrowed.pop(id(obj), None)
            if entry is None:
                logger.error(f"No node found to return object {obj!r}")
                return

            node = entry[1]
            try:
                await self.mark_unused(node)
            except ZkPoolError as e:
                logger.error(f"Failed to return object {node} to pool {self.config.name}: {e}")

    async def invalidate(self, obj: T) -> bool:
        """Destroy a borrowed object and remove it from the pool"""
        entry = self._borrowed.get(id(obj))
        if entry is None:
            logger.warning(f"Cannot invalidate object {obj!r}, it was not borrowed from this pool")
            return False

        node = entry[1]
        destroyed = await self._destroy(node, obj)
        if destroyed:
            self._forget(obj)
            try:
                await self.coordinator.transaction() \
                    .delete(self.paths.master_node(node)) \
                    .delete(self.paths.used_node(node)) \
                    .commit()
            except ZkPoolError as e:
                logger.error(f"Destroyed object {node} but failed to remove it from the pool: {e}")
        return destroyed

    async def evict_node(self, node: str) -> bool:
        """
        Borrow an unused object and destroy it. Validation runs first, so an
        object reported as a zombie is parked under zombies/ instead. An object
        the factory fails to destroy goes back to unused/.
        """
        obj = await self.borrow_specific(node)
        if obj is None:
            return False
        if await self.invalidate(obj):
            return True
        if id(obj) in self._borrowed:
            await self.return_object(obj)
        return False

    async def is_valid(self, obj: Optional[T]) -> bool:
        """
        Ask the factory whether obj is usable. Errors other than a zombie
        signal count as invalid.

        Raises:
            ZombieError: the factory could not tell
        """
        if obj is None:
            return False
        try:
            return bool(await self.factory.validate(obj))
        except ZombieError:
            raise
        except Exception as e:
            logger.debug(f"Error validating object {obj!r}, treating it as invalid: {e}")
            return False

    async def _destroy(self, node: str, obj: T) -> bool:
        try:
            await self.factory.destroy(obj)
            return True
        except ZombieError:
            if not self._shutdown:
                logger.warning(f"Object {node} became a zombie while being destroyed")
                self._forget(obj)
                try:
                    await self._handle_zombie(node)
                except ZkPoolError as e:
                    logger.error(f"Failed to record zombie {node}: {e}")
        except Exception as e:
            logger.error(f"Error destroying object {node}: {e}")
        return False

    def _forget(self, obj: T) -> None:
        self._borrowed.pop(id(obj), None)

    # Node selection

    async def _find(self) -> Optional[str]:
        node = await self._find_unused()
        if node is None and not await self._is_full():
            node = await self._add_new(self.paths.used, ephemeral=True)
        return node

    async def _find_unused(self) -> Optional[str]:
        while True:
            candidates = await self._unused_nodes()
            if not candidates:
                return None
            chosen = candidates[self._select_index(candidates, await self.used())]
            if await self.mark_used(chosen):
                return chosen

    def _select_index(self, candidates: List[str], used: int) -> int:
        # Spread concurrent borrowers over the oldest part of the unused list
        available = len(candidates)
        limit = int(used * self.SELECTION_RATIO)
        if limit == 0 or limit >= available:
            limit = available
        seed = time.monotonic_ns() ^ hash((threading.get_ident(), id(asyncio.current_task())))
        return seed % limit

    async def _unused_nodes(self) -> List[str]:
        return sorted(await self.coordinator.children(self.paths.unused), key=int)

    async def _is_full(self) -> bool:
        return await self.used() >= self.config.size

    # Transitions

    async def mark_used(self, node: str) -> bool:
        """unused -> used; False when another borrower won the race"""
        success = False
        with self.metrics.time("mark-used"):
            try:
                await self.coordinator.transaction() \
                    .delete(self.paths.unused_node(node)) \
                    .create_ephemeral(self.paths.used_node(node)) \
                    .commit()
                success = True
            except NoNodeError:
                logger.debug(f"Lost the race for object {node}")
            finally:
                self.metrics.record_hit_or_miss(success)
        return success

    async def mark_unused(self, node: str) -> None:
        """used -> unused"""
        await self.coordinator.transaction() \
            .delete(self.paths.used_node(node)) \
            .create(self.paths.unused_node(node)) \
            .commit()

    async def unzombie(self, node: str) -> None:
        """zombie -> unused"""
        transaction = self.coordinator.transaction()
        if await self.coordinator.exists(self.paths.used_node(node)):
            transaction.delete(self.paths.used_node(node))
        transaction.delete(self.paths.zombie_node(node)).create(self.paths.unused_node(node))
        try:
            await transaction.commit()
        except NoNodeError:
            logger.debug(f"Object {node} is no longer a zombie")

    async def drop(self, node: str) -> None:
        """zombie -> destroyed, without calling the factory"""
        with self.metrics.time("drop"):
            transaction = self.coordinator.transaction() \
                .delete(self.paths.zombie_node(node)) \
                .delete(self.paths.master_node(node))
            if await self.coordinator.exists(self.paths.used_node(node)):
                transaction.delete(self.paths.used_node(node))
            try:
                await transaction.commit()
            except NoNodeError:
                logger.debug(f"Zombie {node} was already dropped")

    async def _handle_zombie(self, node: str) -> None:
        try:
            await self.coordinator.create(self.paths.zombie_node(node))
        except NodeExistsError:
            logger.debug(f"Object {node} is already a zombie")

    async def _add_new(self, to_path: str, ephemeral: bool = False) -> str:
        obj = await self.factory.create()
        path = await self.coordinator.create_sequential(f"{self.paths.master}/", self.factory.serialize(obj))
        node = PoolPaths.node_id(path)
        # Two round-trips: a crash in between leaves master/<node> without a marker
        # until the crash detector restores it
        await self.coordinator.create(f"{to_path}/{node}", ephemeral=ephemeral)
        return node

    async def _fill(self) -> None:
        for _ in range(self.config.init_size):
            await self._add_new(self.paths.unused)

    async def _mark_borrowed(self, node: str) -> T:
        obj = await self.load(node)
        self._borrowed[id(obj)] = (obj, node)
        return obj

    async def _load_claimed(self, node: str) -> T:
        """
        Load an object this participant has just marked used. When loading
        fails the used marker is given back so the slot is not held until the
        session ends.
        """
        try:
            return await self._mark_borrowed(node)
        except Exception as e:
            logger.error(f"Could not load object {node}, releasing it: {e}")
            await self._release_claim(node)
            raise

    async def _release_claim(self, node: str) -> None:
        try:
            if await self.coordinator.exists(self.paths.master_node(node)):
                await self.mark_unused(node)
            else:
                await self.coordinator.delete(self.paths.used_node(node))
        except ZkPoolError as e:
            logger.error(f"Failed to release object {node}: {e}")

    async def load(self, node: str) -> T:
        """Read and deserialize the object stored under master/<node>"""
        with self.metrics.time("retrieve-data"):
            data = await self.coordinator.data(self.paths.master_node(node))
            return self.factory.deserialize(data)

    async def zombie_nodes(self) -> List[str]:
        return await self.coordinator.children(self.paths.zombies)

    # Bootstrap and membership

    async def _construct_paths(self) -> bool:
        transaction = self.coordinator.transaction()
        for path in self.paths.all():
            transaction.create(path)
        try:
            await transaction.commit()
            return True
        except NodeExistsError:
            logger.info(f"Pool {self.config.name} was already initialized by another participant")
            return False

    async def _register_participant(self) -> None:
        async with self._register_lock:
            if await self._is_registered():
                return
            address = get_address()
            path = await self.coordinator.create_ephemeral_sequential(
                f"{self.paths.participants}/", address.encode("utf-8")
            )
            self.participant_id = PoolPaths.node_id(path)
            logger.info(f"Registered participant {self.participant_id} ({address}) in pool {self.config.name}")

    async def _is_registered(self) -> bool:
        return self.participant_id is not None and await self.coordinator.exists(
            self.paths.participant_node(self.participant_id)
        )

    async def _deregister(self) -> None:
        if self.participant_id is None:
            return
        try:
            await self.coordinator.delete(self.paths.participant_node(self.participant_id))
        except NoNodeError:
            pass
        self.participant_id = None

    # Observers

    async def size(self) -> int:
        """Number of live objects"""
        return await self._count(self.paths.master)

    async def unused(self) -> int:
        return await self._count(self.paths.unused)

    async def used(self) -> int:
        return await self._count(self.paths.used)

    async def zombies(self) -> int:
        return await self._count(self.paths.zombies)

    async def participants(self) -> List[str]:
        """Addresses of the live participants"""
        addresses = []
        for participant in await self.coordinator.children(self.paths.participants):
            try:
                data = await self.coordinator.data(self.paths.participant_node(participant))
            except NoNodeError:
                continue
            addresses.append(data.decode("utf-8") if data else UNKNOWN_PARTICIPANT_ADDRESS)
        return addresses

    async def _count(self, path: str) -> int:
        stat = await self.coordinator.stat(path)
        return stat.num_children if stat is not None else 0

    def __repr__(self) -> str:
        return f"ZkObjectPool(name={self.config.name!r}, participant={self.participant_id!r})"
