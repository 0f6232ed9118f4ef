"""
Tests for ZkObjectPool

Participants run against a shared InMemoryEnsemble, so several pools in one
test behave like processes sharing one ZooKeeper ensemble.
"""

import asyncio

import pytest

from zkpool.core.errors import ConfigurationError, ErrorCode, NoNodeError, PoolShutdownError
from zkpool.coordinator.memory import InMemoryCoordinator
from zkpool.pool.object_pool import ZkObjectPool

from pool_factories import Resource, ResourceFactory, make_config, pool_counts


async def assert_accounting(pool):
    """Every live object is in exactly one bucket; zombies keep their used marker"""
    master = set(await pool.coordinator.children(pool.paths.master))
    unused = set(await pool.coordinator.children(pool.paths.unused))
    used = set(await pool.coordinator.children(pool.paths.used))
    zombies = set(await pool.coordinator.children(pool.paths.zombies))

    assert unused.isdisjoint(used)
    assert unused | used == master
    assert zombies <= used
    assert len(used) <= pool.config.size


class TestInitialization:
    """Test pool bootstrap and membership"""

    async def test_init_and_fill(self, make_pool, factory):
        pool = await make_pool(size=5, init_size=5)

        assert await pool_counts(pool) == {'master': 5, 'unused': 5, 'used': 0, 'zombies': 0}
        assert len(await pool.participants()) == 1
        assert factory.created == 5
        assert pool.is_initialized
        await assert_accounting(pool)

    async def test_schema_created(self, make_pool, ensemble):
        pool = await make_pool()

        for path in pool.paths.all():
            assert path in ensemble.node_paths()

    async def test_second_participant_does_not_refill(self, make_pool, factory):
        first = await make_pool(size=10, init_size=3)
        second = await make_pool(size=10, init_size=3)

        assert await second.size() == 3
        assert factory.created == 3
        assert len(await first.participants()) == 2
        assert first.participant_id != second.participant_id

    async def test_concurrent_initialize(self, ensemble, factory):
        pools = [
            ZkObjectPool(make_config(size=10, init_size=5), factory=factory,
                         coordinator=InMemoryCoordinator(ensemble))
            for _ in range(2)
        ]
        try:
            await asyncio.gather(*(pool.initialize() for pool in pools))

            assert await pools[0].size() == 5
            assert factory.created == 5
            assert len(await pools[1].participants()) == 2
        finally:
            for pool in pools:
                await pool.shutdown()

    async def test_initialize_is_idempotent(self, make_pool, factory):
        pool = await make_pool(size=5, init_size=2)
        await pool.initialize()

        assert factory.created == 2
        assert len(await pool.participants()) == 1

    async def test_factory_required(self, make_pool):
        pool = await make_pool(factory=None, initialize=False)

        with pytest.raises(ConfigurationError) as exc_info:
            await pool.initialize()
        assert exc_info.value.error_code is ErrorCode.FACTORY_MISSING

        pool.set_factory(ResourceFactory())
        await pool.initialize()
        assert pool.is_initialized

    async def test_invalid_config_rejected(self, ensemble):
        with pytest.raises(ConfigurationError):
            ZkObjectPool(make_config(size=0), coordinator=InMemoryCoordinator(ensemble))
        with pytest.raises(ConfigurationError):
            ZkObjectPool(None)

    async def test_initialize_after_shutdown(self, make_pool):
        pool = await make_pool()
        await pool.shutdown()

        with pytest.raises(PoolShutdownError):
            await pool.initialize()

    async def test_participant_address(self, make_pool, monkeypatch):
        monkeypatch.setattr("zkpool.pool.object_pool.get_address", lambda: "10.1.2.3")
        pool = await make_pool()

        assert await pool.participants() == ["10.1.2.3"]

    async def test_participant_without_address(self, make_pool):
        pool = await make_pool()
        await pool.coordinator.create_ephemeral_sequential(f"{pool.paths.participants}/")

        assert "address-unknown" in await pool.participants()

    async def test_context_manager(self, ensemble, factory):
        pool = ZkObjectPool(make_config(init_size=1), factory=factory,
                            coordinator=InMemoryCoordinator(ensemble))

        async with pool:
            assert await pool.size() == 1

        assert pool.is_shutdown
        assert ensemble.node_paths() == []


class TestBorrowReturn:
    """Test borrowing, returning and capacity"""

    async def test_borrow_to_exhaustion(self, make_pool):
        pool = await make_pool(size=5, init_size=5)

        borrowed = [await pool.borrow() for _ in range(5)]

        assert all(isinstance(obj, Resource) for obj in borrowed)
        assert len({obj.serial for obj in borrowed}) == 5
        assert await pool.borrow() is None
        assert await pool.used() == 5
        assert await pool.unused() == 0
        assert pool.borrowed_count == 5
        await assert_accounting(pool)

    async def test_lazy_growth(self, make_pool, factory):
        pool = await make_pool(size=5, init_size=0)

        results = [await pool.borrow() for _ in range(6)]

        assert all(obj is not None for obj in results[:5])
        assert results[5] is None
        assert await pool.size() == 5
        assert await pool.used() == 5
        assert factory.created == 5

    async def test_used_markers_are_ephemeral(self, make_pool):
        pool = await make_pool(size=2, init_size=1)
        await pool.borrow()
        await pool.borrow()

        for node in await pool.coordinator.children(pool.paths.used):
            assert (await pool.coordinator.stat(pool.paths.used_node(node))).is_ephemeral
        for node in await pool.coordinator.children(pool.paths.master):
            assert not (await pool.coordinator.stat(pool.paths.master_node(node))).is_ephemeral

    async def test_return_then_borrow(self, make_pool):
        pool = await make_pool(size=1, init_size=1)

        obj = await pool.borrow()
        assert await pool.borrow() is None

        await pool.return_object(obj)
        assert await pool_counts(pool) == {'master': 1, 'unused': 1, 'used': 0, 'zombies': 0}
        assert pool.borrowed_count == 0

        again = await pool.borrow()
        assert again is not None
        assert again.serial == obj.serial

    async def test_return_unknown_object(self, make_pool, caplog):
        pool = await make_pool(size=2, init_size=1)

        await pool.return_object(Resource(serial=99))

        assert "No node found to return object" in caplog.text
        assert await pool.unused() == 1

    async def test_unhashable_objects(self, ensemble):
        class ListFactory(ResourceFactory):
            async def create(self):
                self.created += 1
                return [self.created]

            async def validate(self, obj):
                return True

            def serialize(self, obj):
                return str(obj[0]).encode()

            def deserialize(self, data):
                return [int(data)]

            async def destroy(self, obj):
                self.destroyed.append(obj[0])

        pool = ZkObjectPool(make_config(size=2), factory=ListFactory(),
                            coordinator=InMemoryCoordinator(ensemble))
        async with pool:
            obj = await pool.borrow()
            assert obj == [1]
            await pool.return_object(obj)
            assert await pool.unused() == 1

    async def test_invalid_objects_are_replaced(self, make_pool, factory):
        factory.validation_script = [False, False]
        pool = await make_pool(size=5, init_size=2)

        first = await pool.borrow()
        second = await pool.borrow()

        assert first is not None and second is not None
        assert factory.created == 4
        assert len(factory.destroyed) == 2
        assert await pool.size() == 2
        assert await pool.used() == 2
        await assert_accounting(pool)

    async def test_validation_error_counts_as_invalid(self, make_pool, factory):
        pool = await make_pool(size=2, init_size=1)

        def explode(obj):
            factory.validator = None
            raise RuntimeError("validator crashed")

        factory.validator = explode
        obj = await pool.borrow()

        assert obj is not None
        assert factory.destroyed == [1]

    async def test_permanently_invalid_factory_gives_up(self, make_pool, factory):
        factory.valid = False
        pool = await make_pool(size=2, init_size=0)

        assert await pool.borrow() is None
        assert factory.created == 4
        assert await pool.size() == 0

    async def test_borrow_never_raises(self, make_pool, factory):
        pool = await make_pool(size=2, init_size=0)
        factory.fail_create = True

        assert await pool.borrow() is None

        factory.fail_create = False
        pool.coordinator.inject_connection_loss(3)
        assert await pool.borrow() is None

    async def test_unreadable_object_is_released(self, make_pool, factory):
        pool = await make_pool(size=1, init_size=1)
        deserialize = factory.deserialize

        def corrupt(data):
            factory.deserialize = deserialize
            raise ValueError("corrupt payload")

        factory.deserialize = corrupt

        assert await pool.borrow() is None
        assert await pool_counts(pool) == {'master': 1, 'unused': 1, 'used': 0, 'zombies': 0}
        assert pool.borrowed_count == 0

        assert await pool.borrow() is not None

    async def test_claim_on_missing_master_is_released(self, make_pool):
        pool = await make_pool(size=2, init_size=1)
        node = (await pool.coordinator.children(pool.paths.unused))[0]
        await pool.coordinator.delete(pool.paths.master_node(node))

        with pytest.raises(NoNodeError):
            await pool.borrow_specific(node)

        assert await pool.used() == 0
        assert await pool.unused() == 0

    async def test_borrow_after_shutdown(self, make_pool):
        pool = await make_pool(size=2, init_size=2)
        await pool.shutdown()

        assert await pool.borrow() is None

    async def test_borrow_reregisters_after_session_expiry(self, make_pool):
        pool = await make_pool(size=2, init_size=1)
        old_participant = pool.participant_id

        pool.coordinator.expire_session()
        assert await pool.participants() == []

        assert await pool.borrow() is not None
        assert len(await pool.participants()) == 1
        assert pool.participant_id != old_participant

    async def test_concurrent_borrowers_never_share_objects(self, make_pool):
        pools = [await make_pool(size=6, init_size=6) for _ in range(3)]

        results = await asyncio.gather(*(pool.borrow() for pool in pools for _ in range(2)))

        serials = [obj.serial for obj in results if obj is not None]
        assert len(serials) == 6
        assert len(set(serials)) == 6
        assert await pools[0].used() == 6
        await assert_accounting(pools[0])

    async def test_borrow_specific(self, make_pool):
        pool = await make_pool(size=3, init_size=2)
        node = sorted(await pool.coordinator.children(pool.paths.unused))[0]

        obj = await pool.borrow_specific(node)

        assert obj is not None
        assert await pool.borrow_specific(node) is None
        assert await pool.used() == 1

    async def test_hit_and_miss_metrics(self, make_pool):
        pool = await make_pool(size=2, init_size=1)
        node = (await pool.coordinator.children(pool.paths.unused))[0]

        await pool.borrow_specific(node)
        await pool.borrow_specific(node)

        snapshot = pool.metrics.snapshot()
        assert snapshot['counters'] == {'hit': 1, 'miss': 1}
        assert snapshot['timers']['mark-used']['count'] == 2
        assert snapshot['timers']['initialize']['count'] == 1

    async def test_select_index_prefers_oldest(self):
        pool = ZkObjectPool(make_config(size=20), coordinator=InMemoryCoordinator())
        candidates = [str(i) for i in range(10)]

        for _ in range(50):
            assert 0 <= pool._select_index(candidates, used=0) < 10
            assert 0 <= pool._select_index(candidates, used=10) < 4
            assert 0 <= pool._select_index(candidates, used=1) < 10
            assert 0 <= pool._select_index(candidates, used=30) < 10


class TestInvalidate:
    """Test destroying borrowed objects"""

    async def test_invalidate_removes_object(self, make_pool, factory):
        pool = await make_pool(size=3, init_size=1)
        obj = await pool.borrow()

        assert await pool.invalidate(obj)

        assert factory.destroyed == [obj.serial]
        assert await pool_counts(pool) == {'master': 0, 'unused': 0, 'used': 0, 'zombies': 0}
        assert pool.borrowed_count == 0

    async def test_invalidate_unknown_object(self, make_pool, factory):
        pool = await make_pool(size=3, init_size=1)

        assert not await pool.invalidate(Resource(serial=42))
        assert factory.destroyed == []

    async def test_zombie_on_destroy(self, make_pool, factory):
        pool = await make_pool(size=3, init_size=1)
        obj = await pool.borrow()
        factory.zombie_on_destroy = True

        assert not await pool.invalidate(obj)

        assert await pool_counts(pool) == {'master': 1, 'unused': 0, 'used': 1, 'zombies': 1}
        assert pool.borrowed_count == 0
        await assert_accounting(pool)

    async def test_failed_destroy_keeps_object(self, make_pool, factory):
        pool = await make_pool(size=3, init_size=1)
        obj = await pool.borrow()
        factory.fail_destroy = True

        assert not await pool.invalidate(obj)
        assert await pool.used() == 1
        assert pool.borrowed_count == 1


class TestShutdown:
    """Test leaving the pool"""

    async def test_last_participant_tears_down_pool(self, make_pool, factory, ensemble):
        pool = await make_pool(size=5, init_size=5)
        borrowed = [await pool.borrow() for _ in range(5)]
        for obj in borrowed:
            await pool.return_object(obj)

        await pool.shutdown()

        assert ensemble.node_paths() == []
        assert sorted(factory.destroyed) == [1, 2, 3, 4, 5]
        assert pool.is_shutdown
        assert pool.coordinator.is_closed

    async def test_pool_kept_while_participants_remain(self, make_pool, factory, ensemble):
        first = await make_pool(size=5, init_size=3)
        second = await make_pool(size=5, init_size=3)

        await first.shutdown()

        assert factory.destroyed == []
        assert await second.size() == 3
        assert len(await second.participants()) == 1

        await second.shutdown()
        assert ensemble.node_paths() == []
        assert len(factory.destroyed) == 3

    async def test_shutdown_with_borrowed_objects(self, make_pool, factory, ensemble, caplog):
        pool = await make_pool(size=3, init_size=2)
        await pool.borrow()

        await pool.shutdown()

        assert "objects still in use" in caplog.text
        assert pool.borrowed_count == 0
        assert len(factory.destroyed) == 2
        assert ensemble.node_paths() == []

    async def test_zombie_signals_ignored_during_shutdown(self, make_pool, factory, ensemble):
        pool = await make_pool(size=3, init_size=2)
        factory.zombie_on_destroy = True

        await pool.shutdown()

        assert ensemble.node_paths() == []

    async def test_shutdown_is_idempotent(self, make_pool):
        pool = await make_pool(size=3, init_size=1)

        await pool.shutdown()
        await pool.shutdown()

        assert pool.is_shutdown

    async def test_shutdown_before_initialize(self, make_pool, ensemble):
        pool = await make_pool(initialize=False)

        await pool.shutdown()

        assert pool.is_shutdown
        assert ensemble.node_paths() == []

    async def test_borrowed_objects_handed_back_on_shutdown(self, make_pool, factory):
        leaving = await make_pool(size=5, init_size=3)
        staying = await make_pool(size=5, init_size=3)
        await leaving.borrow()

        await leaving.shutdown()

        assert factory.destroyed == []
        assert await pool_counts(staying) == {'master': 3, 'unused': 3, 'used': 0, 'zombies': 0}
