"""
Tests for the pool path schema and the error registry
"""

from zkpool.core.errors import (
    ConnectionLossError,
    ErrorCode,
    ErrorDomain,
    NodeExistsError,
    NoNodeError,
    PoolShutdownError,
    ZkPoolError,
    ZombieError,
)
from zkpool.core.paths import PoolPaths


class TestPoolPaths:

    def test_layout(self):
        paths = PoolPaths("orders")

        assert paths.base == "/orders"
        assert paths.master == "/orders/master"
        assert paths.unused == "/orders/unused"
        assert paths.used == "/orders/used"
        assert paths.participants == "/orders/participants"
        assert paths.crash_cleanup_lock == "/orders/crash-cleanup-lock"
        assert paths.shutdown_lock == "/orders/shutdown-lock"
        assert paths.eviction_lock == "/orders/eviction-lock"
        assert paths.zombies == "/orders/zombies"
        assert paths.zombies_lock == "/orders/zombies-lock"

    def test_all_starts_with_base_and_matches_dict(self):
        paths = PoolPaths("orders")

        assert paths.all()[0] == "/orders"
        assert len(paths.all()) == 10
        assert sorted(paths.all()) == sorted(paths.to_dict().values())

    def test_node_helpers(self):
        paths = PoolPaths("orders")

        assert paths.master_node("0000000003") == "/orders/master/0000000003"
        assert paths.used_node("7") == "/orders/used/7"
        assert paths.zombie_node("7") == "/orders/zombies/7"
        assert PoolPaths.node_id("/orders/master/0000000003") == "0000000003"


class TestErrors:

    def test_codes_and_domains(self):
        error = NoNodeError("/orders/master/1")

        assert error.error_code is ErrorCode.NODE_NOT_FOUND
        assert error.domain is ErrorDomain.COORDINATOR
        assert error.path == "/orders/master/1"
        assert "/orders/master/1" in str(error)
        assert str(error).startswith("[ZP2003]")

    def test_should_retry(self):
        assert ConnectionLossError("gone").should_retry
        assert not NodeExistsError("/x").should_retry

    def test_zombie_error(self):
        error = ZombieError(context={"serial": 3})

        assert error.domain is ErrorDomain.FACTORY
        assert str(error) == "[ZP4001] Object is a zombie (serial=3)"

    def test_cause_is_kept(self):
        cause = RuntimeError("socket closed")
        error = ZkPoolError("failed", cause=cause)

        assert error.cause is cause
        assert error.error_code is ErrorCode.COORDINATOR_FAILURE

    def test_pool_errors(self):
        assert PoolShutdownError("closed").domain is ErrorDomain.POOL
