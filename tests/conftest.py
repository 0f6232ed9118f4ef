"""
Global pytest configuration and fixtures for zkpool tests
"""

import logging
import sys
from pathlib import Path

import pytest

# Add the src directory to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from zkpool.coordinator.memory import InMemoryCoordinator, InMemoryEnsemble
from zkpool.pool.object_pool import ZkObjectPool

from pool_factories import ResourceFactory, make_config

# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Suppress noisy logs during testing
logging.getLogger('kazoo').setLevel(logging.WARNING)


@pytest.fixture
def ensemble():
    """A fresh coordinator tree shared by every participant of one test"""
    return InMemoryEnsemble()


@pytest.fixture
def factory():
    return ResourceFactory()


@pytest.fixture
def coordinator(ensemble):
    coordinator = InMemoryCoordinator(ensemble)
    coordinator.RETRY_DELAY = 0.01
    return coordinator


@pytest.fixture
async def make_pool(ensemble, factory):
    """
    Build and initialize pool participants against the test ensemble. Every
    participant is shut down at teardown.
    """
    pools = []

    async def _make(factory=factory, initialize=True, **kwargs) -> ZkObjectPool:
        coordinator = InMemoryCoordinator(ensemble)
        coordinator.RETRY_DELAY = 0.01
        pool = ZkObjectPool(make_config(**kwargs), factory=factory, coordinator=coordinator)
        pools.append(pool)
        if initialize:
            await pool.initialize()
        return pool

    yield _make

    for pool in pools:
        await pool.shutdown()


# Custom markers for test categorization
def pytest_configure(config):
    """Configure custom pytest markers"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Tests running several pool participants")
    config.addinivalue_line("markers", "slow: Tests that take more than 5 seconds")
