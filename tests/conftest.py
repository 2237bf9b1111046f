"""
Shared fixtures for the rollout controller tests
"""
import pytest
import pytest_asyncio

from cache_manager import CacheManager
from deployment import (
    DeploymentOrchestrator,
    FeatureFlagManager,
    InMemoryConfigStore,
    LogNotifier,
    MetricsAggregator,
    VariantAssigner,
)


@pytest.fixture
def store():
    return InMemoryConfigStore()


@pytest.fixture
def flags():
    return FeatureFlagManager(assigner=VariantAssigner())


@pytest.fixture
def aggregator():
    return MetricsAggregator()


@pytest.fixture
def cache():
    cache = CacheManager(redis_url=None, namespace="rollout-test")
    yield cache
    cache.close()


@pytest.fixture
def notifier():
    return LogNotifier()


@pytest_asyncio.fixture
async def orchestrator(store, flags, aggregator, cache, notifier):
    """Controller whose monitor never ticks on its own during a test"""
    orchestrator = DeploymentOrchestrator(
        store,
        flags=flags,
        aggregator=aggregator,
        cache=cache,
        notifier=notifier,
        monitor_interval_seconds=3600,
    )
    yield orchestrator
    await orchestrator.shutdown()
