"""
Shared fixtures for cache flush service tests.
"""

import pytest

from shared.test_helpers import STANDARD_LAYERS, FakeRedis, RecordingRebuildHandler, StubExecutor, TestDataFactory
from service_cache_flush.app.executors.base import ExecutorRegistry
from service_cache_flush.app.registry import StaticLayerRegistry
from service_cache_flush.app.tracking import InMemoryFlushStore


@pytest.fixture
def layer_configs():
    return TestDataFactory.create_layer_configs()


@pytest.fixture
def registry(layer_configs):
    return StaticLayerRegistry(layer_configs)


@pytest.fixture
def store():
    return InMemoryFlushStore()


@pytest.fixture
def stub_executors():
    """One succeeding StubExecutor per standard layer; layer N clears 10*N items and N MB."""
    return {
        layer_id: StubExecutor(layer_id, items=10 * index, size_bytes=1024 * 1024 * index)
        for index, layer_id in enumerate(STANDARD_LAYERS, start=1)
    }


@pytest.fixture
def executors(stub_executors):
    registry = ExecutorRegistry()
    for executor in stub_executors.values():
        registry.register(executor)
    return registry


@pytest.fixture
def rebuild_handler():
    return RecordingRebuildHandler()


@pytest.fixture
def fake_redis():
    return FakeRedis()
