"""
Pytest configuration and fixtures for topic gateway tests.

Both membership backends run the same contract tests through the
parametrized `store` fixture. The Redis backend uses FakeRedis.
"""

import pytest

from topic_gateway.components.connection.locks import LockManager
from topic_gateway.components.connection.registry import ConnectionRegistry, SessionPolicy
from topic_gateway.components.membership.memory import InMemoryMembershipStore
from topic_gateway.components.membership.redis_store import RedisMembershipStore
from topic_gateway.components.metrics.collector import MetricsCollector
from topic_gateway.components.resilience.circuit_breaker import CircuitBreaker
from topic_gateway.components.resilience.retry import RetryConfig
from topic_gateway.connection_manager import ConnectionManager

from tests.fakes import FakeClock, FakeRedis


# Fast retries so outage tests do not sleep
FAST_RETRY = RetryConfig(initial_delay=0.001, max_delay=0.002, max_attempts=2)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def lock_manager():
    return LockManager()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock=clock)


@pytest.fixture
def memory_store(lock_manager, clock):
    return InMemoryMembershipStore(lock_manager=lock_manager, clock=clock)


@pytest.fixture
def redis_store(lock_manager, fake_redis):
    return RedisMembershipStore(
        fake_redis,
        lock_manager=lock_manager,
        retry_config=FAST_RETRY,
        circuit_breaker=CircuitBreaker("test_redis", failure_threshold=1000),
    )


@pytest.fixture(params=["memory", "redis"])
def store(request):
    """Membership store, once per backend."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture(params=["memory", "redis"])
def expiring_store(request, lock_manager, clock):
    """Membership store with a 10 second default TTL, once per backend."""
    if request.param == "memory":
        return InMemoryMembershipStore(lock_manager=lock_manager, default_ttl=10, clock=clock)
    return RedisMembershipStore(
        FakeRedis(clock=clock),
        lock_manager=lock_manager,
        default_ttl=10,
        retry_config=FAST_RETRY,
        circuit_breaker=CircuitBreaker("test_redis", failure_threshold=1000),
    )


@pytest.fixture
def registry():
    return ConnectionRegistry(policy=SessionPolicy.SINGLE)


@pytest.fixture
def multi_registry():
    return ConnectionRegistry(policy=SessionPolicy.MULTI, max_connections_per_client=3)


@pytest.fixture
def metrics():
    return MetricsCollector()


def build_manager(store, lock_manager, registry=None, **kwargs) -> ConnectionManager:
    return ConnectionManager(
        store=store,
        registry=registry or ConnectionRegistry(),
        lock_manager=lock_manager,
        **kwargs,
    )


@pytest.fixture
def manager(store, lock_manager):
    """ConnectionManager over each backend, single-session policy."""
    return build_manager(store, lock_manager, send_timeout=0.2)


@pytest.fixture
def multi_manager(store, lock_manager, multi_registry):
    """ConnectionManager over each backend, multi-session policy."""
    return build_manager(store, lock_manager, registry=multi_registry, send_timeout=0.2)
