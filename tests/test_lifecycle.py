"""
Tests for the lifecycle coordinator through ConnectionManager.

Covers registration, session replacement, cascade cleanup, deferred
cascades during backend outages, membership restore and shutdown.
"""

import pytest

from topic_gateway.components.connection.registry import ConnectionRegistry, SessionPolicy
from topic_gateway.components.core.constants import WSCloseCode, connection_topic
from topic_gateway.components.core.errors import (
    ConnectionLimitError,
    RegistrationConflictError,
    TransientBackendError,
)
from topic_gateway.components.membership.redis_store import RedisMembershipStore

from tests.conftest import FAST_RETRY, build_manager
from tests.fakes import FakeConnection, FakeRedis


class TestOpen:
    @pytest.mark.asyncio
    async def test_open_registers_and_tracks_connection(self, manager):
        conn = FakeConnection("c1")

        result = await manager.on_open("clientA", conn)

        assert result.is_first
        assert manager.lookup("clientA") == {conn}
        assert await manager.is_member(connection_topic("c1"), "clientA")
        assert await manager.lookup_client_by_connection("c1") == "clientA"

    @pytest.mark.asyncio
    async def test_connection_resolvable_from_store_alone(self, manager, store, lock_manager):
        await manager.on_open("clientA", FakeConnection("c1"))

        # A second process sharing the store has no registry entry
        other = build_manager(store, lock_manager)

        assert await other.lookup_client_by_connection("c1") == "clientA"
        assert await other.lookup_client_by_connection("unknown") is None

    @pytest.mark.asyncio
    async def test_default_topics_seeded(self, store, lock_manager):
        manager = build_manager(store, lock_manager, default_topics=("lobby", "news"))

        result = await manager.on_open("clientA", FakeConnection("c1"))

        assert result.seeded == ("lobby", "news")
        assert await manager.members("lobby") == {"clientA"}
        assert await manager.members("news") == {"clientA"}

    @pytest.mark.asyncio
    async def test_empty_client_id_rejected(self, manager):
        with pytest.raises(ValueError):
            await manager.on_open("", FakeConnection("c1"))

    @pytest.mark.asyncio
    async def test_conflicting_connection_id_rejected(self, manager):
        conn = FakeConnection("c1")
        await manager.on_open("clientA", conn)

        with pytest.raises(RegistrationConflictError) as exc_info:
            await manager.on_open("clientB", conn)

        assert exc_info.value.owner == "clientA"
        assert manager.lookup("clientB") == set()
        assert manager.metrics.get_snapshot()["connections_rejected_conflict"] == 1

    @pytest.mark.asyncio
    async def test_connection_limit(self, multi_manager):
        for i in range(3):
            await multi_manager.on_open("clientA", FakeConnection(f"c{i}"))

        with pytest.raises(ConnectionLimitError) as exc_info:
            await multi_manager.on_open("clientA", FakeConnection("c3"))

        assert exc_info.value.limit == 3
        assert len(multi_manager.lookup("clientA")) == 3


class TestSessionReplacement:
    @pytest.mark.asyncio
    async def test_new_connection_replaces_old(self, manager):
        old, new = FakeConnection("c1"), FakeConnection("c2")
        await manager.on_open("clientA", old)
        await manager.join("room:42", "clientA")

        result = await manager.on_open("clientA", new)

        assert result.replaced == ("c1",)
        assert old.closed_with == (WSCloseCode.SESSION_REPLACED, "Session replaced")
        assert manager.lookup("clientA") == {new}
        # Memberships belong to the client, not the connection
        assert await manager.is_member("room:42", "clientA")
        assert not await manager.is_member(connection_topic("c1"), "clientA")
        assert await manager.is_member(connection_topic("c2"), "clientA")

    @pytest.mark.asyncio
    async def test_close_of_replaced_connection_is_noop(self, manager):
        old = FakeConnection("c1")
        await manager.on_open("clientA", old)
        await manager.join("room:42", "clientA")
        await manager.on_open("clientA", FakeConnection("c2"))

        result = await manager.on_close("c1")

        assert result.was_registered is False
        assert await manager.is_member("room:42", "clientA")


class TestClose:
    @pytest.mark.asyncio
    async def test_last_close_cascades(self, manager, lock_manager):
        await manager.on_open("clientA", FakeConnection("c1"))
        await manager.join("room:42", "clientA")
        await manager.join("room:7", "clientA")
        await manager.join("room:42", "clientB")

        result = await manager.on_close("c1")

        assert result.was_last
        assert result.cascaded == ("connection:c1", "room:42", "room:7")
        assert await manager.topics_of("clientA") == set()
        assert await manager.members("room:42") == {"clientB"}
        assert lock_manager.client_lock_count == 0
        assert (await manager.snapshot()).is_consistent()

    @pytest.mark.asyncio
    async def test_duplicate_close_is_noop(self, manager):
        await manager.on_open("clientA", FakeConnection("c1"))

        await manager.on_close("c1")
        result = await manager.on_close("c1")

        assert result.was_registered is False
        assert manager.metrics.get_snapshot()["connections_closed"] == 1

    @pytest.mark.asyncio
    async def test_non_last_close_keeps_memberships(self, multi_manager):
        await multi_manager.on_open("clientA", FakeConnection("c1"))
        await multi_manager.on_open("clientA", FakeConnection("c2"))
        await multi_manager.join("room:42", "clientA")

        result = await multi_manager.on_close("c1")

        assert result.was_last is False
        assert await multi_manager.is_member("room:42", "clientA")
        assert not await multi_manager.is_member(connection_topic("c1"), "clientA")

        await multi_manager.on_close("c2")
        assert await multi_manager.topics_of("clientA") == set()


class TestBackendOutage:
    """Redis backend with injected outages."""

    @pytest.mark.asyncio
    async def test_cascade_deferred_and_retried(self, redis_store, lock_manager, fake_redis):
        manager = build_manager(redis_store, lock_manager)
        await manager.on_open("clientA", FakeConnection("c1"))
        await manager.join("room:42", "clientA")

        fake_redis.outage = True
        result = await manager.on_close("c1")

        assert result.deferred is True
        assert manager.lifecycle.pending_cascades == {"clientA"}

        # Still failing: stays queued
        assert (await manager.run_maintenance())["cascades_retried"] == 0
        assert manager.lifecycle.pending_cascades == {"clientA"}

        fake_redis.outage = False
        maintenance = await manager.run_maintenance()

        assert maintenance["cascades_retried"] == 1
        assert manager.lifecycle.pending_cascades == frozenset()
        assert await manager.topics_of("clientA") == set()
        assert await manager.members("room:42") == set()

        snapshot = manager.metrics.get_snapshot()
        assert snapshot["cascades_deferred"] == 1
        assert snapshot["cascades_retried"] == 1
        assert snapshot["store_errors"] >= 2

    @pytest.mark.asyncio
    async def test_reconnect_cancels_pending_cascade(self, redis_store, lock_manager, fake_redis):
        manager = build_manager(redis_store, lock_manager)
        await manager.on_open("clientA", FakeConnection("c1"))
        await manager.join("room:42", "clientA")
        fake_redis.outage = True
        await manager.on_close("c1")
        fake_redis.outage = False

        result = await manager.on_open("clientA", FakeConnection("c2"))

        assert manager.lifecycle.pending_cascades == frozenset()
        assert result.restored == ("room:42",)
        assert await manager.topics_of("clientA") == {"room:42", "connection:c2"}
        assert manager.metrics.get_snapshot()["cascades_cancelled"] == 1

    @pytest.mark.asyncio
    async def test_failed_open_is_rolled_back(self, redis_store, lock_manager, fake_redis):
        manager = build_manager(redis_store, lock_manager)
        fake_redis.outage = True

        with pytest.raises(TransientBackendError):
            await manager.on_open("clientA", FakeConnection("c1"))

        assert manager.lookup("clientA") == set()
        assert manager.registry.connection_count == 0
        assert manager.metrics.get_snapshot()["connections_rejected_backend"] == 1


class TestRestore:
    @pytest.mark.asyncio
    async def test_memberships_survive_restart(self, store, lock_manager):
        first = build_manager(store, lock_manager)
        conn = FakeConnection("c1")
        await first.on_open("clientA", conn)
        await first.join("room:42", "clientA")

        closed = await first.shutdown()

        assert closed == 1
        assert conn.closed_with == (WSCloseCode.GOING_AWAY, "Server shutting down")
        assert await store.is_member("room:42", "clientA")

        second = build_manager(store, lock_manager)
        result = await second.on_open("clientA", FakeConnection("c2"))

        assert result.restored == ("room:42",)
        assert await second.topics_of("clientA") == {"room:42", "connection:c2"}

    @pytest.mark.asyncio
    async def test_half_edges_removed_on_restore(self, redis_store, lock_manager, fake_redis):
        manager = build_manager(redis_store, lock_manager)
        await manager.join("room:42", "clientA")
        # Member index points at a topic whose set no longer lists the client
        await fake_redis.sadd("member:clientA", "expired-topic")

        result = await manager.on_open("clientA", FakeConnection("c1"))

        assert result.restored == ("room:42",)
        assert "expired-topic" not in await manager.topics_of("clientA")
        assert (await manager.snapshot()).is_consistent()

    @pytest.mark.asyncio
    async def test_restore_disabled(self, store, lock_manager):
        await store.join("room:42", "clientA")
        manager = build_manager(store, lock_manager, restore_memberships=False)

        result = await manager.on_open("clientA", FakeConnection("c1"))

        assert result.restored == ()


class TestShutdownAndMaintenance:
    @pytest.mark.asyncio
    async def test_open_after_shutdown_rejected(self, manager):
        await manager.shutdown()

        assert manager.is_shutting_down
        with pytest.raises(ConnectionError):
            await manager.on_open("clientA", FakeConnection("c1"))

    @pytest.mark.asyncio
    async def test_reap_dead_connections(self, manager):
        conn = FakeConnection("c1")
        await manager.on_open("clientA", conn)
        await manager.join("room:42", "clientA")

        manager.lifecycle.mark_dead(conn)
        assert manager.get_stats()["dead_connections_pending"] == 1

        result = await manager.run_maintenance()

        assert result["reaped"] == 1
        assert conn.closed_with == (WSCloseCode.SERVER_ERROR, "Delivery failed")
        assert manager.lookup("clientA") == set()
        assert await manager.members("room:42") == set()

    @pytest.mark.asyncio
    async def test_stats_shape(self, manager):
        await manager.on_open("clientA", FakeConnection("c1"))

        stats = manager.get_stats()

        assert stats["total_connections"] == 1
        assert stats["clients_connected"] == 1
        assert stats["pending_cascades"] == 0
        assert stats["store"]["backend"] in ("memory", "redis")
        assert stats["metrics"]["connections_opened"] == 1


class TestMembershipExpiry:
    """Connected clients keep their memberships; departed ones expire."""

    @pytest.mark.asyncio
    async def test_cascade_complete_when_topic_outlives_member_index(
        self, expiring_store, lock_manager, clock
    ):
        manager = build_manager(expiring_store, lock_manager)
        await manager.on_open("clientA", FakeConnection("a1"))
        await manager.join("room:42", "clientA")

        # clientB keeps the topic key alive past clientA's own join deadline
        clock.advance(8)
        await manager.on_open("clientB", FakeConnection("b1"))
        await manager.join("room:42", "clientB")
        maintenance = await manager.run_maintenance()
        assert maintenance["refreshed"] == 2

        clock.advance(4)
        result = await manager.on_close("a1")

        assert "room:42" in result.cascaded
        assert await manager.members("room:42") == {"clientB"}
        assert await manager.is_member("room:42", "clientA") is False
        assert (await manager.snapshot()).is_consistent()

    @pytest.mark.asyncio
    async def test_connected_client_survives_many_ttls(self, expiring_store, lock_manager, clock):
        manager = build_manager(expiring_store, lock_manager)
        await manager.on_open("clientA", FakeConnection("a1"))
        await manager.join("room:42", "clientA")

        for _ in range(5):
            clock.advance(8)
            await manager.run_maintenance()

        assert await manager.topics_of("clientA") == {"room:42", connection_topic("a1")}
        assert await manager.members("room:42") == {"clientA"}

    @pytest.mark.asyncio
    async def test_unregistered_client_not_refreshed(self, expiring_store, lock_manager, clock):
        manager = build_manager(expiring_store, lock_manager)
        # Left behind by a process that is gone
        await expiring_store.join("room:42", "ghost")

        clock.advance(8)
        assert (await manager.run_maintenance())["refreshed"] == 0
        clock.advance(4)

        assert await manager.topics_of("ghost") == set()
        assert await manager.members("room:42") == set()

    @pytest.mark.asyncio
    async def test_refresh_stops_on_outage(self, lock_manager, clock):
        fake_redis = FakeRedis(clock=clock)
        store = RedisMembershipStore(
            fake_redis, lock_manager=lock_manager, default_ttl=10, retry_config=FAST_RETRY
        )
        manager = build_manager(store, lock_manager)
        await manager.on_open("clientA", FakeConnection("a1"))

        fake_redis.outage = True
        assert await manager.lifecycle.refresh_memberships() == 0
        assert manager.metrics.get_snapshot()["store_errors"] == 1


def test_registry_policy_from_string():
    assert ConnectionRegistry(policy="multi").policy is SessionPolicy.MULTI
