"""
Tests for BroadcastEngine fan-out and self-healing eviction.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from topic_gateway.components.core.errors import TransientBackendError
from topic_gateway.core.connection import DeliveryOutcome, encode_message

from tests.conftest import build_manager
from tests.fakes import FakeConnection


class TestDelivery:
    @pytest.mark.asyncio
    async def test_publish_reaches_every_member(self, manager):
        a, b = FakeConnection("a1"), FakeConnection("b1")
        await manager.on_open("clientA", a)
        await manager.on_open("clientB", b)
        await manager.join("room:42", "clientA")
        await manager.join("room:42", "clientB")

        report = await manager.publish("room:42", {"text": "hi"})

        assert report.recipients == 2
        assert report.delivered == 2
        assert report.evicted == []
        assert a.sent == ['{"text":"hi"}']
        assert b.sent == ['{"text":"hi"}']

    @pytest.mark.asyncio
    async def test_publish_to_empty_topic(self, manager):
        report = await manager.publish("nobody-here", "ping")

        assert report.recipients == 0
        assert report.delivered == 0

    @pytest.mark.asyncio
    async def test_every_connection_of_a_member_receives(self, multi_manager):
        conns = [FakeConnection(f"c{i}") for i in range(3)]
        for conn in conns:
            await multi_manager.on_open("clientA", conn)
        await multi_manager.join("room:42", "clientA")

        report = await multi_manager.publish("room:42", "hello")

        assert report.delivered == 3
        assert all(conn.sent == ["hello"] for conn in conns)

    @pytest.mark.asyncio
    async def test_batches_cover_all_members(self, store, lock_manager):
        manager = build_manager(store, lock_manager, broadcast_batch_size=2)
        for i in range(5):
            await manager.on_open(f"client{i}", FakeConnection(f"c{i}"))
            await manager.join("room:42", f"client{i}")

        report = await manager.publish("room:42", b"\x00\x01")

        assert report.delivered == 5
        assert manager.metrics.get_snapshot()["broadcasts_total"] == 1


class TestSelfHealing:
    @pytest.mark.asyncio
    async def test_closed_transport_evicted_before_on_close(self, manager):
        """
        clientA subscribes to room:42, its socket drops, and a publish runs
        before the close handler: clientA is evicted from room:42.
        """
        conn = FakeConnection("a1")
        await manager.on_open("clientA", conn)
        await manager.join("room:42", "clientA")

        conn.mark_closed()
        report = await manager.publish("room:42", {"n": 1})

        assert report.evicted == ["clientA"]
        assert report.delivered == 0
        assert not await manager.is_member("room:42", "clientA")
        assert "room:42" not in await manager.topics_of("clientA")

    @pytest.mark.asyncio
    async def test_member_without_connection_evicted(self, manager):
        await manager.join("room:42", "ghost")

        report = await manager.publish("room:42", "x")

        assert report.evicted == ["ghost"]
        assert await manager.members("room:42") == set()
        assert (await manager.snapshot()).is_consistent()

    @pytest.mark.asyncio
    async def test_hard_failure_evicts_and_marks_dead(self, manager):
        conn = FakeConnection("a1", fail_with=OSError("broken pipe"))
        await manager.on_open("clientA", conn)
        await manager.join("room:42", "clientA")

        report = await manager.publish("room:42", "x")

        assert report.evicted == ["clientA"]
        assert manager.lifecycle.dead_connections_pending == 1

    @pytest.mark.asyncio
    async def test_partial_success_keeps_membership(self, multi_manager):
        good = FakeConnection("good")
        bad = FakeConnection("bad", fail_with=RuntimeError("socket gone"))
        await multi_manager.on_open("clientA", good)
        await multi_manager.on_open("clientA", bad)
        await multi_manager.join("room:42", "clientA")

        report = await multi_manager.publish("room:42", "x")

        assert report.delivered == 1
        assert report.evicted == []
        assert await multi_manager.is_member("room:42", "clientA")
        assert multi_manager.lifecycle.dead_connections_pending == 1

    @pytest.mark.asyncio
    async def test_eviction_failure_reported(self, memory_store, lock_manager):
        manager = build_manager(memory_store, lock_manager)
        await manager.join("room:42", "ghost")
        memory_store.leave = AsyncMock(side_effect=TransientBackendError("leave"))

        report = await manager.publish("room:42", "x")

        assert report.evicted == []
        assert report.transient_failures[0].outcome == DeliveryOutcome.EVICTION_FAILED
        assert await manager.is_member("room:42", "ghost")
        assert manager.metrics.get_snapshot()["store_errors"] == 1


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_timeout_is_transient_by_default(self, manager):
        conn = FakeConnection("slow", block=True)
        await manager.on_open("clientA", conn)
        await manager.join("room:42", "clientA")

        report = await manager.publish("room:42", "x")

        failure = report.transient_failures[0]
        assert failure.outcome == DeliveryOutcome.TIMEOUT
        assert failure.connection_id == "slow"
        assert report.evicted == []
        assert await manager.is_member("room:42", "clientA")

    @pytest.mark.asyncio
    async def test_timeout_evicts_when_configured(self, store, lock_manager):
        manager = build_manager(store, lock_manager, send_timeout=0.05, evict_on_timeout=True)
        await manager.on_open("clientA", FakeConnection("slow", block=True))
        await manager.join("room:42", "clientA")

        report = await manager.publish("room:42", "x")

        assert report.evicted == ["clientA"]

    @pytest.mark.asyncio
    async def test_close_aborts_inflight_send(self, store, lock_manager):
        manager = build_manager(store, lock_manager, send_timeout=5)
        conn = FakeConnection("a1", block=True)
        await manager.on_open("clientA", conn)
        await manager.join("room:42", "clientA")

        asyncio.get_running_loop().call_later(0.05, conn.mark_closed)
        report = await asyncio.wait_for(manager.publish("room:42", "x"), timeout=2)

        assert report.evicted == ["clientA"]
        # A closed connection is handled by on_close, not reaped
        assert manager.lifecycle.dead_connections_pending == 0


class TestEncoding:
    def test_text_and_bytes_pass_through(self):
        assert encode_message("plain") == "plain"
        assert encode_message(b"raw") == b"raw"

    def test_dict_becomes_compact_json(self):
        encoded = encode_message({"type": "message", "data": [1, 2]})

        assert encoded == '{"type":"message","data":[1,2]}'
        assert json.loads(encoded)["data"] == [1, 2]

    def test_unsupported_type_rejected(self):
        with pytest.raises(TypeError):
            encode_message(42)

    @pytest.mark.asyncio
    async def test_report_to_dict(self, manager):
        await manager.join("room:42", "ghost")

        data = (await manager.publish("room:42", "x")).to_dict()

        assert data["topic"] == "room:42"
        assert data["evicted"] == ["ghost"]
        assert data["transientFailures"] == []
        assert "durationMs" in data
