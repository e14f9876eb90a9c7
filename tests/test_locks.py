"""
Tests for LockManager.
"""

import asyncio

import pytest

from topic_gateway.components.connection.locks import LockManager


class TestClientLocks:
    @pytest.mark.asyncio
    async def test_client_lock_serializes_same_client(self):
        locks = LockManager()
        order = []

        async def worker(name: str, delay: float):
            async with locks.client_lock("clientA"):
                order.append(f"{name}-start")
                await asyncio.sleep(delay)
                order.append(f"{name}-end")

        await asyncio.gather(worker("first", 0.02), worker("second", 0))

        assert order == ["first-start", "first-end", "second-start", "second-end"]

    @pytest.mark.asyncio
    async def test_different_clients_do_not_block(self):
        locks = LockManager()
        entered = asyncio.Event()

        async def holder():
            async with locks.client_lock("clientA"):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def other():
            async with locks.client_lock("clientB"):
                entered.set()

        await asyncio.gather(holder(), other())

    @pytest.mark.asyncio
    async def test_discard_only_unreferenced_lock(self):
        locks = LockManager()

        async with locks.client_lock("clientA"):
            assert locks.is_client_locked("clientA")
            assert locks.discard_client_lock("clientA") is False

        assert locks.discard_client_lock("clientA") is True
        assert locks.client_lock_count == 0
        assert locks.locks_cleaned_total == 1

    @pytest.mark.asyncio
    async def test_cleanup_stale_locks_keeps_active_clients(self):
        locks = LockManager()
        for client_id in ("a", "b", "c"):
            async with locks.client_lock(client_id):
                pass

        cleaned = locks.cleanup_stale_locks({"b"})

        assert cleaned == 2
        assert locks.client_lock_count == 1

    @pytest.mark.asyncio
    async def test_threshold_cleanup_bounds_cache(self):
        locks = LockManager(cleanup_threshold=10)
        for i in range(25):
            async with locks.client_lock(f"client-{i}"):
                pass

        assert locks.client_lock_count <= 11
        assert locks.locks_cleaned_total > 0


class TestEdgeLocks:
    @pytest.mark.asyncio
    async def test_edge_lock_dropped_after_use(self):
        locks = LockManager()

        async with locks.edge_lock("room:42", "clientA"):
            assert locks.edge_lock_count == 1

        assert locks.edge_lock_count == 0

    @pytest.mark.asyncio
    async def test_edge_lock_fifo_order(self):
        locks = LockManager()
        order = []

        async def worker(name: str):
            async with locks.edge_lock("room:42", "clientA"):
                order.append(name)
                await asyncio.sleep(0)

        await asyncio.gather(*[worker(str(i)) for i in range(5)])

        assert order == ["0", "1", "2", "3", "4"]
        assert locks.edge_lock_count == 0

    @pytest.mark.asyncio
    async def test_stats(self):
        locks = LockManager()
        async with locks.client_lock("a"):
            async with locks.edge_lock("t", "a"):
                stats = locks.get_stats()

        assert stats["client_locks_count"] == 1
        assert stats["edge_locks_count"] == 1
