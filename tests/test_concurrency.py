"""Tests for cancellation tokens and concurrency-group admission."""

from __future__ import annotations

import asyncio

from gantry.pipeline.concurrency import CancellationToken, ConcurrencyManager


# ── CancellationToken ────────────────────────────────────────────────────────


class TestCancellationToken:
    async def test_cancel_propagates_to_children(self):
        parent = CancellationToken()
        child = parent.child()
        grandchild = child.child()
        parent.cancel("stop")
        assert child.cancelled and grandchild.cancelled
        assert grandchild.reason == "stop"

    async def test_child_cancel_does_not_reach_parent(self):
        parent = CancellationToken()
        child = parent.child()
        child.cancel()
        assert child.cancelled
        assert not parent.cancelled

    async def test_child_of_cancelled_token(self):
        parent = CancellationToken()
        parent.cancel("early")
        assert parent.child().cancelled

    async def test_first_reason_wins(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.reason == "first"

    async def test_wait(self):
        token = CancellationToken()
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        token.cancel()
        await asyncio.wait_for(waiter, timeout=1)


# ── ConcurrencyManager ───────────────────────────────────────────────────────


class TestConcurrencyManager:
    async def test_first_holder_admitted(self):
        manager = ConcurrencyManager()
        assert await manager.acquire("g", "run-1", CancellationToken())
        assert manager.holder("g") == "run-1"

    async def test_cancel_in_progress_cancels_holder(self):
        manager = ConcurrencyManager()
        first, second = CancellationToken(), CancellationToken()
        await manager.acquire("g", "run-1", first)
        admitted = await manager.acquire("g", "run-2", second, cancel_in_progress=True)
        assert admitted
        assert first.cancelled
        assert "run-2" in first.reason
        assert manager.holder("g") == "run-2"

    async def test_release_by_old_holder_is_ignored(self):
        manager = ConcurrencyManager()
        await manager.acquire("g", "run-1", CancellationToken())
        await manager.acquire("g", "run-2", CancellationToken(), cancel_in_progress=True)
        manager.release("g", "run-1")
        assert manager.holder("g") == "run-2"

    async def test_queued_holder_admitted_on_release(self):
        manager = ConcurrencyManager()
        await manager.acquire("g", "run-1", CancellationToken())
        waiter = asyncio.create_task(manager.acquire("g", "run-2", CancellationToken()))
        await asyncio.sleep(0.01)
        assert manager.queued("g") == ["run-2"]
        assert not waiter.done()

        manager.release("g", "run-1")
        assert await asyncio.wait_for(waiter, timeout=1) is True
        assert manager.holder("g") == "run-2"

    async def test_queue_overflow_supersedes_oldest(self):
        manager = ConcurrencyManager(max_queued=1)
        await manager.acquire("g", "run-1", CancellationToken())
        second_token = CancellationToken()
        second = asyncio.create_task(manager.acquire("g", "run-2", second_token))
        await asyncio.sleep(0.01)
        third = asyncio.create_task(manager.acquire("g", "run-3", CancellationToken()))
        await asyncio.sleep(0.01)

        assert await asyncio.wait_for(second, timeout=1) is False
        assert second_token.cancelled
        assert manager.queued("g") == ["run-3"]

        manager.release("g", "run-1")
        assert await asyncio.wait_for(third, timeout=1) is True

    async def test_cancelled_while_queued(self):
        manager = ConcurrencyManager()
        await manager.acquire("g", "run-1", CancellationToken())
        token = CancellationToken()
        waiter = asyncio.create_task(manager.acquire("g", "run-2", token))
        await asyncio.sleep(0.01)
        token.cancel()
        assert await asyncio.wait_for(waiter, timeout=1) is False
        assert manager.queued("g") == []
        assert manager.holder("g") == "run-1"

    async def test_cancel_in_progress_supersedes_queue(self):
        manager = ConcurrencyManager()
        await manager.acquire("g", "run-1", CancellationToken())
        queued = asyncio.create_task(manager.acquire("g", "run-2", CancellationToken()))
        await asyncio.sleep(0.01)
        assert await manager.acquire("g", "run-3", CancellationToken(), cancel_in_progress=True)
        assert await asyncio.wait_for(queued, timeout=1) is False
        assert manager.holder("g") == "run-3"

    async def test_groups_are_independent(self):
        manager = ConcurrencyManager()
        assert await manager.acquire("a", "run-1", CancellationToken())
        assert await manager.acquire("b", "run-2", CancellationToken())

    async def test_release_empties_group(self):
        manager = ConcurrencyManager()
        await manager.acquire("g", "run-1", CancellationToken())
        manager.release("g", "run-1")
        assert manager.holder("g") is None
        assert await manager.acquire("g", "run-2", CancellationToken())

    async def test_no_queue_supersedes_immediately(self):
        manager = ConcurrencyManager(max_queued=0)
        await manager.acquire("g", "run-1", CancellationToken())
        assert await manager.acquire("g", "run-2", CancellationToken()) is False
