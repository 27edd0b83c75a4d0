"""Cancellation tokens and concurrency groups.

Cancellation travels downward by message: a run's token cancels its job
tokens, which cancel their step tokens. A :class:`ConcurrencyManager` keeps
at most one active holder per resolved group key plus a bounded FIFO queue.

Key exports:
    CancellationToken: cancel(), cancelled, wait(), child()
    ConcurrencyManager: acquire(), release(), holder(), queued()
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field

logger = logging.getLogger("gantry.pipeline.concurrency")


class CancellationToken:
    """A one-shot cancellation signal that propagates to child tokens."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._children: list[CancellationToken] = []
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    async def wait(self) -> None:
        await self._event.wait()

    def child(self) -> CancellationToken:
        """A token cancelled whenever this one is (but not vice versa)."""
        token = CancellationToken()
        if self.cancelled:
            token.cancel(self.reason)
        else:
            self._children.append(token)
        return token


@dataclass
class _Holder:
    holder_id: str
    token: CancellationToken
    waiter: asyncio.Future | None = None


@dataclass
class ConcurrencyGroup:
    """One resolved group key: an active holder and the queue behind it."""

    key: str
    active: _Holder | None = None
    queue: deque[_Holder] = field(default_factory=deque)


class ConcurrencyManager:
    """Admission control for concurrency groups.

    Usage::

        if await manager.acquire(key, run_id, token, cancel_in_progress=False):
            try:
                ...  # run
            finally:
                manager.release(key, run_id)
    """

    def __init__(self, *, max_queued: int = 1):
        self._max_queued = max(max_queued, 0)
        self._groups: dict[str, ConcurrencyGroup] = {}

    def holder(self, key: str) -> str | None:
        group = self._groups.get(key)
        return group.active.holder_id if group and group.active else None

    def queued(self, key: str) -> list[str]:
        group = self._groups.get(key)
        return [h.holder_id for h in group.queue] if group else []

    async def acquire(
        self,
        key: str,
        holder_id: str,
        token: CancellationToken,
        *,
        cancel_in_progress: bool = False,
    ) -> bool:
        """Wait until ``holder_id`` holds ``key``.

        Returns False when the holder was superseded or cancelled while
        queued; the caller must then not run and must not call release().
        """
        group = self._groups.setdefault(key, ConcurrencyGroup(key))
        holder = _Holder(holder_id, token)

        if group.active is None:
            group.active = holder
            logger.debug("Group '%s' acquired by %s", key, holder_id)
            return True

        if cancel_in_progress:
            while group.queue:
                self._supersede(key, group.queue.popleft())
            previous = group.active
            logger.info(
                "Group '%s': %s cancels in-progress %s", key, holder_id, previous.holder_id
            )
            previous.token.cancel(f"cancelled by {holder_id} in concurrency group '{key}'")
            group.active = holder
            return True

        holder.waiter = asyncio.get_running_loop().create_future()
        group.queue.append(holder)
        logger.info("Group '%s': %s queued behind %s", key, holder_id, group.active.holder_id)
        while len(group.queue) > self._max_queued:
            self._supersede(key, group.queue.popleft())

        cancel_wait = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({holder.waiter, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
        if holder.waiter.done():
            return holder.waiter.result()
        # Cancelled while waiting
        if holder in group.queue:
            group.queue.remove(holder)
        holder.waiter.cancel()
        self._prune(key)
        return False

    def release(self, key: str, holder_id: str) -> None:
        """Release ``key`` if ``holder_id`` holds it and promote the next waiter."""
        group = self._groups.get(key)
        if group is None or group.active is None or group.active.holder_id != holder_id:
            return
        group.active = None
        while group.queue:
            nxt = group.queue.popleft()
            if nxt.token.cancelled:
                _resolve(nxt, False)
                continue
            group.active = nxt
            _resolve(nxt, True)
            logger.debug("Group '%s' passed from %s to %s", key, holder_id, nxt.holder_id)
            break
        self._prune(key)

    def _supersede(self, key: str, holder: _Holder) -> None:
        logger.info("Group '%s': queued %s superseded", key, holder.holder_id)
        holder.token.cancel(f"superseded in concurrency group '{key}'")
        _resolve(holder, False)

    def _prune(self, key: str) -> None:
        group = self._groups.get(key)
        if group is not None and group.active is None and not group.queue:
            del self._groups[key]


def _resolve(holder: _Holder, admitted: bool) -> None:
    if holder.waiter is not None and not holder.waiter.done():
        holder.waiter.set_result(admitted)
