from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, Iterable, Optional, Set

from .ledger import CrawlLedger
from .models import QueuedReference

logger = logging.getLogger(__name__)


class Frontier:
    """
    References waiting to be processed in the current session.

    Every admitted reference is persisted in the ledger's frontier table until
    a worker is done with it, so a stopped or crashed session can resume.
    At most ``capacity`` entries are kept in memory; the rest wait on disk and
    are pulled back in order as the buffer empties.

    An identity is admitted at most once per session, which makes the worker
    that dequeues it its only writer.

    ``pop`` blocks while the buffer is empty and other references are still in
    flight (they may discover more). It returns ``None`` once the frontier is
    closed, the dequeue limit is reached, or nothing is left anywhere.
    """

    def __init__(self, ledger: CrawlLedger, *, capacity: int = 1000, max_dequeues: int = -1) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._ledger = ledger
        self.capacity = capacity
        self.max_dequeues = max_dequeues

        self._buffer: Deque[QueuedReference] = deque()
        self._known: Set[str] = set()
        self._spilled = 0
        self._active = 0
        self._dequeued = 0
        self._closed = False
        self._limit_reached = False
        self._cond = asyncio.Condition()

    # ---------- introspection ----------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def limit_reached(self) -> bool:
        return self._limit_reached

    @property
    def dequeued(self) -> int:
        return self._dequeued

    @property
    def in_flight(self) -> int:
        return self._active

    def buffered(self) -> int:
        return len(self._buffer)

    def pending(self) -> int:
        return len(self._buffer) + self._spilled

    def is_known(self, identity: str) -> bool:
        return identity in self._known

    # ---------- setup ----------

    async def restore(self, processed: Iterable[str] = ()) -> int:
        """
        Re-arm a resumed session: identities already processed are never
        admitted again, persisted entries are queued back from disk.
        """
        self._known.update(processed)
        identities = await self._ledger.frontier_requeue()
        async with self._cond:
            self._known.update(identities)
            self._spilled += len(identities)
            self._cond.notify_all()
        logger.info("frontier restored: %d pending, %d already processed", len(identities), len(self._known) - len(identities))
        return len(identities)

    # ---------- queue ops ----------

    async def push(self, item: QueuedReference) -> bool:
        async with self._cond:
            if self._closed or item.identity in self._known:
                return False
            self._known.add(item.identity)
            # keep FIFO: once anything waits on disk, new entries queue behind it
            in_memory = self._spilled == 0 and len(self._buffer) < self.capacity
            await self._ledger.frontier_push(item, buffered=in_memory)
            if in_memory:
                self._buffer.append(item)
            else:
                self._spilled += 1
            self._cond.notify()
            return True

    async def pop(self) -> Optional[QueuedReference]:
        async with self._cond:
            while True:
                if self._closed or self._limit_reached:
                    return None
                if not self._buffer and self._spilled:
                    await self._refill()
                if self._buffer:
                    if 0 <= self.max_dequeues <= self._dequeued:
                        self._limit_reached = True
                        logger.info("frontier: dequeue limit %d reached", self.max_dequeues)
                        self._cond.notify_all()
                        return None
                    item = self._buffer.popleft()
                    self._dequeued += 1
                    self._active += 1
                    return item
                if self._active == 0:
                    # exhausted: let every other waiter see it too
                    self._cond.notify_all()
                    return None
                await self._cond.wait()

    async def done(self, item: QueuedReference) -> None:
        """The reference is fully processed: forget it on disk too."""
        await self._ledger.frontier_done(item.identity)
        await self.release(item)

    async def release(self, item: QueuedReference) -> None:
        """Stop counting ``item`` as in flight but keep its persisted entry."""
        async with self._cond:
            self._active = max(0, self._active - 1)
            self._cond.notify_all()

    async def close(self) -> None:
        async with self._cond:
            if not self._closed:
                self._closed = True
                logger.info(
                    "frontier closed: %d pending, %d in flight", self.pending(), self._active
                )
            self._cond.notify_all()

    async def _refill(self) -> None:
        room = self.capacity - len(self._buffer)
        if room <= 0:
            return
        items = await self._ledger.frontier_take(room)
        self._buffer.extend(items)
        if items:
            self._spilled = max(0, self._spilled - len(items))
        else:
            self._spilled = 0
