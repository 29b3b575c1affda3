# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Optimistic per-fiber sequence numbers.

The ledger's read replica lags behind accepted submissions, so a client that
fires several transitions at one fiber cannot rely on the authoritative read
alone: it would present the same target twice. The coordinator remembers, per
fiber, the next sequence number this process expects and combines it with
the authoritative read:

    next = max(authoritative, cached)

Entries are created lazily, only ever move forward on success, and are
deleted (never decremented) on failure so the next attempt re-reads the
ledger. The cache is process-local and bounded; when full, the entry updated
longest ago is evicted, which only costs that fiber one fresh read.

Usage:
    coordinator = SequenceCoordinator(node.get_fiber_sequence)

    async with coordinator.lock(fiber_id):
        seq = await coordinator.get_next(fiber_id)
        ...submit with seq...
        coordinator.advance(fiber_id, seq)
"""

import asyncio
import logging
import weakref
from collections import OrderedDict
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

SequenceReader = Callable[[str], Awaitable[Optional[int]]]

DEFAULT_MAX_ENTRIES = 10_000


class SequenceCoordinator:
    """
    Per-fiber optimistic sequence cache.

    Args:
        reader: Async callable returning the authoritative sequence number of a
            fiber, or None if the fiber is not visible yet (treated as 0)
        max_entries: Maximum number of fibers tracked before FIFO eviction
    """

    def __init__(self, reader: SequenceReader, max_entries: int = DEFAULT_MAX_ENTRIES):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._reader = reader
        self._max_entries = max_entries
        self._next: OrderedDict[str, int] = OrderedDict()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._next)

    def __contains__(self, fiber_id: str) -> bool:
        return fiber_id in self._next

    def lock(self, fiber_id: str) -> asyncio.Lock:
        """
        Lock serializing read-modify-write on one fiber.

        Holders of the same fiber's lock run one at a time; other fibers
        are unaffected.
        """
        lock = self._locks.get(fiber_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[fiber_id] = lock
        return lock

    def peek(self, fiber_id: str) -> Optional[int]:
        """Cached next sequence number without touching the ledger."""
        return self._next.get(fiber_id)

    async def get_next(self, fiber_id: str) -> int:
        """Next sequence number to present for a fiber."""
        authoritative = await self._reader(fiber_id)
        cached = self._next.get(fiber_id)
        next_seq = max(authoritative or 0, cached or 0)
        logger.debug(
            f"Sequence for {fiber_id}: authoritative={authoritative} cached={cached} next={next_seq}"
        )
        return next_seq

    def advance(self, fiber_id: str, submitted_sequence: int) -> None:
        """Record that a submission targeting submitted_sequence was accepted."""
        candidate = submitted_sequence + 1
        current = self._next.get(fiber_id)
        if current is not None and candidate <= current:
            return
        # Re-insert so the entry moves to the back of the eviction order
        self._next.pop(fiber_id, None)
        self._next[fiber_id] = candidate

        while len(self._next) > self._max_entries:
            evicted, _ = self._next.popitem(last=False)
            self._evictions += 1
            logger.debug(f"Evicted sequence cache entry for {evicted}")

    def reset(self, fiber_id: str) -> None:
        """Forget a fiber so the next get_next trusts the ledger again."""
        if self._next.pop(fiber_id, None) is not None:
            logger.debug(f"Reset sequence cache entry for {fiber_id}")

    def clear(self) -> None:
        self._next.clear()

    def get_stats(self) -> dict:
        return {
            "entries": len(self._next),
            "max_entries": self._max_entries,
            "evictions": self._evictions,
        }
