# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Polling synchronization with the eventually-consistent ledger.

Accepted submissions become visible later, and may still be rejected after
acceptance. Each primitive polls until its condition holds, a critical
rejection for the fiber shows up, or the deadline passes:

    result = await sync.wait_for_state(fiber_id, "Approved", timeout=30)
    if result.rejected:
        ...result.reason holds the error codes...
    elif result.timed_out:
        ...still pending...

Nothing here raises for a timeout or a rejection; both are reported through
WaitResult. Transient read failures (network errors, 5xx, open circuits)
count as "not yet".
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .node import ClientConfig, LedgerClient
from .rejections import (
    BENIGN_REJECTION_CODES,
    UNAVAILABLE_ERRORS,
    describe_codes,
    partition_rejections,
)
from .types import RejectionRecord, WaitResult, WaitStatus

logger = logging.getLogger(__name__)

# Returns (condition met, observed value)
Probe = Callable[[], Awaitable[tuple[bool, Any]]]

# Benign update hashes remembered so each is logged once
MAX_SEEN_BENIGN = 10_000


@dataclass
class WaitConfig:
    """Polling settings shared by all primitives."""
    # Default deadline in seconds
    timeout: float = 30.0
    # Pause between attempts in seconds
    poll_interval: float = 1.0
    # Consult the indexer for rejections on fiber-scoped waits
    check_rejections: bool = True
    benign_codes: frozenset[str] = BENIGN_REJECTION_CODES

    @classmethod
    def from_client_config(cls, config: ClientConfig) -> "WaitConfig":
        return cls(
            timeout=config.timeout_ms / 1000,
            poll_interval=config.poll_interval_ms / 1000,
        )


class Synchronizer:
    """Polling wait primitives over a LedgerClient."""

    def __init__(self, node: LedgerClient, config: Optional[WaitConfig] = None):
        self.node = node
        self.config = config or WaitConfig.from_client_config(node.config)
        # update hashes of benign rejections already logged, oldest first
        self._seen_benign: OrderedDict[str, None] = OrderedDict()

    async def _critical_rejections(
        self,
        fiber_id: str,
        since_ordinal: Optional[int],
    ) -> list[RejectionRecord]:
        if not (self.config.check_rejections and self.node.has_indexer):
            return []

        try:
            page = await self.node.query_rejections(fiber_id=fiber_id, from_ordinal=since_ordinal)
        except UNAVAILABLE_ERRORS as e:
            logger.debug(f"Rejection lookup for {fiber_id} unavailable: {e}")
            return []

        records = page.rejections
        if since_ordinal is not None:
            records = [r for r in records if r.ordinal >= since_ordinal]

        benign, critical = partition_rejections(records, self.config.benign_codes)
        for record in benign:
            if record.update_hash not in self._seen_benign:
                self._seen_benign[record.update_hash] = None
                while len(self._seen_benign) > MAX_SEEN_BENIGN:
                    self._seen_benign.popitem(last=False)
                logger.warning(
                    f"Benign rejection for {fiber_id} at ordinal {record.ordinal}: "
                    f"{describe_codes([record])}"
                )
        return critical

    async def _poll(
        self,
        description: str,
        probe: Probe,
        timeout: Optional[float],
        fiber_id: Optional[str] = None,
        since_ordinal: Optional[int] = None,
    ) -> WaitResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (self.config.timeout if timeout is None else timeout)
        attempts = 0
        value: Any = None

        while True:
            attempts += 1
            try:
                done, value = await probe()
            except UNAVAILABLE_ERRORS as e:
                logger.debug(f"{description}: read failed on attempt {attempts}: {e}")
                done = False

            if done:
                logger.debug(f"{description}: reached after {attempts} attempt(s)")
                return WaitResult(WaitStatus.REACHED, value=value, attempts=attempts)

            if fiber_id is not None:
                critical = await self._critical_rejections(fiber_id, since_ordinal)
                if critical:
                    reason = describe_codes(critical)
                    logger.warning(f"{description}: rejected ({reason})")
                    return WaitResult(
                        WaitStatus.REJECTED,
                        value=value,
                        attempts=attempts,
                        reason=reason,
                        rejections=critical,
                    )

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.info(f"{description}: timed out after {attempts} attempt(s), last value {value!r}")
                return WaitResult(WaitStatus.TIMEOUT, value=value, attempts=attempts)

            await asyncio.sleep(min(self.config.poll_interval, remaining))

    async def wait_for_fiber(
        self,
        fiber_id: str,
        timeout: Optional[float] = None,
        since_ordinal: Optional[int] = None,
    ) -> WaitResult:
        """Wait until the fiber has an on-chain commit. Value is its sequence number."""

        async def probe() -> tuple[bool, Any]:
            seq = await self.node.get_fiber_sequence(fiber_id)
            return seq is not None, seq

        return await self._poll(f"wait_for_fiber({fiber_id})", probe, timeout, fiber_id, since_ordinal)

    async def wait_for_state(
        self,
        fiber_id: str,
        expected_state: str,
        timeout: Optional[float] = None,
        since_ordinal: Optional[int] = None,
    ) -> WaitResult:
        """
        Wait until ML0 reports the fiber in expected_state.

        Value is the last observed state label (None while the fiber is not visible).
        """

        async def probe() -> tuple[bool, Any]:
            record = await self.node.get_state_machine(fiber_id)
            current = record.current_state if record else None
            return current == expected_state, current

        return await self._poll(
            f"wait_for_state({fiber_id}, {expected_state})", probe, timeout, fiber_id, since_ordinal
        )

    async def wait_for_sequence(
        self,
        fiber_id: str,
        target_sequence_number: int,
        timeout: Optional[float] = None,
        since_ordinal: Optional[int] = None,
    ) -> WaitResult:
        """Wait until the fiber's authoritative sequence number is at least the target."""

        async def probe() -> tuple[bool, Any]:
            seq = await self.node.get_fiber_sequence(fiber_id)
            return seq is not None and seq >= target_sequence_number, seq

        return await self._poll(
            f"wait_for_sequence({fiber_id}, {target_sequence_number})",
            probe,
            timeout,
            fiber_id,
            since_ordinal,
        )

    async def wait_for_snapshot(self, min_ordinal: int, timeout: Optional[float] = None) -> WaitResult:
        """Wait until the latest snapshot ordinal exceeds min_ordinal. Value is that ordinal."""

        async def probe() -> tuple[bool, Any]:
            ordinal = await self.node.get_latest_ordinal()
            return ordinal is not None and ordinal > min_ordinal, ordinal

        return await self._poll(f"wait_for_snapshot(>{min_ordinal})", probe, timeout)
