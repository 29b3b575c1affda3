# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Classification of asynchronous ledger rejections.

Some rejections are expected side effects of concurrency: two clients racing
for the same sequence number, or an event fired while the fiber was already
moved to a state without that transition. Those are benign and only logged.
Anything else is critical and must surface to the caller.

A record is benign only if every one of its error codes is benign; a record
mixing a benign and a critical code is critical.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

import aiohttp

from .circuit_breaker import CircuitBreakerError
from .node import DEFAULT_REJECTION_LIMIT, LedgerClient
from .types import CriticalRejectionError, NodeError, RejectionRecord

logger = logging.getLogger(__name__)

BENIGN_REJECTION_CODES = frozenset({
    "SequenceNumberMismatch",  # Lost a race for the same target
    "NoTransitionForEvent",    # Fiber already left the state expecting the event
})

# Only sequence races are tolerated
STRICT_BENIGN_CODES = frozenset({"SequenceNumberMismatch"})

# Failures meaning "the rejection source cannot be consulted right now"
UNAVAILABLE_ERRORS = (NodeError, CircuitBreakerError, aiohttp.ClientError, asyncio.TimeoutError)


def is_benign_rejection(
    record: RejectionRecord,
    benign_codes: Iterable[str] = BENIGN_REJECTION_CODES,
) -> bool:
    """True if the record has errors and every code is in benign_codes."""
    codes = record.codes
    if not codes:
        return False
    benign = set(benign_codes)
    return all(code in benign for code in codes)


def partition_rejections(
    records: Iterable[RejectionRecord],
    benign_codes: Iterable[str] = BENIGN_REJECTION_CODES,
) -> tuple[list[RejectionRecord], list[RejectionRecord]]:
    """Split records into (benign, critical), keeping order."""
    benign_set = set(benign_codes)
    benign: list[RejectionRecord] = []
    critical: list[RejectionRecord] = []
    for record in records:
        if is_benign_rejection(record, benign_set):
            benign.append(record)
        else:
            critical.append(record)
    return benign, critical


def describe_codes(records: Iterable[RejectionRecord]) -> str:
    return ", ".join(code for r in records for code in r.codes) or "no error details"


@dataclass
class RejectionCheck:
    """
    Outcome of checking a fiber for rejections.

    Attributes:
        passed: True when no critical rejection was found (or the check was skipped)
        message: Human-readable summary
        critical: Critical records found
        benign: Benign records found (logged, not failures)
        skipped: True when the rejection source was unavailable
    """
    passed: bool
    message: str
    critical: list[RejectionRecord] = field(default_factory=list)
    benign: list[RejectionRecord] = field(default_factory=list)
    skipped: bool = False

    def raise_for_critical(self, fiber_id: str) -> None:
        """
        Raises:
            CriticalRejectionError: If any critical rejection was found
        """
        if self.critical:
            raise CriticalRejectionError(fiber_id, self.critical)


async def assert_no_rejections(
    node: LedgerClient,
    fiber_id: str,
    since_ordinal: Optional[int] = None,
    benign_codes: Iterable[str] = BENIGN_REJECTION_CODES,
    limit: int = DEFAULT_REJECTION_LIMIT,
) -> RejectionCheck:
    """
    Check the indexer for critical rejections of a fiber.

    An unreachable or unconfigured indexer does not fail the check; it is
    reported as passed with skipped=True and a warning is logged.

    Args:
        node: Ledger client with an indexer configured
        fiber_id: Fiber to check
        since_ordinal: Ignore records from snapshots before this ordinal
        benign_codes: Error codes considered harmless
        limit: Most recent records to inspect
    """
    if not node.has_indexer:
        logger.warning(f"No indexer configured, skipping rejection check for {fiber_id}")
        return RejectionCheck(passed=True, message="rejection API unavailable (skipped)", skipped=True)

    try:
        page = await node.query_rejections(
            fiber_id=fiber_id, from_ordinal=since_ordinal, limit=limit
        )
    except UNAVAILABLE_ERRORS as e:
        logger.warning(f"Rejection API unavailable for {fiber_id}: {e}")
        return RejectionCheck(passed=True, message="rejection API unavailable (skipped)", skipped=True)

    records = page.rejections
    if since_ordinal is not None:
        records = [r for r in records if r.ordinal >= since_ordinal]

    benign, critical = partition_rejections(records, benign_codes)
    for record in benign:
        logger.warning(
            f"Benign rejection for {fiber_id} at ordinal {record.ordinal}: "
            f"{describe_codes([record])}"
        )

    if critical:
        return RejectionCheck(
            passed=False,
            message=f"{len(critical)} critical rejection(s): {describe_codes(critical)}",
            critical=critical,
            benign=benign,
        )

    if benign:
        message = f"no critical rejections ({len(benign)} benign)"
    else:
        message = "no rejections"
    return RejectionCheck(passed=True, message=message, benign=benign)
