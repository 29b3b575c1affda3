# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""Tests for rejection classification and the indexer check."""

import pytest

from fiber_client.node import LedgerClient
from fiber_client.rejections import (
    STRICT_BENIGN_CODES,
    assert_no_rejections,
    is_benign_rejection,
    partition_rejections,
)
from fiber_client.types import CriticalRejectionError, RejectionEntry, RejectionRecord


def make_record(*codes, ordinal=1, update_hash=None):
    return RejectionRecord(
        fiber_id="fiber-1",
        update_hash=update_hash or f"hash-{ordinal}-{'-'.join(codes)}",
        ordinal=ordinal,
        errors=tuple(RejectionEntry(code, f"{code} happened") for code in codes),
    )


# =============================================================================
# Classification
# =============================================================================


def test_sequence_mismatch_is_benign():
    """A stale target is a timing race."""
    assert is_benign_rejection(make_record("SequenceNumberMismatch"))


def test_no_transition_for_event_is_benign_by_default():
    """An unmatched event from a stale state read is benign by default."""
    assert is_benign_rejection(make_record("NoTransitionForEvent"))


def test_strict_codes_treat_no_transition_as_critical():
    """The strict set only forgives sequence mismatches."""
    assert not is_benign_rejection(make_record("NoTransitionForEvent"), STRICT_BENIGN_CODES)


def test_other_codes_are_critical():
    """Any other code is critical."""
    assert not is_benign_rejection(make_record("GuardFailed"))


def test_mixed_codes_are_critical():
    """One critical code makes the whole record critical."""
    assert not is_benign_rejection(make_record("SequenceNumberMismatch", "NotSignedByOwner"))


def test_record_without_errors_is_critical():
    """A record with no codes is not assumed benign."""
    assert not is_benign_rejection(make_record())


def test_partition_keeps_order():
    """Partitioning preserves the input order on both sides."""
    records = [
        make_record("SequenceNumberMismatch", ordinal=1),
        make_record("GuardFailed", ordinal=2),
        make_record("NoTransitionForEvent", ordinal=3),
        make_record("InvalidOwner", ordinal=4),
    ]
    benign, critical = partition_rejections(records)
    assert [r.ordinal for r in benign] == [1, 3]
    assert [r.ordinal for r in critical] == [2, 4]


def test_rejection_record_from_dict():
    """Indexer JSON maps onto RejectionRecord."""
    record = RejectionRecord.from_dict({
        "id": 3,
        "ordinal": 12,
        "updateType": "TransitionStateMachine",
        "fiberId": "fiber-1",
        "updateHash": "abc",
        "errors": [{"code": "SequenceNumberMismatch", "message": "expected 2, got 1"}],
        "signers": ["DAG0abc"],
        "timestamp": "2025-01-01T00:00:00Z",
    })
    assert record.codes == ["SequenceNumberMismatch"]
    assert record.signers == ("DAG0abc",)
    assert record.update_type == "TransitionStateMachine"


# =============================================================================
# Assertion
# =============================================================================


@pytest.mark.asyncio
async def test_assert_no_rejections_passes_on_clean_fiber(node):
    """A fiber with no records passes."""
    check = await assert_no_rejections(node, "fiber-1")
    assert check.passed
    assert not check.skipped
    assert check.message == "no rejections"


@pytest.mark.asyncio
async def test_assert_no_rejections_logs_benign(ledger, node, caplog):
    """Benign records pass but are logged as warnings."""
    ledger.inject_rejection("fiber-1", ["SequenceNumberMismatch"])
    with caplog.at_level("WARNING", logger="fiber_client.rejections"):
        check = await assert_no_rejections(node, "fiber-1")
    assert check.passed
    assert len(check.benign) == 1
    assert "Benign rejection" in caplog.text


@pytest.mark.asyncio
async def test_assert_no_rejections_fails_on_critical(ledger, node):
    """Critical records fail the check and can be raised."""
    ledger.inject_rejection("fiber-1", ["SequenceNumberMismatch"])
    ledger.inject_rejection("fiber-1", ["GuardFailed", "SequenceNumberMismatch"])
    ledger.inject_rejection("other-fiber", ["GuardFailed"])

    check = await assert_no_rejections(node, "fiber-1")
    assert not check.passed
    assert len(check.critical) == 1
    assert "GuardFailed" in check.message

    with pytest.raises(CriticalRejectionError) as exc_info:
        check.raise_for_critical("fiber-1")
    assert ("GuardFailed", "GuardFailed raised by validator") in exc_info.value.errors


@pytest.mark.asyncio
async def test_assert_no_rejections_ignores_older_ordinals(ledger, node):
    """Records before since_ordinal are not considered."""
    ledger.inject_rejection("fiber-1", ["GuardFailed"], ordinal=3)
    check = await assert_no_rejections(node, "fiber-1", since_ordinal=4)
    assert check.passed


@pytest.mark.asyncio
async def test_assert_no_rejections_skips_when_indexer_down(ledger, node):
    """An indexer outage passes as skipped."""
    ledger.indexer_failure = 503
    check = await assert_no_rejections(node, "fiber-1")
    assert check.passed
    assert check.skipped
    assert check.message == "rejection API unavailable (skipped)"


@pytest.mark.asyncio
async def test_assert_no_rejections_skips_without_indexer(ledger):
    """No indexer URL passes as skipped."""
    async with LedgerClient(ledger.config(indexer_url=None)) as node:
        check = await assert_no_rejections(node, "fiber-1")
    assert check.passed
    assert check.skipped


# =============================================================================
# Indexer Queries
# =============================================================================


@pytest.mark.asyncio
async def test_query_rejections_filters_and_pages(ledger, node):
    """Filters apply and pages come newest first."""
    for _ in range(3):
        ledger.inject_rejection("fiber-1", ["SequenceNumberMismatch"])
    ledger.inject_rejection("fiber-1", ["GuardFailed"])

    page = await node.query_rejections(fiber_id="fiber-1", error_code="SequenceNumberMismatch", limit=2)
    assert page.total == 3
    assert page.has_more
    assert len(page.rejections) == 2
    assert page.rejections[0].ordinal > page.rejections[1].ordinal


@pytest.mark.asyncio
async def test_get_rejection_by_hash(ledger, node):
    """Lookup by update hash, None when unknown."""
    record = ledger.inject_rejection("fiber-1", ["GuardFailed"])
    found = await node.get_rejection(record["updateHash"])
    assert found.codes == ["GuardFailed"]
    assert await node.get_rejection("unknown-hash") is None
