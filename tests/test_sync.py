# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""Tests for the polling synchronization primitives."""

import asyncio

import pytest

from fiber_client import sync as sync_module
from fiber_client.messages import CreateStateMachine, TransitionStateMachine
from fiber_client.node import LedgerClient
from fiber_client.sync import Synchronizer, WaitConfig
from fiber_client.types import WaitStatus


@pytest.fixture
def sync(node):
    """Synchronizer with short deadlines for tests."""
    return Synchronizer(node, WaitConfig(timeout=1.0, poll_interval=0.01))


def apply_create(ledger, definition, fiber_id="fiber-1"):
    message = CreateStateMachine(definition, {}, fiber_id=fiber_id)
    ledger.apply(message.to_dict(), f"create-{fiber_id}", [])
    return fiber_id


def apply_event(ledger, fiber_id, event, seq):
    message = TransitionStateMachine(fiber_id, event, seq)
    ledger.apply(message.to_dict(), f"{fiber_id}-{event}-{seq}", [])


# =============================================================================
# Fiber Visibility
# =============================================================================


@pytest.mark.asyncio
async def test_wait_for_fiber_reached(ledger, sync, definition):
    """A created fiber is reported with its sequence number."""
    fiber_id = apply_create(ledger, definition)
    result = await sync.wait_for_fiber(fiber_id)
    assert result.status == WaitStatus.REACHED
    assert result.value == 0
    assert result


@pytest.mark.asyncio
async def test_wait_for_fiber_times_out(sync):
    """A fiber that never appears ends in TIMEOUT after several polls."""
    result = await sync.wait_for_fiber("never-created", timeout=0.05)
    assert result.timed_out
    assert result.attempts > 1
    assert not result


@pytest.mark.asyncio
async def test_wait_for_fiber_sees_delayed_visibility(ledger, sync, definition):
    """Polling continues until the read replica catches up."""
    ledger.freeze_reads()
    fiber_id = apply_create(ledger, definition)
    asyncio.get_running_loop().call_later(0.05, ledger.thaw_reads)

    result = await sync.wait_for_fiber(fiber_id)
    assert result.reached
    assert result.attempts > 1


@pytest.mark.asyncio
async def test_transient_read_failures_are_retried(ledger, sync, definition):
    """5xx reads count as not yet and are retried."""
    fiber_id = apply_create(ledger, definition)
    ledger.failing_reads = 2
    result = await sync.wait_for_fiber(fiber_id)
    assert result.reached
    assert result.attempts == 3


# =============================================================================
# State
# =============================================================================


@pytest.mark.asyncio
async def test_wait_for_state(ledger, sync, definition):
    """Reached once ML0 reports the expected state."""
    fiber_id = apply_create(ledger, definition)
    apply_event(ledger, fiber_id, "submit", 0)
    result = await sync.wait_for_state(fiber_id, "Submitted")
    assert result.reached
    assert result.value == "Submitted"


@pytest.mark.asyncio
async def test_wait_for_state_reports_last_observed_state(ledger, sync, definition):
    """A timed out wait carries the last state seen."""
    fiber_id = apply_create(ledger, definition)
    result = await sync.wait_for_state(fiber_id, "Approved", timeout=0.05)
    assert result.timed_out
    assert result.value == "Draft"


# =============================================================================
# Rejections
# =============================================================================


@pytest.mark.asyncio
async def test_wait_for_state_fails_fast_on_critical_rejection(ledger, sync, definition):
    """A critical rejection ends the wait on the first attempt."""
    fiber_id = apply_create(ledger, definition)
    ledger.inject_rejection(fiber_id, ["GuardFailed"])

    result = await sync.wait_for_state(fiber_id, "Approved", timeout=5.0)
    assert result.status == WaitStatus.REJECTED
    assert result.reason == "GuardFailed"
    assert result.attempts == 1
    assert result.rejections[0].fiber_id == fiber_id


@pytest.mark.asyncio
async def test_benign_rejection_keeps_polling(ledger, sync, definition, caplog):
    """Benign rejections are logged once and do not stop the wait."""
    fiber_id = apply_create(ledger, definition)
    apply_event(ledger, fiber_id, "approve", 0)  # NoTransitionForEvent from Draft
    assert ledger.rejections[-1]["errors"][0]["code"] == "NoTransitionForEvent"

    with caplog.at_level("WARNING", logger="fiber_client.sync"):
        result = await sync.wait_for_state(fiber_id, "Approved", timeout=0.05)

    assert result.timed_out
    assert caplog.text.count("Benign rejection") == 1


@pytest.mark.asyncio
async def test_logged_benign_hashes_are_bounded(ledger, sync, definition, monkeypatch):
    """The memory of logged benign rejections keeps only the newest hashes."""
    monkeypatch.setattr(sync_module, "MAX_SEEN_BENIGN", 2)
    fiber_id = apply_create(ledger, definition)
    for _ in range(5):
        ledger.inject_rejection(fiber_id, ["SequenceNumberMismatch"])

    result = await sync.wait_for_state(fiber_id, "Approved", timeout=0.05)
    assert result.timed_out
    assert len(sync._seen_benign) == 2


@pytest.mark.asyncio
async def test_strict_benign_set_fails_on_no_transition(ledger, node, definition):
    """With the strict set an unmatched event is critical."""
    fiber_id = apply_create(ledger, definition)
    apply_event(ledger, fiber_id, "approve", 0)

    strict = Synchronizer(
        node,
        WaitConfig(timeout=1.0, poll_interval=0.01, benign_codes=frozenset({"SequenceNumberMismatch"})),
    )
    result = await strict.wait_for_state(fiber_id, "Approved")
    assert result.rejected
    assert result.reason == "NoTransitionForEvent"


@pytest.mark.asyncio
async def test_since_ordinal_ignores_older_rejections(ledger, sync, definition):
    """Rejections before since_ordinal do not fail the wait."""
    fiber_id = apply_create(ledger, definition)
    ledger.inject_rejection(fiber_id, ["GuardFailed"])
    since = ledger.ordinal + 1

    result = await sync.wait_for_state(fiber_id, "Approved", timeout=0.05, since_ordinal=since)
    assert result.timed_out


@pytest.mark.asyncio
async def test_rejections_not_checked_without_indexer(ledger, definition):
    """Without an indexer URL the wait only polls state."""
    fiber_id = apply_create(ledger, definition)
    ledger.inject_rejection(fiber_id, ["GuardFailed"])

    async with LedgerClient(ledger.config(indexer_url=None)) as node:
        sync = Synchronizer(node, WaitConfig(timeout=0.05, poll_interval=0.01))
        result = await sync.wait_for_state(fiber_id, "Approved")
    assert result.timed_out


@pytest.mark.asyncio
async def test_indexer_outage_does_not_fail_wait(ledger, sync, definition):
    """An indexer 5xx is ignored by the wait."""
    fiber_id = apply_create(ledger, definition)
    ledger.indexer_failure = 503
    result = await sync.wait_for_state(fiber_id, "Submitted", timeout=0.05)
    assert result.timed_out


# =============================================================================
# Sequence / Snapshot
# =============================================================================


@pytest.mark.asyncio
async def test_wait_for_sequence(ledger, sync, definition):
    """Reached once the ledger sequence is at least the target."""
    fiber_id = apply_create(ledger, definition)
    apply_event(ledger, fiber_id, "ping", 0)
    apply_event(ledger, fiber_id, "ping", 1)

    assert (await sync.wait_for_sequence(fiber_id, 2)).reached
    result = await sync.wait_for_sequence(fiber_id, 3, timeout=0.05)
    assert result.timed_out
    assert result.value == 2


@pytest.mark.asyncio
async def test_wait_for_sequence_with_null_sequence(ledger, sync):
    """A null sequenceNumber reads as 0 instead of breaking the wait."""
    ledger.onchain_override = {"fiberCommits": {"f": {"sequenceNumber": None}}, "latestLogs": {}}

    assert (await sync.wait_for_sequence("f", 0)).reached
    result = await sync.wait_for_sequence("f", 1, timeout=0.05)
    assert result.timed_out
    assert result.value == 0


@pytest.mark.asyncio
async def test_wait_for_snapshot(ledger, sync, definition):
    """Reached once a newer snapshot ordinal appears."""
    apply_create(ledger, definition)
    current = ledger.ordinal

    result = await sync.wait_for_snapshot(current, timeout=0.05)
    assert result.timed_out
    assert result.value == current

    asyncio.get_running_loop().call_later(0.03, apply_create, ledger, definition, "fiber-2")
    result = await sync.wait_for_snapshot(current)
    assert result.reached
    assert result.value == current + 1


@pytest.mark.asyncio
async def test_default_timeout_comes_from_client_config(ledger):
    """Without a WaitConfig the client config supplies the defaults."""
    async with LedgerClient(ledger.config(timeout_ms=50, poll_interval_ms=5)) as node:
        sync = Synchronizer(node)
        assert sync.config.timeout == 0.05
        assert sync.config.poll_interval == 0.005
        result = await sync.wait_for_fiber("never-created")
    assert result.timed_out
