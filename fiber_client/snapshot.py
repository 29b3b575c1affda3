# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Decoding of the application state carried by ML0 snapshots.

A snapshot's `value.dataApplication.onChainState` is a list of byte values
holding UTF-8 canonical JSON:

    {"fiberCommits": {fiberId: {...}}, "latestLogs": {fiberId: [entry, ...]}}

Log entries carry no kind tag. An entry with `eventName` and `success` is an
event receipt; an entry with `method` and `result` is an oracle invocation.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .types import SnapshotDecodeError


@dataclass
class OnChainState:
    """Decoded on-chain state of one snapshot."""
    fiber_commits: dict[str, Any] = field(default_factory=dict)
    latest_logs: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OnChainState":
        return cls(
            fiber_commits=dict(data.get("fiberCommits") or {}),
            latest_logs={k: list(v) for k, v in (data.get("latestLogs") or {}).items()},
            raw=data,
        )

    def sequence_of(self, fiber_id: str) -> Optional[int]:
        commit = self.fiber_commits.get(fiber_id)
        if commit is None:
            return None
        return int(commit.get("sequenceNumber") or 0)


def decode_on_chain_state(data: Union[bytes, bytearray, list[int]]) -> OnChainState:
    """
    Decode raw on-chain state bytes.

    Raises:
        SnapshotDecodeError: If the bytes are not UTF-8 JSON objects
    """
    try:
        raw = bytes(data)
        decoded = json.loads(raw.decode("utf-8"))
    except (TypeError, ValueError) as e:
        raise SnapshotDecodeError(f"Corrupt on-chain state: {e}") from e

    if not isinstance(decoded, dict):
        raise SnapshotDecodeError(
            f"On-chain state must be a JSON object, got {type(decoded).__name__}"
        )
    return OnChainState.from_dict(decoded)


def decode_snapshot(snapshot: dict[str, Any]) -> Optional[OnChainState]:
    """
    Extract the on-chain state of a snapshot response.

    Returns:
        Decoded state, or None if the snapshot has no application data part
    """
    part = (snapshot.get("value") or {}).get("dataApplication")
    if not part or not part.get("onChainState"):
        return None
    return decode_on_chain_state(part["onChainState"])


def snapshot_ordinal(snapshot: dict[str, Any]) -> Optional[int]:
    ordinal = (snapshot.get("value") or {}).get("ordinal")
    return None if ordinal is None else int(ordinal)


def logs_for_fiber(state: OnChainState, fiber_id: str) -> list[dict[str, Any]]:
    return list(state.latest_logs.get(fiber_id, []))


def event_receipts_for_fiber(state: OnChainState, fiber_id: str) -> list[dict[str, Any]]:
    return [
        entry for entry in logs_for_fiber(state, fiber_id)
        if "eventName" in entry and "success" in entry
    ]


def oracle_invocations_for_fiber(state: OnChainState, fiber_id: str) -> list[dict[str, Any]]:
    return [
        entry for entry in logs_for_fiber(state, fiber_id)
        if "method" in entry and "result" in entry
    ]
