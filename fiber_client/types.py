# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Core data types for the Fiber SDK.

Data model:
- Proof / Signed: a message plus one or more signatures over its canonical form
- FiberRecord: a state-machine or script fiber as reported by the read replica
- RejectionRecord: an asynchronous validation failure reported by the indexer
- SubmitResult: what the ledger said when a signed message was posted
- WaitResult: outcome of a polling synchronization primitive

Error taxonomy:
- CanonicalizationError / SigningError: local, never sent over the network
- SubmissionError: network or submission-time validation failure
- CriticalRejectionError: the ledger accepted the envelope but later rejected it
- Timeouts are NOT exceptions; they are reported as WaitStatus.TIMEOUT
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


# =============================================================================
# Exceptions
# =============================================================================

class FiberClientError(Exception):
    """Base class for all errors raised by the SDK."""


class CanonicalizationError(FiberClientError, TypeError, ValueError):
    """Value cannot be represented as canonical JSON (bad type, key, number or cycle)."""


class SigningError(FiberClientError):
    """Missing or invalid key material."""


class NodeError(FiberClientError):
    """A ledger or indexer node answered with a non-2xx status."""

    def __init__(self, message: str, status: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status = status
        self.body = body


class SubmissionError(FiberClientError):
    """
    Submitting a signed message failed.

    Raised after the fiber's sequence cache entry was reset, so a retry
    re-reads the authoritative sequence number.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        response: str | None = None,
        fiber_id: str | None = None,
        target_sequence_number: int | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.response = response
        self.fiber_id = fiber_id
        self.target_sequence_number = target_sequence_number


class SnapshotDecodeError(FiberClientError, ValueError):
    """Snapshot carries an application-state part that is not valid UTF-8 JSON."""


class CriticalRejectionError(FiberClientError):
    """
    The ledger rejected a transaction for a reason other than a timing race.

    Carries every (code, message) pair of every critical rejection.
    """

    def __init__(self, fiber_id: str, rejections: list["RejectionRecord"]):
        self.fiber_id = fiber_id
        self.rejections = rejections
        self.errors = [(e.code, e.message) for r in rejections for e in r.errors]
        codes = ", ".join(code for code, _ in self.errors) or "no error details"
        super().__init__(
            f"{len(rejections)} critical rejection(s) for fiber {fiber_id}: {codes}"
        )


# =============================================================================
# Fiber status
# =============================================================================

class FiberStatus(str, Enum):
    """Fiber lifecycle tag as reported by the ledger."""
    ACTIVE = "Active"
    ARCHIVED = "Archived"
    FAILED = "Failed"


# =============================================================================
# Signatures
# =============================================================================

@dataclass(frozen=True)
class Proof:
    """
    Signature proof binding a signer to a signature over a canonical message.

    Attributes:
        id: Signer's uncompressed secp256k1 public key, hex without the 04 prefix
        signature: DER-encoded ECDSA signature, hex
    """
    id: str
    signature: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "signature": self.signature}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Proof":
        return cls(id=data["id"], signature=data["signature"])


@dataclass
class Signed:
    """
    A value together with its signature proofs.

    Proofs are independent and order-insensitive; more can be appended later
    (see crypto.co_sign) or merged from concurrent co-signers.
    """
    value: Any
    proofs: list[Proof] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "proofs": [p.to_dict() for p in self.proofs],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Signed":
        return cls(
            value=data["value"],
            proofs=[Proof.from_dict(p) for p in data.get("proofs", [])],
        )

    @property
    def signer_ids(self) -> list[str]:
        return [p.id for p in self.proofs]


@dataclass
class VerificationResult:
    """
    Result of verifying every proof on a Signed value.

    Attributes:
        is_valid: True only if there is at least one proof and none are invalid
        valid_proofs: Proofs that verified
        invalid_proofs: Proofs that did not verify (malformed or mismatched)
        checked_at: Timestamp of verification
    """
    is_valid: bool
    valid_proofs: list[Proof] = field(default_factory=list)
    invalid_proofs: list[Proof] = field(default_factory=list)
    checked_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


# =============================================================================
# Fibers
# =============================================================================

@dataclass
class FiberRecord:
    """
    A fiber as reported by the ML0 read replica.

    Only the fields the client reasons about are lifted out; the full
    response is kept in `raw`.
    """
    fiber_id: str
    sequence_number: int
    current_state: Optional[str] = None
    state_data: Any = None
    owners: list[str] = field(default_factory=list)
    status: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FiberRecord":
        current = data.get("currentState")
        if isinstance(current, dict):
            current = current.get("value")
        return cls(
            fiber_id=data["fiberId"],
            sequence_number=int(data.get("sequenceNumber") or 0),
            current_state=current,
            state_data=data.get("stateData"),
            owners=list(data.get("owners", [])),
            status=data.get("status"),
            raw=data,
        )


# =============================================================================
# Rejections
# =============================================================================

@dataclass(frozen=True)
class RejectionEntry:
    """One (code, message) validation error."""
    code: str
    message: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RejectionEntry":
        return cls(code=data.get("code", ""), message=data.get("message", ""))


@dataclass(frozen=True)
class RejectionRecord:
    """
    A transaction the ledger accepted but later invalidated.

    Produced by the indexer, keyed by update_hash, never mutated.
    """
    fiber_id: str
    update_hash: str
    ordinal: int
    errors: tuple[RejectionEntry, ...] = ()
    signers: tuple[str, ...] = ()
    update_type: Optional[str] = None
    timestamp: Optional[str] = None
    id: Optional[int] = None

    @property
    def codes(self) -> list[str]:
        return [e.code for e in self.errors]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RejectionRecord":
        return cls(
            fiber_id=data["fiberId"],
            update_hash=data["updateHash"],
            ordinal=int(data.get("ordinal", 0)),
            errors=tuple(RejectionEntry.from_dict(e) for e in data.get("errors") or []),
            signers=tuple(data.get("signers") or ()),
            update_type=data.get("updateType"),
            timestamp=data.get("timestamp"),
            id=data.get("id"),
        )


@dataclass
class RejectionPage:
    """One page of the indexer's rejection listing."""
    rejections: list[RejectionRecord]
    total: int
    has_more: bool = False


# =============================================================================
# Submission and synchronization results
# =============================================================================

@dataclass
class SubmitResult:
    """
    Ledger acknowledgement of a submitted message.

    Attributes:
        hash: Transaction hash returned by DL1 (or the local envelope hash
              if the node returned none)
        ordinal: Snapshot ordinal, only if the node assigned one synchronously
        fiber_id: Fiber the message addressed
        target_sequence_number: Sequence number presented, for sequence-bearing messages
    """
    hash: str
    ordinal: Optional[int] = None
    fiber_id: Optional[str] = None
    target_sequence_number: Optional[int] = None


class WaitStatus(str, Enum):
    """Outcome of a synchronization primitive."""
    REACHED = "reached"    # Condition observed
    TIMEOUT = "timeout"    # Still pending when the deadline passed
    REJECTED = "rejected"  # Critical rejection observed, failed fast


@dataclass
class WaitResult:
    """
    Result of a polling wait.

    Attributes:
        status: REACHED, TIMEOUT or REJECTED
        value: Last observed value (state label, sequence number, ordinal, ...)
        attempts: Number of polls performed
        reason: Rejection codes when status is REJECTED
        rejections: Critical rejection records when status is REJECTED
    """
    status: WaitStatus
    value: Any = None
    attempts: int = 0
    reason: Optional[str] = None
    rejections: list[RejectionRecord] = field(default_factory=list)

    @property
    def reached(self) -> bool:
        return self.status == WaitStatus.REACHED

    @property
    def rejected(self) -> bool:
        return self.status == WaitStatus.REJECTED

    @property
    def timed_out(self) -> bool:
        return self.status == WaitStatus.TIMEOUT

    def __bool__(self) -> bool:
        return self.reached
