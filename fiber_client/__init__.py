# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Fiber Python SDK - signed state-machine transactions on a metagraph

A fiber is a versioned state-machine instance whose authoritative state
lives on an eventually-consistent ledger. This SDK builds, signs and
submits fiber transactions, then tracks their (possibly delayed, possibly
rejected) outcome.

Features:
- RFC 8785 canonical JSON
- secp256k1 multi-signature signing with DataUpdate domain separation
- Optimistic per-fiber sequence numbers for back-to-back transitions
- Polling waits that fail fast on critical rejections
- Snapshot decoding with event-receipt / oracle-invocation filters
- Per-node circuit breakers

Usage:
    from fiber_client import FiberClient, ClientConfig, KeyPair

    async with FiberClient(ClientConfig.from_env(), key=KeyPair.from_env()) as client:
        created = await client.create_state_machine(definition, {"owner": "alice"})
        await client.wait_for_fiber(created.fiber_id)

        await client.transition(created.fiber_id, "submit")
        await client.transition(created.fiber_id, "approve")  # gets the next sequence number

        result = await client.wait_for_state(created.fiber_id, "Approved")
        if result.rejected:
            print(result.reason)

Usage (signing only):
    from fiber_client import KeyPair, batch_sign, verify_signed

    signed = batch_sign(message, [alice, bob])
    assert verify_signed(signed).is_valid
"""

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerError, CircuitState

# Client
from .client import FiberClient

# Crypto
from .crypto import (
    DATA_UPDATE_PREFIX,
    KeyPair,
    address_from_public_key,
    batch_sign,
    canonicalize,
    co_sign,
    compute_digest,
    encode_data_update,
    hash_message,
    is_valid_private_key,
    is_valid_public_key,
    merge_signed,
    sign,
    verify,
    verify_signed,
)

# Messages
from .messages import (
    ArchiveStateMachine,
    CreateScript,
    CreateStateMachine,
    InvokeScript,
    Message,
    SequenceInfo,
    TransitionStateMachine,
    extract_sequence_info,
    message_from_dict,
    with_sequence,
)
from .node import ClientConfig, LedgerClient

# Rejections
from .rejections import (
    BENIGN_REJECTION_CODES,
    STRICT_BENIGN_CODES,
    RejectionCheck,
    assert_no_rejections,
    is_benign_rejection,
    partition_rejections,
)
from .sequence import SequenceCoordinator

# Snapshots
from .snapshot import (
    OnChainState,
    decode_on_chain_state,
    decode_snapshot,
    event_receipts_for_fiber,
    logs_for_fiber,
    oracle_invocations_for_fiber,
)
from .submit import SubmissionPipeline
from .sync import Synchronizer, WaitConfig
from .types import (
    CanonicalizationError,
    CriticalRejectionError,
    FiberClientError,
    FiberRecord,
    FiberStatus,
    NodeError,
    Proof,
    RejectionEntry,
    RejectionPage,
    RejectionRecord,
    Signed,
    SigningError,
    SnapshotDecodeError,
    SubmissionError,
    SubmitResult,
    VerificationResult,
    WaitResult,
    WaitStatus,
)

__version__ = "0.1.0"
__all__ = [
    # Types
    "FiberRecord",
    "FiberStatus",
    "Proof",
    "Signed",
    "VerificationResult",
    "RejectionEntry",
    "RejectionRecord",
    "RejectionPage",
    "SubmitResult",
    "WaitResult",
    "WaitStatus",
    # Errors
    "FiberClientError",
    "CanonicalizationError",
    "SigningError",
    "NodeError",
    "SubmissionError",
    "CriticalRejectionError",
    "SnapshotDecodeError",
    "CircuitBreakerError",
    # Crypto
    "DATA_UPDATE_PREFIX",
    "KeyPair",
    "address_from_public_key",
    "canonicalize",
    "encode_data_update",
    "hash_message",
    "compute_digest",
    "sign",
    "verify",
    "batch_sign",
    "co_sign",
    "merge_signed",
    "verify_signed",
    "is_valid_private_key",
    "is_valid_public_key",
    # Messages
    "Message",
    "CreateStateMachine",
    "TransitionStateMachine",
    "ArchiveStateMachine",
    "CreateScript",
    "InvokeScript",
    "SequenceInfo",
    "extract_sequence_info",
    "message_from_dict",
    "with_sequence",
    # Sequencing and submission
    "SequenceCoordinator",
    "SubmissionPipeline",
    # Synchronization
    "Synchronizer",
    "WaitConfig",
    # Rejections
    "BENIGN_REJECTION_CODES",
    "STRICT_BENIGN_CODES",
    "RejectionCheck",
    "assert_no_rejections",
    "is_benign_rejection",
    "partition_rejections",
    # Snapshots
    "OnChainState",
    "decode_snapshot",
    "decode_on_chain_state",
    "logs_for_fiber",
    "event_receipts_for_fiber",
    "oracle_invocations_for_fiber",
    # Client
    "ClientConfig",
    "LedgerClient",
    "FiberClient",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
]
