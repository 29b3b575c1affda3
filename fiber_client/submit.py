# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Submission pipeline: sign, post to DL1, keep the sequence cache honest.

This is the only code that mutates the SequenceCoordinator:
- success: advance the fiber's cached sequence past the submitted target
- failure: reset the fiber so the next attempt re-reads the ledger

Local errors (canonicalization, bad keys) surface before any network
traffic and leave the cache untouched.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Union

import aiohttp

from .circuit_breaker import CircuitBreakerError
from .crypto import KeyPair, batch_sign, hash_message
from .messages import Message, extract_sequence_info, fiber_id_of
from .sequence import SequenceCoordinator
from .node import LedgerClient
from .types import NodeError, SubmissionError, SubmitResult

logger = logging.getLogger(__name__)

KeyLike = Union[KeyPair, str]
Keys = Union[KeyLike, Iterable[KeyLike]]

MessageBuilder = Callable[[int], Union[Message, Awaitable[Message]]]


def _as_key_list(keys: Keys) -> list[KeyLike]:
    if isinstance(keys, (KeyPair, str)):
        return [keys]
    return list(keys)


class SubmissionPipeline:
    """
    Signs and submits messages, driving the sequence coordinator.

    Usage:
        pipeline = SubmissionPipeline(node, SequenceCoordinator(node.get_fiber_sequence))

        result = await pipeline.submit_next(
            fiber_id,
            lambda seq: TransitionStateMachine(fiber_id, "approve", seq),
            key,
        )
    """

    def __init__(self, node: LedgerClient, coordinator: SequenceCoordinator):
        self.node = node
        self.coordinator = coordinator
        self._submitted = 0
        self._failed = 0

    async def submit(self, message: Message, keys: Keys) -> SubmitResult:
        """
        Sign a message with one or more keys and post it to DL1.

        Args:
            message: Message to submit
            keys: One key or several co-signer keys (KeyPair or hex)

        Returns:
            SubmitResult with the transaction hash and, if assigned, the ordinal

        Raises:
            CanonicalizationError / SigningError: Before any network call
            SubmissionError: On HTTP, network, timeout or open-circuit failure
        """
        info = extract_sequence_info(message)
        fiber_id = fiber_id_of(message)
        signed = batch_sign(message, _as_key_list(keys))
        local_hash = hash_message(signed.value)

        try:
            response = await self.node.post_data(signed)
        except (NodeError, CircuitBreakerError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._failed += 1
            if info is not None:
                self.coordinator.reset(info.fiber_id)
            status = getattr(e, "status", None)
            body = getattr(e, "body", None)
            logger.warning(f"Submission of {message.kind} for {fiber_id} failed: {e}")
            raise SubmissionError(
                f"{message.kind} for {fiber_id} was not accepted: {str(e) or type(e).__name__}",
                status=status,
                response=body,
                fiber_id=fiber_id,
                target_sequence_number=info.target_sequence_number if info else None,
            ) from e

        self._submitted += 1
        if info is not None:
            self.coordinator.advance(info.fiber_id, info.target_sequence_number)

        tx_hash = (response or {}).get("hash") or local_hash
        ordinal = (response or {}).get("ordinal")
        logger.info(
            f"Submitted {message.kind} for {fiber_id}"
            + (f" at seq {info.target_sequence_number}" if info else "")
            + f": {tx_hash}"
        )
        return SubmitResult(
            hash=tx_hash,
            ordinal=None if ordinal is None else int(ordinal),
            fiber_id=fiber_id,
            target_sequence_number=info.target_sequence_number if info else None,
        )

    async def submit_next(self, fiber_id: str, build: MessageBuilder, keys: Keys) -> SubmitResult:
        """
        Resolve the next sequence number for a fiber, build the message and submit it.

        Holds the fiber's lock across read, build and submit, so concurrent
        callers on one fiber get consecutive targets.

        Args:
            fiber_id: Fiber to address
            build: Called with the target sequence number; returns the message
                (may be a coroutine function)
            keys: One key or several co-signer keys
        """
        async with self.coordinator.lock(fiber_id):
            target = await self.coordinator.get_next(fiber_id)
            message = build(target)
            if asyncio.iscoroutine(message):
                message = await message
            return await self.submit(message, keys)

    def get_stats(self) -> dict:
        return {
            "submitted": self._submitted,
            "failed": self._failed,
            "sequence_cache": self.coordinator.get_stats(),
        }
