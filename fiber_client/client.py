# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Fiber Client - high-level API over the ledger nodes.
"""

import logging
from typing import Any, Optional

from .crypto import KeyPair
from .messages import (
    ArchiveStateMachine,
    CreateScript,
    CreateStateMachine,
    InvokeScript,
    Message,
    TransitionStateMachine,
)
from .node import ClientConfig, LedgerClient
from .rejections import BENIGN_REJECTION_CODES, RejectionCheck, assert_no_rejections
from .sequence import SequenceCoordinator
from .snapshot import OnChainState, decode_snapshot
from .submit import Keys, SubmissionPipeline
from .sync import Synchronizer, WaitConfig
from .types import (
    FiberRecord,
    RejectionPage,
    RejectionRecord,
    SigningError,
    SubmitResult,
    WaitResult,
)

logger = logging.getLogger(__name__)


class FiberClient:
    """
    Async client for creating and driving fibers.

    Features:
    - Optimistic sequence numbers for back-to-back transitions
    - Multi-signature submission (pass a list of keys)
    - Polling waits that fail fast on critical rejections
    - Per-node circuit breakers

    Usage:
        async with FiberClient(ClientConfig.from_env(), key=KeyPair.from_env()) as client:
            created = await client.create_state_machine(definition, {"amount": 10})
            await client.wait_for_fiber(created.fiber_id)

            await client.transition(created.fiber_id, "approve", {"by": "alice"})
            result = await client.wait_for_state(created.fiber_id, "Approved")
            if result.rejected:
                print(result.reason)
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        key: Optional[KeyPair] = None,
        wait_config: Optional[WaitConfig] = None,
        coordinator: Optional[SequenceCoordinator] = None,
    ):
        self.config = config or ClientConfig()
        self.key = key
        self.node = LedgerClient(self.config)
        self.coordinator = coordinator or SequenceCoordinator(self.node.get_fiber_sequence)
        self.pipeline = SubmissionPipeline(self.node, self.coordinator)
        self.sync = Synchronizer(self.node, wait_config)

    async def __aenter__(self):
        await self.node.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.node.close()
        return False

    async def close(self) -> None:
        await self.node.close()

    def _keys(self, keys: Optional[Keys]) -> Keys:
        if keys is not None:
            return keys
        if self.key is None:
            raise SigningError("No signing key given and no default key configured")
        return self.key

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(self, message: Message, keys: Optional[Keys] = None) -> SubmitResult:
        """Submit a prebuilt message as-is."""
        return await self.pipeline.submit(message, self._keys(keys))

    async def create_state_machine(
        self,
        definition: dict[str, Any],
        initial_data: Any = None,
        fiber_id: Optional[str] = None,
        parent_fiber_id: Optional[str] = None,
        keys: Optional[Keys] = None,
    ) -> SubmitResult:
        """Create a fiber. A fiber id is generated when none is given."""
        fields: dict[str, Any] = {
            "definition": definition,
            "initial_data": {} if initial_data is None else initial_data,
            "parent_fiber_id": parent_fiber_id,
        }
        if fiber_id:
            fields["fiber_id"] = fiber_id
        return await self.submit(CreateStateMachine(**fields), keys)

    async def transition(
        self,
        fiber_id: str,
        event_name: str,
        payload: Any = None,
        keys: Optional[Keys] = None,
        target_sequence_number: Optional[int] = None,
    ) -> SubmitResult:
        """
        Fire an event on a fiber.

        Without an explicit target the next sequence number is resolved under
        the fiber's lock, so concurrent calls get consecutive targets.
        """
        payload = {} if payload is None else payload
        if target_sequence_number is not None:
            return await self.submit(
                TransitionStateMachine(fiber_id, event_name, target_sequence_number, payload),
                keys,
            )
        return await self.pipeline.submit_next(
            fiber_id,
            lambda seq: TransitionStateMachine(fiber_id, event_name, seq, payload),
            self._keys(keys),
        )

    async def archive(
        self,
        fiber_id: str,
        keys: Optional[Keys] = None,
        target_sequence_number: Optional[int] = None,
    ) -> SubmitResult:
        if target_sequence_number is not None:
            return await self.submit(ArchiveStateMachine(fiber_id, target_sequence_number), keys)
        return await self.pipeline.submit_next(
            fiber_id,
            lambda seq: ArchiveStateMachine(fiber_id, seq),
            self._keys(keys),
        )

    async def create_script(
        self,
        script_program: Any,
        initial_state: Any = None,
        access_control: Optional[dict[str, Any]] = None,
        fiber_id: Optional[str] = None,
        keys: Optional[Keys] = None,
    ) -> SubmitResult:
        fields: dict[str, Any] = {"script_program": script_program, "initial_state": initial_state}
        if access_control is not None:
            fields["access_control"] = access_control
        if fiber_id:
            fields["fiber_id"] = fiber_id
        return await self.submit(CreateScript(**fields), keys)

    async def invoke_script(
        self,
        fiber_id: str,
        method: str,
        args: Any = None,
        keys: Optional[Keys] = None,
        target_sequence_number: Optional[int] = None,
        sequenced: bool = True,
    ) -> SubmitResult:
        """
        Invoke a script method.

        With sequenced=False the invocation carries no target and bypasses
        the sequence cache.
        """
        args = {} if args is None else args
        if target_sequence_number is not None or not sequenced:
            return await self.submit(
                InvokeScript(fiber_id, method, args, target_sequence_number), keys
            )
        return await self.pipeline.submit_next(
            fiber_id,
            lambda seq: InvokeScript(fiber_id, method, args, seq),
            self._keys(keys),
        )

    async def get_next_sequence(self, fiber_id: str) -> int:
        return await self.coordinator.get_next(fiber_id)

    # =========================================================================
    # Synchronization
    # =========================================================================

    async def wait_for_fiber(self, fiber_id: str, timeout: Optional[float] = None,
                             since_ordinal: Optional[int] = None) -> WaitResult:
        return await self.sync.wait_for_fiber(fiber_id, timeout, since_ordinal)

    async def wait_for_state(self, fiber_id: str, expected_state: str, timeout: Optional[float] = None,
                             since_ordinal: Optional[int] = None) -> WaitResult:
        return await self.sync.wait_for_state(fiber_id, expected_state, timeout, since_ordinal)

    async def wait_for_sequence(self, fiber_id: str, target_sequence_number: int,
                                timeout: Optional[float] = None,
                                since_ordinal: Optional[int] = None) -> WaitResult:
        return await self.sync.wait_for_sequence(fiber_id, target_sequence_number, timeout, since_ordinal)

    async def wait_for_snapshot(self, min_ordinal: int, timeout: Optional[float] = None) -> WaitResult:
        return await self.sync.wait_for_snapshot(min_ordinal, timeout)

    async def assert_no_rejections(
        self,
        fiber_id: str,
        since_ordinal: Optional[int] = None,
        benign_codes=BENIGN_REJECTION_CODES,
    ) -> RejectionCheck:
        return await assert_no_rejections(self.node, fiber_id, since_ordinal, benign_codes)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_state_machine(self, fiber_id: str) -> Optional[FiberRecord]:
        return await self.node.get_state_machine(fiber_id)

    async def get_state_machines(self, status: Optional[str] = None) -> dict[str, FiberRecord]:
        return await self.node.get_state_machines(status)

    async def get_script(self, fiber_id: str) -> Optional[dict[str, Any]]:
        return await self.node.get_script(fiber_id)

    async def get_scripts(self) -> dict[str, Any]:
        return await self.node.get_scripts()

    async def get_checkpoint(self) -> dict[str, Any]:
        return await self.node.get_checkpoint()

    async def get_latest_on_chain_state(self) -> Optional[OnChainState]:
        return decode_snapshot(await self.node.get_latest_snapshot())

    async def get_snapshot_on_chain_state(self, ordinal: int) -> Optional[OnChainState]:
        """On-chain state at a given ordinal, None if the snapshot or its data part is missing."""
        snapshot = await self.node.get_snapshot(ordinal)
        if snapshot is None:
            return None
        return decode_snapshot(snapshot)

    async def query_rejections(self, **filters) -> RejectionPage:
        return await self.node.query_rejections(**filters)

    async def get_rejection(self, update_hash: str) -> Optional[RejectionRecord]:
        return await self.node.get_rejection(update_hash)

    async def is_healthy(self) -> bool:
        return await self.node.is_healthy()

    def get_stats(self) -> dict:
        stats = self.node.get_stats()
        stats["submissions"] = self.pipeline.get_stats()
        stats["signer"] = self.key.address if self.key else None
        return stats
