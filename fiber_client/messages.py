# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Transaction kinds accepted by the ledger.

Every message serializes to a single-key object naming its kind:

    {"TransitionStateMachine": {"fiberId": ..., "eventName": ..., ...}}

The set of kinds is closed; message_from_dict rejects anything else.
Fiber definitions, payloads and script programs are opaque JSON and are
transmitted verbatim.
"""

import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Optional


def _new_fiber_id() -> str:
    return str(uuid.uuid4())


class Message:
    """Base class of all transaction kinds."""

    kind: str = ""

    def body(self) -> dict[str, Any]:
        raise NotImplementedError

    def to_dict(self) -> dict[str, Any]:
        return {self.kind: self.body()}


@dataclass(frozen=True)
class CreateStateMachine(Message):
    """Create a fiber. Carries no sequence number; the ledger starts it at 0."""
    definition: dict[str, Any]
    initial_data: Any = field(default_factory=dict)
    fiber_id: str = field(default_factory=_new_fiber_id)
    parent_fiber_id: Optional[str] = None

    kind = "CreateStateMachine"

    def body(self) -> dict[str, Any]:
        return {
            "fiberId": self.fiber_id,
            "definition": self.definition,
            "initialData": self.initial_data,
            "parentFiberId": self.parent_fiber_id,
        }


@dataclass(frozen=True)
class TransitionStateMachine(Message):
    """Fire an event on a fiber, valid only at the given sequence number."""
    fiber_id: str
    event_name: str
    target_sequence_number: int
    payload: Any = field(default_factory=dict)

    kind = "TransitionStateMachine"

    def body(self) -> dict[str, Any]:
        return {
            "fiberId": self.fiber_id,
            "eventName": self.event_name,
            "payload": self.payload,
            "targetSequenceNumber": self.target_sequence_number,
        }


@dataclass(frozen=True)
class ArchiveStateMachine(Message):
    fiber_id: str
    target_sequence_number: int

    kind = "ArchiveStateMachine"

    def body(self) -> dict[str, Any]:
        return {
            "fiberId": self.fiber_id,
            "targetSequenceNumber": self.target_sequence_number,
        }


@dataclass(frozen=True)
class CreateScript(Message):
    """Register a script oracle fiber (side effects only, no state machine)."""
    script_program: Any
    initial_state: Any = None
    access_control: dict[str, Any] = field(default_factory=lambda: {"Public": {}})
    fiber_id: str = field(default_factory=_new_fiber_id)

    kind = "CreateScript"

    def body(self) -> dict[str, Any]:
        body = {
            "fiberId": self.fiber_id,
            "scriptProgram": self.script_program,
            "accessControl": self.access_control,
        }
        if self.initial_state is not None:
            body["initialState"] = self.initial_state
        return body


@dataclass(frozen=True)
class InvokeScript(Message):
    fiber_id: str
    method: str
    args: Any = field(default_factory=dict)
    target_sequence_number: Optional[int] = None

    kind = "InvokeScript"

    def body(self) -> dict[str, Any]:
        body = {
            "fiberId": self.fiber_id,
            "method": self.method,
            "args": self.args,
        }
        if self.target_sequence_number is not None:
            body["targetSequenceNumber"] = self.target_sequence_number
        return body


MESSAGE_TYPES = (
    CreateStateMachine,
    TransitionStateMachine,
    ArchiveStateMachine,
    CreateScript,
    InvokeScript,
)


@dataclass(frozen=True)
class SequenceInfo:
    """The fiber a message addresses and the sequence number it expects."""
    fiber_id: str
    target_sequence_number: int


def fiber_id_of(message: Message) -> str:
    if not isinstance(message, MESSAGE_TYPES):
        raise TypeError(f"Not a message: {type(message).__name__}")
    return message.fiber_id


def extract_sequence_info(message: Message) -> Optional[SequenceInfo]:
    """
    Sequence info for sequence-bearing messages, None otherwise.

    Creates never carry a target; an InvokeScript carries one only if set.
    """
    if isinstance(message, (CreateStateMachine, CreateScript)):
        return None
    if isinstance(message, (TransitionStateMachine, ArchiveStateMachine)):
        return SequenceInfo(message.fiber_id, message.target_sequence_number)
    if isinstance(message, InvokeScript):
        if message.target_sequence_number is None:
            return None
        return SequenceInfo(message.fiber_id, message.target_sequence_number)
    raise TypeError(f"Not a message: {type(message).__name__}")


def with_sequence(message: Message, target_sequence_number: int) -> Message:
    """
    Copy of a sequence-bearing message targeting another sequence number.

    Raises:
        TypeError: For creates, which carry no sequence number
    """
    if isinstance(message, (TransitionStateMachine, ArchiveStateMachine, InvokeScript)):
        return replace(message, target_sequence_number=target_sequence_number)
    raise TypeError(f"{type(message).__name__} does not carry a sequence number")


def message_from_dict(data: dict[str, Any]) -> Message:
    """
    Parse the wire form of a message.

    Raises:
        ValueError: If the object is not a single known kind
    """
    if not isinstance(data, dict) or len(data) != 1:
        raise ValueError("Message must be a single-key object naming its kind")

    (kind, body), = data.items()
    if not isinstance(body, dict):
        raise ValueError(f"Body of {kind} must be an object")

    try:
        if kind == "CreateStateMachine":
            return CreateStateMachine(
                fiber_id=body["fiberId"],
                definition=body["definition"],
                initial_data=body.get("initialData", {}),
                parent_fiber_id=body.get("parentFiberId"),
            )
        if kind == "TransitionStateMachine":
            return TransitionStateMachine(
                fiber_id=body["fiberId"],
                event_name=body["eventName"],
                payload=body.get("payload", {}),
                target_sequence_number=body["targetSequenceNumber"],
            )
        if kind == "ArchiveStateMachine":
            return ArchiveStateMachine(
                fiber_id=body["fiberId"],
                target_sequence_number=body["targetSequenceNumber"],
            )
        if kind == "CreateScript":
            return CreateScript(
                fiber_id=body["fiberId"],
                script_program=body["scriptProgram"],
                initial_state=body.get("initialState"),
                access_control=body.get("accessControl", {"Public": {}}),
            )
        if kind == "InvokeScript":
            return InvokeScript(
                fiber_id=body["fiberId"],
                method=body["method"],
                args=body.get("args", {}),
                target_sequence_number=body.get("targetSequenceNumber"),
            )
    except KeyError as e:
        raise ValueError(f"{kind} is missing field {e.args[0]}") from e

    raise ValueError(f"Unknown message kind: {kind}")
