# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Fiber SDK CLI - key management, signing and fiber operations.

Usage:
    python -m fiber_client keygen --out signer.key
    python -m fiber_client address --key-file signer.key
    python -m fiber_client sign @message.json
    python -m fiber_client create @definition.json --initial-data '{"amount": 10}' --wait
    python -m fiber_client transition <fiber_id> approve --payload @payload.json
    python -m fiber_client wait <fiber_id> --state Approved
    python -m fiber_client rejections --fiber-id <fiber_id>
    python -m fiber_client snapshot --fiber-id <fiber_id>

JSON arguments are either inline JSON or @path to a JSON file.
Node URLs default to METAGRAPH_ML0_URL / METAGRAPH_DL1_URL / INDEXER_URL.
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Any

import aiofiles

from .client import FiberClient
from .crypto import KeyPair, batch_sign, verify_signed
from .node import ClientConfig
from .snapshot import event_receipts_for_fiber, logs_for_fiber, oracle_invocations_for_fiber
from .types import FiberClientError, Signed, SigningError


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fiber-sdk",
        description="Fiber SDK - signed state-machine transactions on a metagraph",
    )
    parser.add_argument("--ml0-url", help="Metagraph L0 URL (default: $METAGRAPH_ML0_URL)")
    parser.add_argument("--dl1-url", help="Data L1 URL (default: $METAGRAPH_DL1_URL)")
    parser.add_argument("--indexer-url", help="Rejection indexer URL (default: $INDEXER_URL)")
    parser.add_argument(
        "--key-file",
        help="Private key file (hex, PEM or raw); falls back to $FIBER_SIGNING_KEY",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # keygen command
    keygen_parser = subparsers.add_parser("keygen", help="Generate a secp256k1 key pair")
    keygen_parser.add_argument("--out", help="Write the private key to this file")
    keygen_parser.add_argument(
        "--format",
        choices=["hex", "pem", "raw"],
        default="hex",
        help="Key file format (default: hex)",
    )

    # address command
    subparsers.add_parser("address", help="Show the public key id and DAG address")

    # sign command
    sign_parser = subparsers.add_parser("sign", help="Sign a JSON message")
    sign_parser.add_argument("message", help="Message JSON or @file")
    sign_parser.add_argument(
        "--plain",
        action="store_true",
        help="Sign the bare canonical JSON instead of the DataUpdate envelope",
    )

    # verify command
    verify_parser = subparsers.add_parser("verify", help="Verify a signed message")
    verify_parser.add_argument("signed", help='Signed JSON ({"value", "proofs"}) or @file')
    verify_parser.add_argument("--plain", action="store_true", help="Message was signed in plain mode")

    # create command
    create_cmd_parser = subparsers.add_parser("create", help="Create a state-machine fiber")
    create_cmd_parser.add_argument("definition", help="State machine definition JSON or @file")
    create_cmd_parser.add_argument("--initial-data", default="{}", help="Initial data JSON or @file")
    create_cmd_parser.add_argument("--fiber-id", help="Fiber id (generated if omitted)")
    create_cmd_parser.add_argument("--parent-fiber-id", help="Parent fiber id")
    create_cmd_parser.add_argument("--wait", action="store_true", help="Wait until the fiber is on chain")

    # transition command
    transition_parser = subparsers.add_parser("transition", help="Fire an event on a fiber")
    transition_parser.add_argument("fiber_id")
    transition_parser.add_argument("event", help="Event name")
    transition_parser.add_argument("--payload", default="{}", help="Event payload JSON or @file")
    transition_parser.add_argument("--seq", type=int, help="Explicit target sequence number")
    transition_parser.add_argument("--wait-state", help="Wait until the fiber reaches this state")

    # archive command
    archive_parser = subparsers.add_parser("archive", help="Archive a fiber")
    archive_parser.add_argument("fiber_id")
    archive_parser.add_argument("--seq", type=int, help="Explicit target sequence number")

    # wait command
    wait_parser = subparsers.add_parser("wait", help="Wait for a fiber condition")
    wait_parser.add_argument("fiber_id")
    condition = wait_parser.add_mutually_exclusive_group()
    condition.add_argument("--state", help="Expected state label")
    condition.add_argument("--sequence", type=int, help="Minimum sequence number")
    wait_parser.add_argument("--timeout", type=float, help="Seconds (default: $FIBER_TIMEOUT_MS)")

    # rejections command
    rejections_parser = subparsers.add_parser("rejections", help="List rejected transactions")
    rejections_parser.add_argument("--fiber-id")
    rejections_parser.add_argument("--update-type")
    rejections_parser.add_argument("--error-code")
    rejections_parser.add_argument("--limit", type=int, default=20)

    # snapshot command
    snapshot_parser = subparsers.add_parser("snapshot", help="Decode on-chain state of a snapshot")
    snapshot_parser.add_argument("--ordinal", type=int, help="Snapshot ordinal (default: latest)")
    snapshot_parser.add_argument("--fiber-id", help="Show only this fiber's commit and logs")

    return parser


async def load_json_arg(value: str) -> Any:
    """Parse inline JSON, or read a JSON file when the value is @path."""
    if value.startswith("@"):
        async with aiofiles.open(value[1:], "r", encoding="utf-8") as f:
            value = await f.read()
    return json.loads(value)


def load_key(args: argparse.Namespace) -> KeyPair:
    if args.key_file:
        return KeyPair.from_file(args.key_file)
    return KeyPair.from_env()


def build_config(args: argparse.Namespace) -> ClientConfig:
    config = ClientConfig.from_env()
    overrides = {
        "ml0_url": args.ml0_url,
        "dl1_url": args.dl1_url,
        "indexer_url": args.indexer_url,
    }
    overrides = {k: v for k, v in overrides.items() if v}
    if overrides:
        config = dataclasses.replace(config, **overrides)
    return config


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def print_wait(label: str, result) -> int:
    print(f"{label}: {result.status.value} after {result.attempts} attempt(s), value={result.value!r}")
    if result.reason:
        print(f"  reason: {result.reason}")
    return 0 if result.reached else 1


async def cmd_keygen(args: argparse.Namespace) -> int:
    """Generate a key pair."""
    key = KeyPair.generate()
    print(f"Address:    {key.address}")
    print(f"Public key: {key.public_key_hex}")
    if args.out:
        path = key.save_to_file(args.out, args.format)
        print(f"Saved private key to: {path}")
    else:
        print(f"Private key: {key.private_key_hex}")
    return 0


async def cmd_address(args: argparse.Namespace) -> int:
    key = load_key(args)
    print(f"Address: {key.address}")
    print(f"Id:      {key.id}")
    return 0


async def cmd_sign(args: argparse.Namespace) -> int:
    """Sign a message and print the Signed JSON."""
    message = await load_json_arg(args.message)
    key = load_key(args)
    signed = batch_sign(message, [key], data_update=not args.plain)
    print_json(signed.to_dict())
    return 0


async def cmd_verify(args: argparse.Namespace) -> int:
    """Verify every proof of a signed message."""
    signed = Signed.from_dict(await load_json_arg(args.signed))
    result = verify_signed(signed, data_update=not args.plain)

    print(f"Status: {'VALID' if result.is_valid else 'INVALID'}")
    for proof in result.valid_proofs:
        print(f"  ok      {proof.id[:16]}...")
    for proof in result.invalid_proofs:
        print(f"  INVALID {proof.id[:16]}...")
    return 0 if result.is_valid else 1


async def cmd_create(args: argparse.Namespace) -> int:
    definition = await load_json_arg(args.definition)
    initial_data = await load_json_arg(args.initial_data)

    async with FiberClient(build_config(args), key=load_key(args)) as client:
        result = await client.create_state_machine(
            definition,
            initial_data,
            fiber_id=args.fiber_id,
            parent_fiber_id=args.parent_fiber_id,
        )
        print(f"Fiber:  {result.fiber_id}")
        print(f"Hash:   {result.hash}")
        if args.wait:
            return print_wait("Fiber", await client.wait_for_fiber(result.fiber_id))
    return 0


async def cmd_transition(args: argparse.Namespace) -> int:
    payload = await load_json_arg(args.payload)

    async with FiberClient(build_config(args), key=load_key(args)) as client:
        result = await client.transition(
            args.fiber_id, args.event, payload, target_sequence_number=args.seq
        )
        print(f"Submitted {args.event} at seq {result.target_sequence_number}: {result.hash}")
        if args.wait_state:
            wait = await client.wait_for_state(args.fiber_id, args.wait_state)
            return print_wait("State", wait)
    return 0


async def cmd_archive(args: argparse.Namespace) -> int:
    async with FiberClient(build_config(args), key=load_key(args)) as client:
        result = await client.archive(args.fiber_id, target_sequence_number=args.seq)
        print(f"Archived at seq {result.target_sequence_number}: {result.hash}")
    return 0


async def cmd_wait(args: argparse.Namespace) -> int:
    async with FiberClient(build_config(args)) as client:
        if args.state:
            result = await client.wait_for_state(args.fiber_id, args.state, args.timeout)
        elif args.sequence is not None:
            result = await client.wait_for_sequence(args.fiber_id, args.sequence, args.timeout)
        else:
            result = await client.wait_for_fiber(args.fiber_id, args.timeout)
    return print_wait(args.fiber_id, result)


async def cmd_rejections(args: argparse.Namespace) -> int:
    async with FiberClient(build_config(args)) as client:
        page = await client.query_rejections(
            fiber_id=args.fiber_id,
            update_type=args.update_type,
            error_code=args.error_code,
            limit=args.limit,
        )

    print(f"Rejections: {len(page.rejections)} of {page.total}")
    for record in page.rejections:
        codes = ", ".join(record.codes) or "-"
        print(f"  [{record.ordinal}] {record.update_type or '?'} {record.fiber_id} {codes}")
    return 0


async def cmd_snapshot(args: argparse.Namespace) -> int:
    async with FiberClient(build_config(args)) as client:
        if args.ordinal is None:
            state = await client.get_latest_on_chain_state()
        else:
            state = await client.get_snapshot_on_chain_state(args.ordinal)

    if state is None:
        print("Snapshot has no on-chain state")
        return 1

    if args.fiber_id:
        print_json({
            "commit": state.fiber_commits.get(args.fiber_id),
            "logs": logs_for_fiber(state, args.fiber_id),
            "eventReceipts": len(event_receipts_for_fiber(state, args.fiber_id)),
            "oracleInvocations": len(oracle_invocations_for_fiber(state, args.fiber_id)),
        })
    else:
        print(f"Fibers committed: {len(state.fiber_commits)}")
        for fiber_id, commit in sorted(state.fiber_commits.items()):
            print(f"  {fiber_id}  seq={commit.get('sequenceNumber')}")
    return 0


COMMANDS = {
    "keygen": cmd_keygen,
    "address": cmd_address,
    "sign": cmd_sign,
    "verify": cmd_verify,
    "create": cmd_create,
    "transition": cmd_transition,
    "archive": cmd_archive,
    "wait": cmd_wait,
    "rejections": cmd_rejections,
    "snapshot": cmd_snapshot,
}


async def main_async(args: argparse.Namespace) -> int:
    """Async main entry point."""
    command = COMMANDS.get(args.command)
    if command is None:
        create_parser().print_help()
        return 0

    try:
        return await command(args)
    except SigningError as e:
        print(f"Key error: {e}", file=sys.stderr)
        return 2
    except (FiberClientError, KeyError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(main_async(args))


if __name__ == "__main__":
    sys.exit(main())
