# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Shared fixtures: an in-process fake metagraph (DL1 + ML0 + indexer on one port).

The fake validates signatures, enforces sequence numbers and state-machine
transitions, and records rejections the way the indexer reports them:
accepted over HTTP, rejected asynchronously.
"""

import copy
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from fiber_client.crypto import KeyPair, canonicalize, hash_message, verify_signed
from fiber_client.node import ClientConfig, LedgerClient
from fiber_client.types import Signed


APPROVAL_DEFINITION = {
    "states": {
        "Draft": {"id": {"value": "Draft"}, "isFinal": False},
        "Submitted": {"id": {"value": "Submitted"}, "isFinal": False},
        "Approved": {"id": {"value": "Approved"}, "isFinal": True},
    },
    "initialState": {"value": "Draft"},
    "transitions": [
        {"from": {"value": "Draft"}, "to": {"value": "Draft"}, "eventName": "ping",
         "guard": True, "effect": {"merge": [{"var": "state"}, {"pinged": True}]}},
        {"from": {"value": "Draft"}, "to": {"value": "Submitted"}, "eventName": "submit",
         "guard": True, "effect": {"var": "state"}},
        {"from": {"value": "Submitted"}, "to": {"value": "Approved"}, "eventName": "approve",
         "guard": {"==": [{"var": "event.approved"}, True]}, "effect": {"var": "state"}},
    ],
}


class FakeLedger:
    """Minimal metagraph: applies updates synchronously, reads can be frozen."""

    def __init__(self):
        self.fibers: dict[str, dict] = {}
        self.scripts: dict[str, dict] = {}
        self.logs: dict[str, list[dict]] = {}
        self.rejections: list[dict] = []
        self.ordinal = 0
        self.posts: list[dict] = []
        self.url = ""

        # Fault injection
        self.post_failure: tuple[int, str] | None = None
        self.indexer_failure: int | None = None
        self.failing_reads = 0
        self.omit_hash = False
        # Raw DL1 on-chain body served instead of the computed one
        self.onchain_override: dict | None = None
        self._frozen: tuple[dict, dict, dict] | None = None

    # -------------------------------------------------------------------------
    # Test controls
    # -------------------------------------------------------------------------

    def freeze_reads(self) -> None:
        """Reads keep returning the current view until thaw_reads()."""
        self._frozen = copy.deepcopy((self.fibers, self.scripts, self.logs))

    def thaw_reads(self) -> None:
        self._frozen = None

    def inject_rejection(self, fiber_id: str, codes: list[str], ordinal: int | None = None,
                         update_type: str = "TransitionStateMachine") -> dict:
        if ordinal is None:
            self.ordinal += 1
            ordinal = self.ordinal
        record = {
            "id": len(self.rejections) + 1,
            "ordinal": ordinal,
            "updateType": update_type,
            "fiberId": fiber_id,
            "updateHash": f"{fiber_id}-{len(self.rejections)}",
            "errors": [{"code": c, "message": f"{c} raised by validator"} for c in codes],
            "signers": [],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self.rejections.append(record)
        return record

    def config(self, **overrides) -> ClientConfig:
        settings = {
            "ml0_url": self.url,
            "dl1_url": self.url,
            "indexer_url": self.url,
            "timeout_ms": 2000,
            "poll_interval_ms": 10,
        }
        settings.update(overrides)
        return ClientConfig(**settings)

    # -------------------------------------------------------------------------
    # Ledger semantics
    # -------------------------------------------------------------------------

    def _view(self) -> tuple[dict, dict, dict]:
        if self._frozen is not None:
            return self._frozen
        return self.fibers, self.scripts, self.logs

    def _commits(self) -> dict:
        fibers, scripts, _ = self._view()
        return {
            fid: {"sequenceNumber": record["sequenceNumber"]}
            for fid, record in {**fibers, **scripts}.items()
        }

    def _reject(self, kind: str, fiber_id: str, update_hash: str, signers: list[str],
                code: str, message: str) -> None:
        self.rejections.append({
            "id": len(self.rejections) + 1,
            "ordinal": self.ordinal,
            "updateType": kind,
            "fiberId": fiber_id,
            "updateHash": update_hash,
            "errors": [{"code": code, "message": message}],
            "signers": signers,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def apply(self, value: dict, update_hash: str, signers: list[str]) -> None:
        (kind, body), = value.items()
        fiber_id = body["fiberId"]
        self.ordinal += 1

        if kind == "CreateStateMachine":
            initial = body["definition"].get("initialState")
            self.fibers[fiber_id] = {
                "fiberId": fiber_id,
                "sequenceNumber": 0,
                "currentState": {"value": initial["value"] if isinstance(initial, dict) else initial},
                "stateData": body.get("initialData"),
                "owners": signers,
                "status": "Active",
                "definition": body["definition"],
                "parentFiberId": body.get("parentFiberId"),
            }
            return

        if kind == "CreateScript":
            self.scripts[fiber_id] = {
                "fiberId": fiber_id,
                "sequenceNumber": 0,
                "scriptProgram": body["scriptProgram"],
                "stateData": body.get("initialState"),
                "accessControl": body["accessControl"],
                "status": "Active",
            }
            return

        record = self.fibers.get(fiber_id) or self.scripts.get(fiber_id)
        if record is None:
            self._reject(kind, fiber_id, update_hash, signers, "FiberNotFound", f"No fiber {fiber_id}")
            return

        target = body.get("targetSequenceNumber")
        if target is not None and target != record["sequenceNumber"]:
            self._reject(
                kind, fiber_id, update_hash, signers, "SequenceNumberMismatch",
                f"expected {record['sequenceNumber']}, got {target}",
            )
            return

        if kind == "TransitionStateMachine":
            current = record["currentState"]["value"]
            match = None
            for transition in record["definition"].get("transitions", []):
                if transition["from"]["value"] == current and transition["eventName"] == body["eventName"]:
                    match = transition
                    break
            if match is None:
                self._reject(
                    kind, fiber_id, update_hash, signers, "NoTransitionForEvent",
                    f"no transition for {body['eventName']} from {current}",
                )
                return
            record["currentState"] = {"value": match["to"]["value"]}
            self.logs.setdefault(fiber_id, []).append({
                "fiberId": fiber_id,
                "eventName": body["eventName"],
                "success": True,
                "ordinal": self.ordinal,
                "fromState": {"value": current},
                "toState": match["to"],
            })
        elif kind == "ArchiveStateMachine":
            record["status"] = "Archived"
        elif kind == "InvokeScript":
            self.logs.setdefault(fiber_id, []).append({
                "fiberId": fiber_id,
                "method": body["method"],
                "args": body.get("args"),
                "result": {"ok": True},
                "ordinal": self.ordinal,
            })

        record["sequenceNumber"] += 1

    # -------------------------------------------------------------------------
    # HTTP handlers
    # -------------------------------------------------------------------------

    async def handle_post_data(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.posts.append(body)
        if self.post_failure:
            status, text = self.post_failure
            return web.json_response({"error": text}, status=status)

        signed = Signed.from_dict(body["data"])
        if not verify_signed(signed).is_valid:
            return web.json_response({"error": "InvalidSignature"}, status=400)

        update_hash = hash_message(signed.value)
        self.apply(signed.value, update_hash, signed.signer_ids)
        if self.omit_hash:
            return web.json_response({})
        return web.json_response({"hash": update_hash})

    async def handle_onchain(self, request: web.Request) -> web.Response:
        if self.failing_reads > 0:
            self.failing_reads -= 1
            return web.json_response({"error": "unavailable"}, status=503)
        if self.onchain_override is not None:
            return web.json_response(self.onchain_override)
        _, _, logs = self._view()
        return web.json_response({"fiberCommits": self._commits(), "latestLogs": logs})

    async def handle_state_machines(self, request: web.Request) -> web.Response:
        fibers, _, _ = self._view()
        status = request.query.get("status")
        return web.json_response({
            fid: f for fid, f in fibers.items() if status is None or f["status"] == status
        })

    async def handle_state_machine(self, request: web.Request) -> web.Response:
        fibers, _, _ = self._view()
        fiber = fibers.get(request.match_info["fiber_id"])
        if fiber is None:
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response(fiber)

    async def handle_scripts(self, request: web.Request) -> web.Response:
        _, scripts, _ = self._view()
        return web.json_response(scripts)

    async def handle_script(self, request: web.Request) -> web.Response:
        _, scripts, _ = self._view()
        script = scripts.get(request.match_info["fiber_id"])
        if script is None:
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response(script)

    async def handle_checkpoint(self, request: web.Request) -> web.Response:
        fibers, scripts, _ = self._view()
        return web.json_response({
            "ordinal": self.ordinal,
            "state": {"stateMachines": fibers, "scripts": scripts},
        })

    def _snapshot(self, ordinal: int) -> dict:
        value: dict = {"ordinal": ordinal}
        if ordinal > 0:
            _, _, logs = self._view()
            on_chain = canonicalize({"fiberCommits": self._commits(), "latestLogs": logs})
            value["dataApplication"] = {"onChainState": list(on_chain), "blocks": []}
        return {"value": value, "proofs": []}

    async def handle_latest_snapshot(self, request: web.Request) -> web.Response:
        return web.json_response(self._snapshot(self.ordinal))

    async def handle_snapshot(self, request: web.Request) -> web.Response:
        ordinal = int(request.match_info["ordinal"])
        if ordinal < 0 or ordinal > self.ordinal:
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response(self._snapshot(ordinal))

    async def handle_rejections(self, request: web.Request) -> web.Response:
        if self.indexer_failure:
            return web.json_response({"error": "indexer down"}, status=self.indexer_failure)

        q = request.query
        records = sorted(self.rejections, key=lambda r: r["ordinal"], reverse=True)
        if "fiberId" in q:
            records = [r for r in records if r["fiberId"] == q["fiberId"]]
        if "updateType" in q:
            records = [r for r in records if r["updateType"] == q["updateType"]]
        if "signer" in q:
            records = [r for r in records if q["signer"] in r["signers"]]
        if "errorCode" in q:
            records = [r for r in records if any(e["code"] == q["errorCode"] for e in r["errors"])]
        if "fromOrdinal" in q:
            records = [r for r in records if r["ordinal"] >= int(q["fromOrdinal"])]
        if "toOrdinal" in q:
            records = [r for r in records if r["ordinal"] <= int(q["toOrdinal"])]

        limit = min(int(q.get("limit", 50)), 100)
        offset = int(q.get("offset", 0))
        page = records[offset:offset + limit]
        return web.json_response({
            "rejections": page,
            "total": len(records),
            "hasMore": offset + len(page) < len(records),
        })

    async def handle_rejection(self, request: web.Request) -> web.Response:
        for record in self.rejections:
            if record["updateHash"] == request.match_info["update_hash"]:
                return web.json_response(record)
        return web.json_response({"error": "not found"}, status=404)

    async def handle_node_info(self, request: web.Request) -> web.Response:
        return web.json_response({"state": "Ready"})

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/data", self.handle_post_data)
        app.router.add_get("/data-application/v1/onchain", self.handle_onchain)
        app.router.add_get("/data-application/v1/state-machines", self.handle_state_machines)
        app.router.add_get("/data-application/v1/state-machines/{fiber_id}", self.handle_state_machine)
        app.router.add_get("/data-application/v1/scripts", self.handle_scripts)
        app.router.add_get("/data-application/v1/scripts/{fiber_id}", self.handle_script)
        app.router.add_get("/data-application/v1/checkpoint", self.handle_checkpoint)
        app.router.add_get("/snapshots/latest", self.handle_latest_snapshot)
        app.router.add_get("/snapshots/{ordinal}", self.handle_snapshot)
        app.router.add_get("/api/rejections", self.handle_rejections)
        app.router.add_get("/api/rejections/{update_hash}", self.handle_rejection)
        app.router.add_get("/node/info", self.handle_node_info)
        return app


@pytest.fixture
def definition():
    return copy.deepcopy(APPROVAL_DEFINITION)


@pytest.fixture
def key():
    return KeyPair.generate()


@pytest.fixture
def cosigner():
    return KeyPair.generate()


@pytest_asyncio.fixture
async def ledger():
    fake = FakeLedger()
    server = TestServer(fake.build_app())
    await server.start_server()
    fake.url = str(server.make_url("/")).rstrip("/")
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def node(ledger):
    async with LedgerClient(ledger.config()) as client:
        yield client
