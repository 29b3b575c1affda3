# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
HTTP access to the metagraph nodes and the rejection indexer.

Three endpoints, each behind its own circuit breaker:
- DL1 (data L1): accepts signed DataUpdates, exposes the freshest on-chain commits
- ML0 (metagraph L0): read replica for fibers, scripts, checkpoints and snapshots
- Indexer (optional): asynchronous rejection records
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urljoin

import aiohttp

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from .types import FiberRecord, NodeError, RejectionPage, RejectionRecord, Signed

logger = logging.getLogger(__name__)

DATA_APP = "/data-application/v1"

# Indexer page size ceiling
MAX_REJECTION_LIMIT = 100
DEFAULT_REJECTION_LIMIT = 50


@dataclass
class ClientConfig:
    """Connection settings for one metagraph deployment."""
    ml0_url: str = "http://localhost:9100"
    dl1_url: str = "http://localhost:9400"
    indexer_url: Optional[str] = None
    timeout_ms: int = 30_000
    poll_interval_ms: int = 1_000

    # Authentication settings
    api_key: Optional[str] = None
    api_key_header: str = "Authorization"

    # Circuit breaker settings, shared by all three nodes
    enable_circuit_breaker: bool = True
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)

    def __post_init__(self):
        self.ml0_url = self.ml0_url.rstrip("/")
        self.dl1_url = self.dl1_url.rstrip("/")
        if self.indexer_url:
            self.indexer_url = self.indexer_url.rstrip("/")

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """
        Build a config from the environment.

        Variables:
            METAGRAPH_ML0_URL, METAGRAPH_DL1_URL, INDEXER_URL,
            FIBER_TIMEOUT_MS, FIBER_POLL_INTERVAL_MS,
            FIBER_API_KEY, FIBER_API_KEY_HEADER
        """
        return cls(
            ml0_url=os.environ.get("METAGRAPH_ML0_URL", "http://localhost:9100"),
            dl1_url=os.environ.get("METAGRAPH_DL1_URL", "http://localhost:9400"),
            indexer_url=os.environ.get("INDEXER_URL") or None,
            timeout_ms=int(os.environ.get("FIBER_TIMEOUT_MS", "30000")),
            poll_interval_ms=int(os.environ.get("FIBER_POLL_INTERVAL_MS", "1000")),
            api_key=os.environ.get("FIBER_API_KEY") or None,
            api_key_header=os.environ.get("FIBER_API_KEY_HEADER", "Authorization"),
        )


class LedgerClient:
    """
    Async client for ML0, DL1 and the indexer.

    Reads that address a single resource return None on 404. Every other
    non-2xx answer raises NodeError carrying the status and body.

    Usage:
        async with LedgerClient(ClientConfig.from_env()) as node:
            seq = await node.get_fiber_sequence(fiber_id)
            fiber = await node.get_state_machine(fiber_id)
    """

    def __init__(self, config: Optional[ClientConfig] = None):
        self.config = config or ClientConfig()
        self._session: aiohttp.ClientSession | None = None
        self._breakers: dict[str, CircuitBreaker] = {}
        if self.config.enable_circuit_breaker:
            for name in ("ml0", "dl1", "indexer"):
                self._breakers[name] = CircuitBreaker(name, self.config.circuit_breaker)

    @property
    def has_indexer(self) -> bool:
        return bool(self.config.indexer_url)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_ms / 1000)
            headers = {"Accept": "application/json"}
            if self.config.api_key:
                # Bearer prefix only for the standard Authorization header
                if self.config.api_key_header.lower() == "authorization":
                    headers[self.config.api_key_header] = f"Bearer {self.config.api_key}"
                else:
                    headers[self.config.api_key_header] = self.config.api_key

            self._session = aiohttp.ClientSession(timeout=timeout, headers=headers)
        return self._session

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _base_url(self, node: str) -> str:
        if node == "ml0":
            return self.config.ml0_url
        if node == "dl1":
            return self.config.dl1_url
        if node == "indexer":
            if not self.config.indexer_url:
                raise NodeError("No indexer URL configured")
            return self.config.indexer_url
        raise ValueError(f"Unknown node: {node}")

    async def _send_request(
        self,
        method: str,
        url: str,
        json_data: Any = None,
        params: dict | None = None,
        allow_not_found: bool = False,
    ) -> Any:
        session = await self._get_session()
        async with session.request(method, url, json=json_data, params=params) as response:
            text = await response.text()
            if allow_not_found and response.status == 404:
                return None
            if response.status >= 400:
                raise NodeError(
                    f"{method} {url} failed with HTTP {response.status}: {text[:200]}",
                    status=response.status,
                    body=text,
                )
            if not text:
                return {}
            try:
                return json.loads(text)
            except json.JSONDecodeError as e:
                raise NodeError(
                    f"{method} {url} returned invalid JSON: {e}",
                    status=response.status,
                    body=text,
                ) from e

    async def _request(
        self,
        node: str,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict | None = None,
        allow_not_found: bool = False,
    ) -> Any:
        url = urljoin(self._base_url(node), path)
        breaker = self._breakers.get(node)
        if breaker:
            return await breaker.execute(
                self._send_request, method, url, json_data, params, allow_not_found
            )
        return await self._send_request(method, url, json_data, params, allow_not_found)

    # =========================================================================
    # DL1
    # =========================================================================

    async def post_data(self, signed: Signed) -> dict[str, Any]:
        """Submit a signed DataUpdate. Returns the node's acknowledgement."""
        body = {"data": signed.to_dict(), "fee": None}
        return await self._request("dl1", "POST", "/data", json_data=body)

    async def get_dl1_on_chain_state(self) -> dict[str, Any]:
        """On-chain commits as seen by DL1 (ahead of ML0)."""
        return await self._request("dl1", "GET", f"{DATA_APP}/onchain")

    async def get_fiber_sequence(self, fiber_id: str) -> Optional[int]:
        """
        Authoritative sequence number of a fiber, None if DL1 has no commit for it.
        """
        state = await self.get_dl1_on_chain_state()
        commit = (state.get("fiberCommits") or {}).get(fiber_id)
        if commit is None:
            return None
        return int(commit.get("sequenceNumber") or 0)

    # =========================================================================
    # ML0
    # =========================================================================

    async def get_state_machine(self, fiber_id: str) -> Optional[FiberRecord]:
        data = await self._request(
            "ml0", "GET", f"{DATA_APP}/state-machines/{fiber_id}", allow_not_found=True
        )
        if not data:
            return None
        return FiberRecord.from_dict(data)

    async def get_state_machines(self, status: Optional[str] = None) -> dict[str, FiberRecord]:
        params = {"status": status} if status else None
        data = await self._request("ml0", "GET", f"{DATA_APP}/state-machines", params=params)
        if isinstance(data, list):
            records = [FiberRecord.from_dict(item) for item in data]
        else:
            records = [FiberRecord.from_dict(item) for item in (data or {}).values()]
        return {r.fiber_id: r for r in records}

    async def get_script(self, fiber_id: str) -> Optional[dict[str, Any]]:
        data = await self._request(
            "ml0", "GET", f"{DATA_APP}/scripts/{fiber_id}", allow_not_found=True
        )
        return data or None

    async def get_scripts(self) -> dict[str, Any]:
        return await self._request("ml0", "GET", f"{DATA_APP}/scripts")

    async def get_checkpoint(self) -> dict[str, Any]:
        return await self._request("ml0", "GET", f"{DATA_APP}/checkpoint")

    async def get_on_chain_state(self) -> dict[str, Any]:
        return await self._request("ml0", "GET", f"{DATA_APP}/onchain")

    async def get_latest_snapshot(self) -> dict[str, Any]:
        return await self._request("ml0", "GET", "/snapshots/latest")

    async def get_snapshot(self, ordinal: int) -> Optional[dict[str, Any]]:
        return await self._request("ml0", "GET", f"/snapshots/{ordinal}", allow_not_found=True)

    async def get_latest_ordinal(self) -> Optional[int]:
        snapshot = await self.get_latest_snapshot()
        ordinal = (snapshot.get("value") or {}).get("ordinal")
        return None if ordinal is None else int(ordinal)

    # =========================================================================
    # Indexer
    # =========================================================================

    async def query_rejections(
        self,
        fiber_id: Optional[str] = None,
        update_type: Optional[str] = None,
        signer: Optional[str] = None,
        error_code: Optional[str] = None,
        from_ordinal: Optional[int] = None,
        to_ordinal: Optional[int] = None,
        limit: int = DEFAULT_REJECTION_LIMIT,
        offset: int = 0,
    ) -> RejectionPage:
        """
        Page through rejection records, newest first.

        Raises:
            NodeError: If no indexer is configured or it answers with an error
        """
        candidates = {
            "fiberId": fiber_id,
            "updateType": update_type,
            "signer": signer,
            "errorCode": error_code,
            "fromOrdinal": from_ordinal,
            "toOrdinal": to_ordinal,
            "limit": max(1, min(limit, MAX_REJECTION_LIMIT)),
            "offset": max(0, offset),
        }
        params = {k: str(v) for k, v in candidates.items() if v is not None}
        data = await self._request("indexer", "GET", "/api/rejections", params=params)
        rejections = [RejectionRecord.from_dict(r) for r in data.get("rejections", [])]
        return RejectionPage(
            rejections=rejections,
            total=int(data.get("total", len(rejections))),
            has_more=bool(data.get("hasMore", False)),
        )

    async def get_rejection(self, update_hash: str) -> Optional[RejectionRecord]:
        data = await self._request(
            "indexer", "GET", f"/api/rejections/{update_hash}", allow_not_found=True
        )
        if not data:
            return None
        return RejectionRecord.from_dict(data)

    # =========================================================================
    # Health and stats
    # =========================================================================

    async def is_healthy(self) -> bool:
        """True if both ML0 and DL1 answer their node info endpoint."""
        session = await self._get_session()
        for base in (self.config.ml0_url, self.config.dl1_url):
            try:
                async with session.get(urljoin(base, "/node/info")) as response:
                    if response.status != 200:
                        return False
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.debug(f"Health check against {base} failed: {e}")
                return False
        return True

    def get_stats(self) -> dict:
        return {
            "ml0_url": self.config.ml0_url,
            "dl1_url": self.config.dl1_url,
            "indexer_url": self.config.indexer_url,
            "circuit_breakers": {name: b.get_stats() for name, b in self._breakers.items()},
        }
