# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Circuit breaker guarding one ledger or indexer node.

After a run of consecutive failures the node is considered down and calls
fail immediately with CircuitBreakerError instead of waiting for a network
timeout. The submission pipeline treats that as a failed submission; the
synchronization primitives treat it as "not yet" and keep polling.

States:
- CLOSED: Normal operation, requests flow through
- OPEN: Node considered down, requests fail immediately
- HALF_OPEN: Probing whether the node has recovered

Only failures that say something about node health count: connection
errors, timeouts and 5xx answers. A 4xx (for example a stale sequence
number) is the node working correctly and resets the failure run.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from .types import FiberClientError, NodeError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration."""
    # Consecutive node failures before opening
    failure_threshold: int = 5
    # Seconds to stay open before probing
    recovery_timeout: float = 10.0
    # Concurrent probes allowed while half-open
    half_open_max_calls: int = 1
    # Successful probes needed to close again
    success_threshold: int = 1


class CircuitBreakerError(FiberClientError):
    """Raised when a node's circuit is open and the call was not attempted."""

    def __init__(self, node: str, retry_after: float):
        super().__init__(f"Circuit for {node} is open, retry in {retry_after:.1f}s")
        self.node = node
        self.retry_after = retry_after


def is_node_failure(error: BaseException) -> bool:
    """True if an error indicates the node itself is unhealthy."""
    if isinstance(error, NodeError):
        return error.status is None or error.status >= 500
    return isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError))


class CircuitBreaker:
    """
    Async circuit breaker for a single node.

    Example:
        breaker = CircuitBreaker("dl1")
        body = await breaker.execute(session_call, url)
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        on_state_change: Optional[Callable[[CircuitState, CircuitState], None]] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0
        self._rejected_calls = 0
        self._lock = asyncio.Lock()
        self._on_state_change = on_state_change

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def _set_state(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.OPEN:
            logger.warning(f"Circuit for {self.name} opened after {self._failure_count} failures")
        else:
            logger.info(f"Circuit for {self.name}: {old_state.value} -> {new_state.value}")
        if self._on_state_change:
            try:
                self._on_state_change(old_state, new_state)
            except Exception as e:
                logger.warning(f"State change callback error: {e}")

    async def _admit(self) -> None:
        async with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = time.monotonic() - (self._opened_at or 0.0)
                if elapsed < self.config.recovery_timeout:
                    self._rejected_calls += 1
                    raise CircuitBreakerError(self.name, self.config.recovery_timeout - elapsed)
                self._set_state(CircuitState.HALF_OPEN)
                self._half_open_calls = 0
                self._success_count = 0

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    self._rejected_calls += 1
                    raise CircuitBreakerError(self.name, 0.0)
                self._half_open_calls += 1

    async def _record_success(self) -> None:
        async with self._lock:
            self._failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_calls = max(0, self._half_open_calls - 1)
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._set_state(CircuitState.CLOSED)

    async def _record_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN:
                self._opened_at = time.monotonic()
                self._set_state(CircuitState.OPEN)
            elif self._failure_count >= self.config.failure_threshold:
                self._opened_at = time.monotonic()
                self._set_state(CircuitState.OPEN)

    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Run an async call through the breaker.

        Raises:
            CircuitBreakerError: If the circuit is open
            Exception: Whatever the call raised
        """
        await self._admit()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if is_node_failure(e):
                await self._record_failure()
            else:
                await self._record_success()
            raise
        await self._record_success()
        return result

    def reset(self) -> None:
        """Manually close the circuit."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None
        self._half_open_calls = 0
        logger.info(f"Circuit for {self.name} manually reset")

    def get_stats(self) -> dict:
        return {
            "node": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "rejected_calls": self._rejected_calls,
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "recovery_timeout": self.config.recovery_timeout,
                "success_threshold": self.config.success_threshold,
            },
        }
