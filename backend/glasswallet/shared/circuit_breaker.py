from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, TypeVar

from glasswallet.infra.metrics import metrics

logger = logging.getLogger("glasswallet.circuit")

T = TypeVar("T")


class CircuitBreakerOpenError(RuntimeError):
    pass


class CircuitBreaker:
    """Opens after ``failure_threshold`` failures inside ``window_seconds``; one probe call after ``recovery_time``."""

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        window_seconds: float = 60.0,
        timeout_seconds: float | None = None,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_time = max(0.01, recovery_time)
        self.window_seconds = max(0.01, window_seconds)
        self.timeout_seconds = None if timeout_seconds is None else max(0.01, timeout_seconds)
        self._state = "closed"
        self._opened_at = 0.0
        self._failures: Deque[float] = deque()
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        await self._ensure_available()
        try:
            if self.timeout_seconds is None:
                result = await fn(*args, **kwargs)
            else:
                result = await asyncio.wait_for(fn(*args, **kwargs), timeout=self.timeout_seconds)
        except Exception as exc:  # noqa: BLE001
            await self._record_failure()
            logger.warning(
                "circuit_failure",
                extra={"extra": {"name": self.name, "state": self._state, "error": type(exc).__name__}},
            )
            raise
        await self._record_success()
        return result

    async def _ensure_available(self) -> None:
        async with self._lock:
            if self._state == "open":
                if time.monotonic() - self._opened_at < self.recovery_time:
                    raise CircuitBreakerOpenError(f"circuit_open:{self.name}")
                self._set_state("half_open")
            if self._state == "half_open":
                if self._probe_in_flight:
                    raise CircuitBreakerOpenError(f"circuit_half_open:{self.name}")
                self._probe_in_flight = True

    async def _record_failure(self) -> None:
        async with self._lock:
            now = time.monotonic()
            self._probe_in_flight = False
            self._failures.append(now)
            while self._failures and self._failures[0] < now - self.window_seconds:
                self._failures.popleft()
            if self._state == "half_open" or len(self._failures) >= self.failure_threshold:
                self._opened_at = now
                self._set_state("open")
                logger.warning("circuit_opened", extra={"extra": {"name": self.name}})

    async def _record_success(self) -> None:
        async with self._lock:
            self._failures.clear()
            self._probe_in_flight = False
            if self._state != "closed":
                logger.info("circuit_closed", extra={"extra": {"name": self.name}})
            self._set_state("closed")

    def _set_state(self, state: str) -> None:
        self._state = state
        metrics.record_circuit_state(self.name, state)

    @property
    def state(self) -> str:
        return self._state
