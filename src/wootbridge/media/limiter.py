"""Admission control for media transfers: sliding-window rate limiter,
circuit breaker, and the ``MediaGuard`` that chains the two.

State is guarded by ``threading.Lock`` and the lock is never held across
an ``await``, so both objects can be shared by every task of an
integration instance.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from loguru import logger

from wootbridge.constants import (
    DEFAULT_BREAKER_RESET_TIMEOUT,
    DEFAULT_BREAKER_THRESHOLD,
    DEFAULT_MEDIA_RATE_LIMIT,
    DEFAULT_MEDIA_RATE_WINDOW,
    RATE_LIMIT_POLL_INTERVAL,
)
from wootbridge.errors import CircuitOpenError, RateLimitedLocally

T = TypeVar("T")
Clock = Callable[[], float]


# ──────────────────────────────────────────────────────────────────────
# Rate Limiter
# ──────────────────────────────────────────────────────────────────────


class RateLimiter:
    """At most ``max_requests`` admissions per sliding ``window`` seconds."""

    def __init__(
        self,
        max_requests: int = DEFAULT_MEDIA_RATE_LIMIT,
        window: float = DEFAULT_MEDIA_RATE_WINDOW,
        *,
        name: str = "media",
        clock: Clock = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError(f"max_requests must be >= 1, got {max_requests}")
        if window <= 0:
            raise ValueError(f"window must be positive, got {window}")
        self.max_requests = max_requests
        self.window = window
        self.name = name
        self._clock = clock
        self._stamps: deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window
        while self._stamps and self._stamps[0] <= cutoff:
            self._stamps.popleft()

    def allow(self) -> bool:
        """Admit one request if the window has room."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._stamps) >= self.max_requests:
                logger.warning(
                    "Rate limit reached for {}: {}/{} in {}s window",
                    self.name,
                    len(self._stamps),
                    self.max_requests,
                    self.window,
                )
                return False
            self._stamps.append(now)
            return True

    def _next_delay(self) -> float:
        """Seconds until the oldest in-window stamp falls out."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if not self._stamps:
                return 0.0
            return self.window - (now - self._stamps[0])

    async def wait(self, timeout: float | None = None) -> None:
        """Block until a slot is admitted.

        Cancellation of the calling task propagates unchanged. With a
        ``timeout`` the wait is bounded and ``RateLimitedLocally`` is
        raised once it runs out.
        """
        deadline = None if timeout is None else self._clock() + timeout
        while not self.allow():
            delay = self._next_delay()
            if delay <= 0:
                delay = RATE_LIMIT_POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise RateLimitedLocally(
                        f"{self.name}: no rate-limit slot within {timeout}s"
                    )
                delay = min(delay, remaining)
            await asyncio.sleep(delay)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            self._prune(self._clock())
            current = len(self._stamps)
        return {
            "max_requests": self.max_requests,
            "window": self.window,
            "current_requests": current,
            "available_slots": self.max_requests - current,
        }


# ──────────────────────────────────────────────────────────────────────
# Circuit Breaker
# ──────────────────────────────────────────────────────────────────────


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Fails fast after ``max_failures`` consecutive failures.

    After ``reset_timeout`` seconds without a new failure the breaker goes
    half-open and lets exactly one trial call through. Concurrent callers
    are refused while that trial is in flight. The trial's outcome closes
    the breaker (success) or reopens it (failure).
    """

    def __init__(
        self,
        max_failures: int = DEFAULT_BREAKER_THRESHOLD,
        reset_timeout: float = DEFAULT_BREAKER_RESET_TIMEOUT,
        *,
        name: str = "media",
        clock: Clock = time.monotonic,
    ) -> None:
        if max_failures < 1:
            raise ValueError(f"max_failures must be >= 1, got {max_failures}")
        self.max_failures = max_failures
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure: float | None = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _acquire(self) -> bool:
        """Admit a call. Returns True if it is the half-open trial."""
        with self._lock:
            if self._state is CircuitState.OPEN:
                elapsed = self._clock() - (self._last_failure or 0.0)
                if elapsed < self.reset_timeout:
                    raise CircuitOpenError(self.name, self.reset_timeout - elapsed)
                self._state = CircuitState.HALF_OPEN
                logger.info("Circuit breaker {} half-open, allowing trial call", self.name)

            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.name)
                self._trial_in_flight = True
                return True
            return False

    def _on_success(self, trial: bool) -> None:
        with self._lock:
            if trial:
                self._trial_in_flight = False
            self._failures = 0
            if self._state is not CircuitState.CLOSED:
                self._state = CircuitState.CLOSED
                logger.info("Circuit breaker {} closed", self.name)

    def _on_failure(self, trial: bool) -> None:
        with self._lock:
            if trial:
                self._trial_in_flight = False
            self._failures += 1
            self._last_failure = self._clock()
            reopen = self._state is CircuitState.HALF_OPEN
            if reopen or self._failures >= self.max_failures:
                if self._state is not CircuitState.OPEN:
                    logger.warning(
                        "Circuit breaker {} opened after {} failure(s)",
                        self.name,
                        self._failures,
                    )
                self._state = CircuitState.OPEN

    def _on_abandon(self, trial: bool) -> None:
        # a cancelled call says nothing about the remote side
        if trial:
            with self._lock:
                self._trial_in_flight = False
                if self._state is CircuitState.HALF_OPEN:
                    self._state = CircuitState.OPEN

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` through the breaker.

        Raises:
            CircuitOpenError: the breaker is open, or a half-open trial
                is already running. ``fn`` is not invoked.
        """
        trial = self._acquire()
        try:
            result = await fn()
        except asyncio.CancelledError:
            self._on_abandon(trial)
            raise
        except Exception:
            self._on_failure(trial)
            raise
        self._on_success(trial)
        return result

    def reset(self) -> None:
        """Force the breaker back to closed."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._last_failure = None
            self._trial_in_flight = False
        logger.info("Circuit breaker {} reset", self.name)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "state": self._state.value,
                "failures": self._failures,
                "max_failures": self.max_failures,
                "reset_timeout": self.reset_timeout,
                "last_failure": self._last_failure,
            }


# ──────────────────────────────────────────────────────────────────────
# Guard
# ──────────────────────────────────────────────────────────────────────


class MediaGuard:
    """Rate limiter first, then circuit breaker, around one transfer."""

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.rate_limiter = rate_limiter or RateLimiter()
        self.breaker = breaker or CircuitBreaker()

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        wait_timeout: float | None = None,
    ) -> T:
        await self.rate_limiter.wait(timeout=wait_timeout)
        return await self.breaker.call(fn)

    def get_stats(self) -> dict[str, Any]:
        return {
            "rate_limiter": self.rate_limiter.get_stats(),
            "circuit_breaker": self.breaker.get_stats(),
        }
