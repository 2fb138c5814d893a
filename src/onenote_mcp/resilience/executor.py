"""Rate limiting and retry for outbound Graph calls.

Every call goes through `ResilientExecutor.execute`, which spaces requests
by a minimum gap and retries throttling (429) and transient unavailability
(503/504) with exponential backoff plus jitter. Anything else propagates
on the first failure.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Protocol, TypeVar

import httpx

from onenote_mcp.auth.primitives.redaction import redact

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 503, 504})
RETRYABLE_ERROR_CODES = frozenset({"toomanyrequests", "serviceunavailable"})


@dataclass(frozen=True)
class RetryPolicy:
    """Spacing and retry budget. Times are in milliseconds."""

    min_spacing_ms: float = 100
    max_delay_ms: float = 30_000
    max_retries: int = 3

    def __post_init__(self) -> None:
        if self.min_spacing_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be non-negative")
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")


@dataclass
class RateLimiterState:
    """Mutable bookkeeping shared by every call through one executor."""

    last_request_at: float | None = None  # clock() seconds
    consecutive_error_count: int = 0


class Executor(Protocol):
    """Anything that can run one unit of outbound work."""

    async def execute(self, unit_of_work: Callable[[], Awaitable[T]]) -> T: ...


def is_retryable_error(error: BaseException) -> bool:
    """Return True for throttling and transient service unavailability.

    Looks at an HTTP status (``status_code`` attribute or an
    ``httpx.HTTPStatusError`` response) and at the Graph error code.
    """
    status_code = getattr(error, "status_code", None)
    if status_code is None and isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
    if status_code in RETRYABLE_STATUS_CODES:
        return True

    code = getattr(error, "code", None)
    return isinstance(code, str) and code.lower() in RETRYABLE_ERROR_CODES


class ResilientExecutor:
    """Wraps outbound calls with spacing and bounded backoff retries.

    Clock, sleep and jitter are injectable so tests can run without
    wall-clock waits. ``consecutive_error_count`` is reported for
    observability only; it never changes the retry decision.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
        should_retry: Callable[[BaseException], bool] = is_retryable_error,
    ):
        """Initialize the executor.

        Args:
            policy: Spacing and retry configuration
            clock: Monotonic clock returning seconds
            sleep: Coroutine sleeping for the given seconds
            jitter: Returns a float in [0, 1); scaled to up to one second
            should_retry: Classifies a failure as retryable
        """
        self.policy = policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter
        self._should_retry = should_retry
        self._state = RateLimiterState()
        self._slot_lock = asyncio.Lock()

    @property
    def state(self) -> RateLimiterState:
        """Snapshot of the limiter state."""
        return replace(self._state)

    def backoff_delay_ms(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1``: 1s, 2s, 4s... plus jitter."""
        return min(
            self.policy.max_delay_ms,
            (2**attempt) * 1000 + self._jitter() * 1000,
        )

    async def execute(self, unit_of_work: Callable[[], Awaitable[T]]) -> T:
        """Run one outbound call with spacing and retries.

        Args:
            unit_of_work: Zero-argument coroutine factory, called once per attempt

        Returns:
            Whatever the unit of work returns

        Raises:
            Exception: The first non-retryable failure, or the last retryable
                one once the retry budget is spent
        """
        attempt = 0
        while True:
            await self._wait_for_slot()
            try:
                result = await unit_of_work()
            except Exception as error:
                self._state.consecutive_error_count += 1
                if not self._should_retry(error) or attempt >= self.policy.max_retries:
                    raise

                delay_ms = self.backoff_delay_ms(attempt)
                logger.warning(
                    f"Rate limited or temporary error ({redact(error)}). "
                    f"Retrying in {delay_ms / 1000:.1f}s "
                    f"(attempt {attempt + 1}/{self.policy.max_retries})"
                )
                await self._sleep(delay_ms / 1000)
                attempt += 1
            else:
                self._state.consecutive_error_count = 0
                return result

    async def _wait_for_slot(self) -> None:
        """Enforce the minimum gap, then stamp the dispatch time."""
        async with self._slot_lock:
            last = self._state.last_request_at
            if last is not None:
                elapsed_ms = (self._clock() - last) * 1000
                remaining_ms = self.policy.min_spacing_ms - elapsed_ms
                if remaining_ms > 0:
                    await self._sleep(remaining_ms / 1000)
            self._state.last_request_at = self._clock()
