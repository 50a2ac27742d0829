"""Bounded retries for budgeted remote calls.

``RetryExecutor.execute`` runs one remote operation up to ``max_attempts``
times.  Every attempt holds a ``RateBudget`` lease; the lease is refunded when
the attempt fails.  Exceptions, timeouts and empty or malformed responses all
go through the same failure path: the operation raises, the executor records
the error and moves on to the next attempt.

Quota responses are different.  They are not the call's fault, so the attempt
is not counted; the executor raises ``QuotaPause`` and leaves the long back-off
to the caller, which resumes with ``first_attempt=pause.attempt``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from .config import BACKOFF_BASE, BACKOFF_CAP, REQUEST_TIMEOUT
from .ratelimit import RateBudget

log = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
AttemptHook = Callable[[int, BaseException], Awaitable[Optional[Operation]]]


class QuotaExceededError(RuntimeError):
    """The service reported a quota or rate-limit condition."""


class QuotaPause(Exception):
    """Raised by the executor when an attempt hit the service quota.

    ``attempt`` is the attempt number that was interrupted (not counted) and
    ``op`` the operation that was current, so the caller can resume exactly
    where the ladder stopped.
    """

    def __init__(self, attempt: int, op: Operation, cause: BaseException):
        super().__init__(f"Quota exceeded on attempt {attempt}: {cause}")
        self.attempt = attempt
        self.op = op
        self.cause = cause


@dataclass(frozen=True)
class BackoffPolicy:
    base_delay: float = BACKOFF_BASE
    cap_delay: float = BACKOFF_CAP

    def delay_before(self, attempt: int) -> float:
        """Delay before attempt ``attempt`` (attempts are numbered from 1)."""
        if attempt < 2:
            return 0.0
        return min(self.base_delay * 2 ** attempt, self.cap_delay)


@dataclass
class CallResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class RetryExecutor:
    """Runs operations against the shared budget with a retry ladder."""

    def __init__(
        self,
        budget: RateBudget,
        *,
        timeout: float | None = REQUEST_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.budget = budget
        self.timeout = timeout
        self._sleep = sleep

    async def _attempt(self, op: Operation) -> Any:
        if self.timeout is None:
            return await op()
        return await asyncio.wait_for(op(), timeout=self.timeout)

    async def execute(
        self,
        op: Operation,
        *,
        max_attempts: int,
        backoff: BackoffPolicy | None = None,
        on_attempt_failed: AttemptHook | None = None,
        fallback: Operation | None = None,
        first_attempt: int = 1,
        label: str = "call",
    ) -> CallResult:
        """Run ``op`` until it succeeds or ``max_attempts`` are used.

        After a failed attempt ``n`` the caller's ``on_attempt_failed(n, err)``
        hook may hand back a replacement operation.  When ``n`` is the
        penultimate attempt the ``fallback`` operation (if any) takes over for
        the last one.  Both substitutions happen before the backoff delay.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        if not 1 <= first_attempt <= max_attempts:
            raise ValueError(f"first_attempt must be within 1..{max_attempts}.")
        backoff = backoff or BackoffPolicy()
        current = op
        last_error: BaseException | None = None
        attempt = first_attempt

        while attempt <= max_attempts:
            lease = await self.budget.reserve()
            try:
                value = await self._attempt(current)
            except QuotaExceededError as e:
                self.budget.release(lease, succeeded=False)
                log.warning("%s: quota exceeded on attempt %d/%d", label, attempt, max_attempts)
                raise QuotaPause(attempt, current, e) from e
            except Exception as e:
                self.budget.release(lease, succeeded=False)
                if isinstance(e, asyncio.TimeoutError):
                    e = TimeoutError(f"{label} timed out after {self.timeout:.0f}s")
                last_error = e
                log.warning("%s: attempt %d/%d failed: %s", label, attempt, max_attempts, e)
            else:
                self.budget.release(lease, succeeded=True)
                if lease.delay > 0:
                    await self._sleep(lease.delay)
                return CallResult(value=value, attempts=attempt)

            if attempt >= max_attempts:
                break

            if on_attempt_failed is not None:
                replacement = await on_attempt_failed(attempt, last_error)
                if replacement is not None:
                    current = replacement
            if fallback is not None and attempt == max_attempts - 1:
                log.info("%s: switching to simplified payload for the last attempt", label)
                current = fallback

            attempt += 1
            delay = backoff.delay_before(attempt)
            log.debug("%s: waiting %.1fs before attempt %d", label, delay, attempt)
            await self._sleep(delay)

        return CallResult(error=last_error, attempts=max_attempts)
