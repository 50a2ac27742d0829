"""Shared request budget for the generation API.

One ``RateBudget`` is created per run and handed to every caller that talks to
the generation service.  It tracks two rolling windows:

* a minute window, which callers wait out when it is full, and
* a day window, which aborts the run when it is full (waiting a day is not
  something a batch job can do).

Callers ``reserve()`` a lease before each remote call and ``release()`` it
afterwards.  A failed call gives its slot back; a successful one keeps it and
the caller then sleeps ``lease.delay`` before its next reservation.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

log = logging.getLogger(__name__)

MINUTE = 60.0
DAY = 24 * 60 * 60.0


class DailyBudgetExhausted(RuntimeError):
    """The per-day request allowance is used up; the run cannot continue."""

    #: Partial BatchReport, attached by the batch runner before re-raising.
    report = None


@dataclass
class Lease:
    """A reserved request slot, redeemed via ``RateBudget.release``."""

    minute_window: float
    day_window: float
    delay: float
    released: bool = False


class RateBudget:
    """Per-minute / per-day request allowance shared across all calls."""

    def __init__(
        self,
        per_minute: int,
        per_day: int,
        inter_request_delay_ms: int = 0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if per_minute < 1 or per_day < 1:
            raise ValueError("Rate limits must be positive.")
        self.per_minute = per_minute
        self.per_day = per_day
        self.inter_request_delay_ms = inter_request_delay_ms
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

        now = clock()
        self.window_start_minute = now
        self.window_start_day = now
        self.requests_this_minute = 0
        self.requests_today = 0

    @property
    def delay(self) -> float:
        return self.inter_request_delay_ms / 1000.0

    def _roll_windows(self, now: float) -> None:
        if now - self.window_start_day > DAY:
            log.info("Day window rolled over (%d requests used)", self.requests_today)
            self.requests_today = 0
            self.requests_this_minute = 0
            self.window_start_day = now
            self.window_start_minute = now
        elif now - self.window_start_minute > MINUTE:
            self.requests_this_minute = 0
            self.window_start_minute = now

    async def reserve(self) -> Lease:
        """Wait for capacity in the minute window and take one slot."""
        async with self._lock:
            now = self._clock()
            self._roll_windows(now)

            if self.requests_today >= self.per_day:
                raise DailyBudgetExhausted(
                    f"Daily rate limit exceeded ({self.per_day} requests/day)"
                )

            if self.requests_this_minute >= self.per_minute:
                wait = max(0.0, MINUTE - (now - self.window_start_minute))
                log.info("Rate limit reached. Waiting %ds...", math.ceil(wait))
                await self._sleep(wait)
                self.requests_this_minute = 0
                self.window_start_minute = self._clock()

            self.requests_this_minute += 1
            self.requests_today += 1
            return Lease(
                minute_window=self.window_start_minute,
                day_window=self.window_start_day,
                delay=self.delay,
            )

    def release(self, lease: Lease, succeeded: bool) -> None:
        """Close a lease.  Failed calls are refunded to the windows they used."""
        if lease.released:
            raise ValueError("Lease already released.")
        lease.released = True
        if succeeded:
            return

        # Slots drawn from a window that has since rolled over were already
        # wiped by the reset.
        if lease.day_window == self.window_start_day and self.requests_today > 0:
            self.requests_today -= 1
        if lease.minute_window == self.window_start_minute and self.requests_this_minute > 0:
            self.requests_this_minute -= 1

    def snapshot(self) -> dict:
        return {
            "requests_this_minute": self.requests_this_minute,
            "requests_today": self.requests_today,
            "per_minute": self.per_minute,
            "per_day": self.per_day,
        }
