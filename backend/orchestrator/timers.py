"""
Clock abstraction and keyed timer registry.

Responsibilities:
- Provide an injectable time source (wall clock in production, fake in tests)
- Run delayed callbacks as asyncio tasks keyed by timer_id
- Replace a pending timer when the same id is scheduled again
- Log (never propagate) callback failures
- Cooperative shutdown: stop accepting work, cancel timers still waiting,
  await callbacks already running

Non-responsibilities:
- No orchestration decisions
- No retry math (see orchestrator.retry)
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Protocol

from observability.logger import log_error, log_event


TimerCallback = Callable[[], Awaitable[object]]


# =============================================================================
# Clock
# =============================================================================

class Clock(Protocol):
    def now_ms(self) -> int: ...
    async def sleep(self, ms: int) -> None: ...


class SystemClock:
    """Wall-clock time and real asyncio sleeps."""

    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000

    async def sleep(self, ms: int) -> None:
        await asyncio.sleep(max(ms, 0) / 1000.0)


# =============================================================================
# Timer Registry
# =============================================================================

class TimerRegistry:
    """
    Owns every delayed background task of the process.

    A timer is "pending" while it sleeps and "running" while its callback
    executes. Only pending timers can be cancelled or replaced; running
    callbacks are always allowed to finish.
    """

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._pending: dict[str, asyncio.Task[None]] = {}
        self._running: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(self, timer_id: str, delay_ms: int, callback: TimerCallback) -> bool:
        """
        Start or replace a timer. Returns False once the registry is closed.
        """
        if self._closed:
            log_event({
                "ts_ms": self._clock.now_ms(),
                "event_type": "TIMER_REJECTED",
                "level": "debug",
                "timer_id": timer_id,
            })
            return False

        self.cancel(timer_id)
        self._pending[timer_id] = asyncio.create_task(
            self._run(timer_id, delay_ms, callback),
            name=f"timer:{timer_id}",
        )
        return True

    def cancel(self, timer_id: str) -> bool:
        """
        Cancel a pending timer if it exists.

        Idempotent: safe to call even if the timer doesn't exist.
        """
        task = self._pending.pop(timer_id, None)
        if task is not None and not task.done():
            task.cancel()
            return True
        return False

    def pending(self, timer_id: str) -> bool:
        task = self._pending.get(timer_id)
        return task is not None and not task.done()

    def running_count(self) -> int:
        return len(self._running)

    async def shutdown(self) -> None:
        """
        Stop accepting work, cancel waiting timers, await running callbacks.

        Safe to call from inside a timer callback: the calling task is
        not awaited.
        """
        self._closed = True

        cancelled = list(self._pending.values())
        for timer_id in list(self._pending):
            self.cancel(timer_id)

        current = asyncio.current_task()
        waiting = [t for t in (*cancelled, *self._running) if t is not current]
        if waiting:
            await asyncio.gather(*waiting, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, timer_id: str, delay_ms: int, callback: TimerCallback) -> None:
        try:
            await self._clock.sleep(delay_ms)
        except asyncio.CancelledError:
            # Timer was cancelled - this is normal
            return

        task = asyncio.current_task()
        if self._pending.get(timer_id) is task:
            del self._pending[timer_id]

        if self._closed or task is None:
            return

        self._running.add(task)
        try:
            await callback()
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_error({
                "ts_ms": self._clock.now_ms(),
                "event_type": "TIMER_CALLBACK_FAILED",
                "timer_id": timer_id,
            }, e)
        finally:
            self._running.discard(task)
