"""
Continuity watermark.

The newest event timestamp known to be durably captured. Persisted so a
restart knows where capture left off; checked by the heartbeat loop to
detect silent capture stalls while the connection looks healthy.

Invariant: the value never decreases.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from observability.logger import log_error, log_event

if TYPE_CHECKING:
    from orchestrator.runtime_context import StorageProtocol
    from orchestrator.timers import Clock


class ContinuityWatermark:
    def __init__(
        self,
        storage: StorageProtocol,
        clock: Clock,
        *,
        stall_threshold_ms: int,
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._stall_threshold_ms = stall_threshold_ms
        self._value = 0
        self._lock = asyncio.Lock()
        self.last_error: str | None = None
        self.last_error_at_ms: int | None = None

    @property
    def value(self) -> int:
        return self._value

    async def load(self) -> int:
        """Read the persisted value once at startup. Failure -> 0 (logged)."""
        try:
            stored = await self._storage.get_watermark()
        except Exception as e:  # pylint: disable=broad-exception-caught
            self.last_error = f"watermark load failed: {e}"
            self.last_error_at_ms = self._clock.now_ms()
            log_error({
                "ts_ms": self._clock.now_ms(),
                "event_type": "WATERMARK_LOAD_FAILED",
            }, e)
            stored = None

        self._value = max(self._value, int(stored or 0))
        log_event({
            "ts_ms": self._clock.now_ms(),
            "event_type": "WATERMARK_LOADED",
            "watermark_ms": self._value,
        })
        return self._value

    async def advance(self, ts_ms: int) -> int:
        """
        Move the watermark to max(current, ts_ms) and flush it.

        A failed flush is logged; in-memory progress is kept and the next
        advance flushes again.
        """
        async with self._lock:
            if ts_ms <= self._value:
                return self._value
            self._value = ts_ms
            try:
                await self._storage.set_watermark(ts_ms)
            except Exception as e:  # pylint: disable=broad-exception-caught
                self.last_error = f"watermark flush failed: {e}"
                self.last_error_at_ms = self._clock.now_ms()
                log_error({
                    "ts_ms": self._clock.now_ms(),
                    "event_type": "WATERMARK_FLUSH_FAILED",
                    "watermark_ms": ts_ms,
                }, e)
            return self._value

    def check_stall(self, now_ms: int) -> bool:
        """
        True (and a CONTINUITY_STALL warning) when nothing has been captured
        for longer than the stall threshold. A zero watermark never stalls.
        """
        if self._value <= 0:
            return False
        gap_ms = now_ms - self._value
        if gap_ms <= self._stall_threshold_ms:
            return False
        log_event({
            "ts_ms": now_ms,
            "event_type": "CONTINUITY_STALL",
            "level": "warning",
            "watermark_ms": self._value,
            "gap_ms": gap_ms,
            "threshold_ms": self._stall_threshold_ms,
        })
        return True
