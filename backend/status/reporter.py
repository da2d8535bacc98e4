"""
Health / status reporter.

Derives an immutable StatusSnapshot on demand from the live components.
Optionally rewrites a JSON status file after each lifecycle transition
for out-of-process monitoring.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from observability.logger import log_error
from orchestrator.enums.state import LifecycleState

if TYPE_CHECKING:
    from catchup.scheduler import CatchUpScheduler
    from ingestion.identity_cache import IdentityCache
    from ingestion.pipeline import IngestionPipeline
    from ingestion.watermark import ContinuityWatermark
    from orchestrator.runtime import Runtime
    from orchestrator.timers import Clock
    from session.correlator import SessionCorrelator


@dataclass(frozen=True)
class StatusSnapshot:
    state: str
    details: str
    healthy: bool
    retry_count: int
    restart_count: int
    ever_connected: bool
    started_at_ms: int
    uptime_ms: int
    last_challenge_at_ms: int | None
    last_authenticated_at_ms: int | None
    last_ready_at_ms: int | None
    last_event_at_ms: int | None
    last_write_at_ms: int | None
    watermark_ms: int
    active_sessions: int
    cached_identities: int
    last_error: str | None
    counters: dict[str, Any] = field(default_factory=dict)
    catchup: dict[str, Any] = field(default_factory=dict)
    timestamp_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class StatusReporter:
    def __init__(
        self,
        *,
        runtime: Runtime,
        pipeline: IngestionPipeline,
        watermark: ContinuityWatermark,
        correlator: SessionCorrelator,
        catchup: CatchUpScheduler,
        identities: IdentityCache,
        clock: Clock,
        last_event_at: Callable[[], int | None],
        health_event_threshold_ms: int,
        started_at_ms: int,
        status_path: Path | None = None,
    ) -> None:
        self._runtime = runtime
        self._pipeline = pipeline
        self._watermark = watermark
        self._correlator = correlator
        self._catchup = catchup
        self._identities = identities
        self._clock = clock
        self._last_event_at = last_event_at
        self._threshold_ms = health_event_threshold_ms
        self._started_at_ms = started_at_ms
        self._status_path = status_path

    def is_healthy(self, now_ms: int | None = None) -> bool:
        """
        Connected, and a live event arrived within the threshold.

        Before the first live event the service reports unhealthy.
        """
        now = self._clock.now_ms() if now_ms is None else now_ms
        if self._runtime.state.state is not LifecycleState.CONNECTED:
            return False
        last = self._last_event_at()
        if last is None:
            return False
        return now - last < self._threshold_ms

    def snapshot(self) -> StatusSnapshot:
        now = self._clock.now_ms()
        ctx = self._runtime.state
        return StatusSnapshot(
            state=ctx.state.value,
            details=ctx.details,
            healthy=self.is_healthy(now),
            retry_count=ctx.retry_count,
            restart_count=ctx.restart_count,
            ever_connected=ctx.ever_connected,
            started_at_ms=self._started_at_ms,
            uptime_ms=max(now - self._started_at_ms, 0),
            last_challenge_at_ms=ctx.last_challenge_ts_ms,
            last_authenticated_at_ms=ctx.last_authenticated_ts_ms,
            last_ready_at_ms=ctx.last_ready_ts_ms,
            last_event_at_ms=self._last_event_at(),
            last_write_at_ms=self._pipeline.last_write_ts_ms,
            watermark_ms=self._watermark.value,
            active_sessions=self._correlator.active_count,
            cached_identities=len(self._identities),
            last_error=self.latest_error(),
            counters=self._pipeline.counters(),
            catchup=self._catchup.snapshot(),
            timestamp_ms=now,
        )

    def latest_error(self) -> str | None:
        """
        Newest human-readable error context across components.

        Each component keeps its own last error with the time it was
        recorded; the most recently recorded one wins.
        """
        ctx = self._runtime.state
        candidates: list[tuple[int, str]] = []
        for message, at_ms in (
            (ctx.last_error, ctx.last_error_ts_ms),
            (self._pipeline.last_error, self._pipeline.last_error_at_ms),
            (self._watermark.last_error, self._watermark.last_error_at_ms),
            (self._catchup.last_error, self._catchup.last_error_at_ms),
            (self._identities.last_error, self._identities.last_error_at_ms),
        ):
            if message:
                candidates.append((at_ms or 0, message))
        if not candidates:
            return None
        # max() keeps the first of equal timestamps
        return max(candidates, key=lambda item: item[0])[1]

    def write_status_file(self) -> None:
        """Atomically rewrite the status file (tmp + replace). Never raises."""
        if self._status_path is None:
            return
        path = self._status_path
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(
                json.dumps(self.snapshot().to_dict(), indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
            os.replace(tmp, path)
        except OSError as e:
            log_error({
                "ts_ms": self._clock.now_ms(),
                "event_type": "STATUS_FILE_WRITE_FAILED",
                "path": str(path),
            }, e)
