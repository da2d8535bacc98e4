"""
Catch-up scheduler.

Recovers history missed while disconnected, in three phases:

PREFILL
    Shortly after connecting: newest event of the top-N channels.
    Failure -> exponential backoff (own retry counter, wraps after
    prefill_reset_after attempts). The first success after each connect
    triggers BACKFILL once.

BACKFILL
    Deeper history: the prefill channels are topped up to
    backfill_event_limit when they hold fewer stored events, then the
    next backfill_extra_channels channels get backfill_extra_event_limit
    events each. Failure -> whole phase retried after a fixed delay.

REFRESH
    Every period (+/- jitter): channels most active in the trailing window
    that still hold few stored events get more history fetched.

Each phase is single-flight. Live capture never waits on catch-up; all
writes go through the idempotent ingestion pipeline.
"""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING, Any, Callable, Sequence

from errors import TransientSourceError
from ingestion.records import ChannelInfo
from observability.logger import log_error, log_event
from observability.metrics import timed
from orchestrator.enums.phase import CatchUpPhase
from orchestrator.retry import RetryPolicy

if TYPE_CHECKING:
    from config import AppConfig
    from ingestion.pipeline import IngestionPipeline
    from orchestrator.runtime_context import SourceClientProtocol, StorageProtocol
    from orchestrator.timers import Clock, TimerRegistry


TIMER_PREFILL = "catchup:prefill"
TIMER_BACKFILL = "catchup:backfill"
TIMER_REFRESH = "catchup:refresh"


class CatchUpScheduler:
    def __init__(
        self,
        *,
        source: SourceClientProtocol,
        storage: StorageProtocol,
        pipeline: IngestionPipeline,
        timers: TimerRegistry,
        clock: Clock,
        config: AppConfig,
        is_connected: Callable[[], bool],
        rng: random.Random | None = None,
    ) -> None:
        self._source = source
        self._storage = storage
        self._pipeline = pipeline
        self._timers = timers
        self._clock = clock
        self._config = config
        self._is_connected = is_connected
        self._rng = rng or random.Random()

        self._locks = {phase: asyncio.Lock() for phase in CatchUpPhase}
        self._prefill_retry = RetryPolicy(
            base_ms=config.base_retry_ms,
            max_ms=config.max_retry_ms,
            reset_after=config.prefill_reset_after,
        )
        self._backfill_triggered = False
        self._refresh_armed = False
        self._stopped = False

        self._runs: dict[CatchUpPhase, int] = {phase: 0 for phase in CatchUpPhase}
        self._last_success_ms: dict[CatchUpPhase, int | None] = {
            phase: None for phase in CatchUpPhase
        }
        self._next_retry_ms: dict[CatchUpPhase, int | None] = {
            phase: None for phase in CatchUpPhase
        }
        self.last_error: str | None = None
        self.last_error_at_ms: int | None = None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Called on every entry into connected.

        Schedules prefill after the settle delay (its success triggers a
        fresh backfill for this connection) and arms the periodic refresh
        the first time.
        """
        if self._stopped:
            return
        self._backfill_triggered = False
        self._timers.schedule(TIMER_PREFILL, self._config.prefill_delay_ms, self.run_prefill)
        if self._config.enable_backfill and not self._refresh_armed:
            self._refresh_armed = True
            self.schedule_refresh()

    def stop(self) -> None:
        """Stop flag: running phases finish their current channel and return."""
        self._stopped = True
        for timer_id in (TIMER_PREFILL, TIMER_BACKFILL, TIMER_REFRESH):
            self._timers.cancel(timer_id)

    @property
    def backfill_triggered(self) -> bool:
        return self._backfill_triggered

    def snapshot(self) -> dict[str, Any]:
        return {
            phase.value: {
                "running": self._locks[phase].locked(),
                "runs": self._runs[phase],
                "last_success_ms": self._last_success_ms[phase],
                "next_retry_ms": self._next_retry_ms[phase],
            }
            for phase in CatchUpPhase
        } | {
            "prefill_attempt": self._prefill_retry.attempt,
            "backfill_triggered": self._backfill_triggered,
            "stopped": self._stopped,
        }

    # ------------------------------------------------------------------
    # Prefill
    # ------------------------------------------------------------------

    async def run_prefill(self) -> bool:
        phase = CatchUpPhase.PREFILL
        if not self._enter(phase):
            return False

        async with self._locks[phase]:
            self._runs[phase] += 1
            try:
                with timed("catchup_run", phase=phase.value) as extra:
                    self._require_connected(phase)
                    channels = await self._top_channels(self._config.prefill_channel_limit)
                    extra["channels"] = len(channels)
                    extra["events"] = await self._capture_channels(
                        channels, self._config.prefill_event_limit, pace=False
                    )
            except Exception as e:  # pylint: disable=broad-exception-caught
                self._prefill_retry = self._prefill_retry.next_attempt()
                delay_ms = self._prefill_retry.delay_ms()
                self._phase_failed(phase, e, retry_in_ms=delay_ms,
                                   attempt=self._prefill_retry.attempt)
                if not self._stopped:
                    self._timers.schedule(TIMER_PREFILL, delay_ms, self.run_prefill)
                return False

            self._prefill_retry = self._prefill_retry.reset()
            self._phase_succeeded(phase)

            if self._config.enable_backfill and not self._backfill_triggered:
                self._backfill_triggered = True
                self._timers.schedule(TIMER_BACKFILL, 0, self.run_backfill)
            return True

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def run_backfill(self) -> bool:
        phase = CatchUpPhase.BACKFILL
        if not self._config.enable_backfill:
            log_event({
                "ts_ms": self._clock.now_ms(),
                "event_type": "CATCHUP_SKIPPED",
                "phase": phase.value,
                "reason": "backfill_disabled",
            })
            return False
        if not self._enter(phase):
            return False

        async with self._locks[phase]:
            self._runs[phase] += 1
            first = self._config.prefill_channel_limit
            extra_count = self._config.backfill_extra_channels
            try:
                with timed("catchup_run", phase=phase.value) as extra:
                    self._require_connected(phase)
                    channels = await self._top_channels(first + extra_count)

                    topped_up: list[ChannelInfo] = []
                    for channel in channels[:first]:
                        stored = await self._storage.get_event_count(channel.channel_id)
                        if stored < self._config.backfill_event_limit:
                            topped_up.append(channel)

                    events = await self._capture_channels(
                        topped_up, self._config.backfill_event_limit, pace=True
                    )
                    events += await self._capture_channels(
                        channels[first:], self._config.backfill_extra_event_limit, pace=True
                    )
                    extra["channels"] = len(topped_up) + len(channels[first:])
                    extra["events"] = events
            except Exception as e:  # pylint: disable=broad-exception-caught
                delay_ms = self._config.backfill_retry_ms
                self._phase_failed(phase, e, retry_in_ms=delay_ms)
                if not self._stopped:
                    self._timers.schedule(TIMER_BACKFILL, delay_ms, self.run_backfill)
                return False

            self._phase_succeeded(phase)
            return True

    # ------------------------------------------------------------------
    # Periodic refresh
    # ------------------------------------------------------------------

    def schedule_refresh(self) -> int:
        """Arm the next refresh after period +/- jitter. Returns the delay."""
        jitter = self._config.refresh_jitter_ms
        offset = self._rng.randint(-jitter, jitter) if jitter > 0 else 0
        delay_ms = max(self._config.refresh_period_ms + offset, 0)
        self._next_retry_ms[CatchUpPhase.REFRESH] = delay_ms
        self._timers.schedule(TIMER_REFRESH, delay_ms, self._refresh_tick)
        log_event({
            "ts_ms": self._clock.now_ms(),
            "event_type": "CATCHUP_SCHEDULED",
            "phase": CatchUpPhase.REFRESH.value,
            "delay_ms": delay_ms,
        })
        return delay_ms

    async def _refresh_tick(self) -> None:
        try:
            await self.run_refresh()
        finally:
            if not self._stopped:
                self.schedule_refresh()

    async def run_refresh(self) -> bool:
        phase = CatchUpPhase.REFRESH
        if not self._config.enable_backfill:
            return False
        if not self._enter(phase):
            return False

        async with self._locks[phase]:
            self._runs[phase] += 1
            try:
                with timed("catchup_run", phase=phase.value) as extra:
                    self._require_connected(phase)
                    since = self._clock.now_ms() - self._config.refresh_window_ms
                    active = await self._storage.get_active_channels(
                        since, self._config.refresh_top_k
                    )

                    thin: list[ChannelInfo] = []
                    for channel_id in active:
                        stored = await self._storage.get_event_count(channel_id)
                        if stored < self._config.refresh_min_stored:
                            thin.append(ChannelInfo(channel_id=channel_id))

                    extra["channels"] = len(thin)
                    extra["events"] = await self._capture_channels(
                        thin, self._config.refresh_event_limit, pace=True
                    )
            except Exception as e:  # pylint: disable=broad-exception-caught
                # Next period retries
                self._phase_failed(phase, e, retry_in_ms=None)
                return False

            self._phase_succeeded(phase)
            return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _enter(self, phase: CatchUpPhase) -> bool:
        if self._stopped:
            return False
        if self._locks[phase].locked():
            log_event({
                "ts_ms": self._clock.now_ms(),
                "event_type": "CATCHUP_SKIPPED",
                "phase": phase.value,
                "reason": "already_running",
            })
            return False
        return True

    def _require_connected(self, phase: CatchUpPhase) -> None:
        if not self._is_connected():
            raise TransientSourceError(f"{phase.value}: source not connected")

    async def _top_channels(self, limit: int) -> list[ChannelInfo]:
        channels: Sequence[ChannelInfo] = await self._source.list_channels()
        excluded = set(self._config.excluded_channel_names)
        return [ch for ch in channels if ch.name not in excluded][:limit]

    async def _capture_channels(
        self, channels: Sequence[ChannelInfo], limit: int, *, pace: bool
    ) -> int:
        """Fetch and ingest up to limit events per channel. Returns events seen."""
        seen = 0
        for index, channel in enumerate(channels):
            if self._stopped:
                break
            if pace and index > 0:
                await self._clock.sleep(self._config.catchup_pacing_ms)
            events = await self._source.fetch_recent_events(channel.channel_id, limit)
            for event in events:
                await self._pipeline.ingest(event)
            seen += len(events)
        return seen

    def _phase_succeeded(self, phase: CatchUpPhase) -> None:
        now = self._clock.now_ms()
        self._last_success_ms[phase] = now
        if phase is not CatchUpPhase.REFRESH:
            self._next_retry_ms[phase] = None
        log_event({
            "ts_ms": now,
            "event_type": "CATCHUP_COMPLETED",
            "phase": phase.value,
        })

    def _phase_failed(
        self,
        phase: CatchUpPhase,
        exc: Exception,
        *,
        retry_in_ms: int | None,
        attempt: int | None = None,
    ) -> None:
        self.last_error = f"{phase.value} failed: {exc}"
        self.last_error_at_ms = self._clock.now_ms()
        if retry_in_ms is not None:
            self._next_retry_ms[phase] = retry_in_ms
        log_error({
            "ts_ms": self._clock.now_ms(),
            "event_type": "CATCHUP_FAILED",
            "level": "warning",
            "phase": phase.value,
            "attempt": attempt,
            "retry_in_ms": retry_in_ms,
        }, exc)
