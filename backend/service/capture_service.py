"""
Capture service: composition root, one per process.

Responsibilities:
- Construct and own every component (runtime, pipeline, correlator,
  catch-up, watermark, identity cache, status reporter, storage)
- Act as the event sink for the source client and route events:
    control-plane -> lifecycle runtime
    live events   -> ingestion pipeline (in any lifecycle state)
    sessions      -> session correlator
- Startup (storage open, watermark load, first connect)
- Cooperative shutdown

NOT responsible for:
- Any state machine logic (reducer)
- Persistence details (storage)
"""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING

from catchup.scheduler import CatchUpScheduler
from errors import StartupError
from ingestion.identity_cache import IdentityCache
from ingestion.pipeline import IngestionPipeline
from ingestion.watermark import ContinuityWatermark
from observability.logger import log_error, log_event
from orchestrator.enums.state import LifecycleState
from orchestrator.events import (
    Event,
    LiveEventReceived,
    SessionStartNotified,
    SessionStateChanged,
)
from orchestrator.runtime import Runtime
from orchestrator.runtime_context import RuntimeExecutionContext
from orchestrator.state_dataclass import ConnectionContext, LifecyclePolicy
from orchestrator.timers import Clock, SystemClock, TimerRegistry
from service.source_client import SerializedSourceClient, SourceFactory
from session.correlator import SessionCorrelator
from status.reporter import StatusReporter
from storage.credentials import CredentialStore
from storage.raw_log import JsonlRawLog
from storage.sqlite_store import SqliteStore

if TYPE_CHECKING:
    from config import AppConfig
    from orchestrator.runtime_context import CredentialStoreProtocol, StorageProtocol


class CaptureService:
    def __init__(
        self,
        *,
        config: AppConfig,
        source_factory: SourceFactory,
        storage: StorageProtocol | None = None,
        credentials: CredentialStoreProtocol | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._clock = clock or SystemClock()
        self._storage: StorageProtocol = storage or SqliteStore(
            config.db_path, JsonlRawLog(config.raw_log_path)
        )
        self._credentials: CredentialStoreProtocol = credentials or CredentialStore(
            config.auth_dir
        )
        self._timers = TimerRegistry(self._clock)
        self._last_event_at_ms: int | None = None
        self._started = False
        self._stopping = False

        # Sink calls currently running, per calling task
        self._handlers: dict[asyncio.Task | None, int] = {}
        self._handlers_idle = asyncio.Event()
        self._handlers_idle.set()

        try:
            inner = source_factory(self.on_source_event)
        except Exception as e:  # pylint: disable=broad-exception-caught
            raise StartupError(f"source client factory failed: {e}") from e
        self._source = SerializedSourceClient(inner)

        # ---- Data plane ----
        self.identities = IdentityCache(
            self._source.resolve_identity,
            self._clock,
            ttl_ms=config.identity_cache_ttl_ms,
            max_entries=config.identity_cache_max_entries,
        )
        self.watermark = ContinuityWatermark(
            self._storage,
            self._clock,
            stall_threshold_ms=config.continuity_warn_ms,
        )
        self.pipeline = IngestionPipeline(
            storage=self._storage,
            identities=self.identities,
            watermark=self.watermark,
            clock=self._clock,
            excluded_channel_names=config.excluded_channel_names,
        )
        self.correlator = SessionCorrelator(self.pipeline)
        self.catchup = CatchUpScheduler(
            source=self._source,
            storage=self._storage,
            pipeline=self.pipeline,
            timers=self._timers,
            clock=self._clock,
            config=config,
            is_connected=self.is_connected,
            rng=rng,
        )

        # ---- Control plane ----
        self.runtime = Runtime(
            context=RuntimeExecutionContext(
                source=self._source,
                credentials=self._credentials,
                catchup=self.catchup,
                watermark=self.watermark,
                probe=self._source.probe_connection_state,
            ),
            timers=self._timers,
            clock=self._clock,
            policy=LifecyclePolicy.from_config(config),
            heartbeat_ms=config.heartbeat_ms,
            probe_timeout_ms=config.probe_timeout_ms,
            on_transition=self._on_transition,
            on_heartbeat=self._on_heartbeat,
        )

        self.status = StatusReporter(
            runtime=self.runtime,
            pipeline=self.pipeline,
            watermark=self.watermark,
            correlator=self.correlator,
            catchup=self.catchup,
            identities=self.identities,
            clock=self._clock,
            last_event_at=lambda: self._last_event_at_ms,
            health_event_threshold_ms=config.health_event_threshold_ms,
            started_at_ms=self._clock.now_ms(),
            status_path=config.status_path,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def timers(self) -> TimerRegistry:
        return self._timers

    @property
    def last_event_at_ms(self) -> int | None:
        return self._last_event_at_ms

    def is_connected(self) -> bool:
        return self.runtime.state.state is LifecycleState.CONNECTED

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Open storage, load the watermark, start the first connect.

        Raises:
            StartupError if storage cannot be opened.
        """
        if self._started:
            return
        try:
            await self._storage.open()
        except Exception as e:  # pylint: disable=broad-exception-caught
            raise StartupError(f"storage unavailable: {e}") from e

        await self.watermark.load()
        self._started = True
        self.status.write_status_file()
        self.runtime.start()

        log_event({
            "ts_ms": self._clock.now_ms(),
            "event_type": "SERVICE_STARTED",
            "env": self._config.env,
            "watermark_ms": self.watermark.value,
            "enable_backfill": self._config.enable_backfill,
        })

    async def shutdown(self, reason: str | None = None) -> None:
        """
        Cooperative teardown:
        1. catch-up stop flag (running phases stop between channels)
        2. timer registry closes and awaits running callbacks
        3. lifecycle enters shutting_down and destroys the client
        4. sink calls already running finish their writes
        5. storage closes
        """
        if self._stopping:
            return
        self._stopping = True

        self.catchup.stop()
        await self._timers.shutdown()
        await self.runtime.shutdown(reason)
        await self._drain_handlers()

        if self._started:
            try:
                await self._storage.close()
            except Exception as e:  # pylint: disable=broad-exception-caught
                log_error({
                    "ts_ms": self._clock.now_ms(),
                    "event_type": "STORAGE_CLOSE_FAILED",
                }, e)

        self.status.write_status_file()
        log_event({
            "ts_ms": self._clock.now_ms(),
            "event_type": "SERVICE_STOPPED",
            "reason": reason,
            **self.pipeline.counters(),
        })

    # ------------------------------------------------------------------
    # Event sink (called by the source client)
    # ------------------------------------------------------------------

    async def on_source_event(self, event: Event) -> None:
        """
        Route one inbound event. Never raises into the source client.

        Live events are persisted regardless of lifecycle state.
        """
        task = asyncio.current_task()
        self._handlers[task] = self._handlers.get(task, 0) + 1
        self._handlers_idle.clear()
        try:
            if isinstance(event, LiveEventReceived):
                self._last_event_at_ms = self._clock.now_ms()
                await self.pipeline.ingest(event.event)

            elif isinstance(event, SessionStartNotified):
                self.correlator.on_session_start(
                    session_id=event.session_id,
                    channel_id=event.channel_id,
                    initiator_id=event.initiator_id,
                    counterpart_id=event.counterpart_id,
                    is_video=event.is_video,
                    is_group=event.is_group,
                    ts_ms=event.ts_ms,
                )

            elif isinstance(event, SessionStateChanged):
                await self.correlator.on_state_change(
                    event.session_id, event.status, event.ts_ms
                )

            else:
                await self.runtime.handle_event(event)

        except Exception as e:  # pylint: disable=broad-exception-caught
            log_error({
                "ts_ms": self._clock.now_ms(),
                "event_type": "SOURCE_EVENT_HANDLER_FAILED",
                "source_event_type": event.event_type.value,
            }, e)
        finally:
            depth = self._handlers[task] - 1
            if depth:
                self._handlers[task] = depth
            else:
                del self._handlers[task]
            if not self._handlers:
                self._handlers_idle.set()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _on_transition(self, prev: ConnectionContext, new: ConnectionContext) -> None:
        # Called only when the context actually changed
        del prev, new
        self.status.write_status_file()

    def _on_heartbeat(self) -> None:
        # Keeps health / last event / watermark fresh between transitions
        self.status.write_status_file()

    async def _drain_handlers(self) -> None:
        if asyncio.current_task() in self._handlers:
            # Shutdown requested from inside a sink call; it cannot wait for itself
            return
        if not self._handlers_idle.is_set():
            log_event({
                "ts_ms": self._clock.now_ms(),
                "event_type": "SHUTDOWN_DRAINING",
                "in_flight": sum(self._handlers.values()),
            })
            await self._handlers_idle.wait()
