"""
Ingestion pipeline: the single write path for live and historical events.

Order per event:
1. Append the raw record to the append-only log (durable first, with
   identities as the source reported them)
2. Resolve display names (identity cache)
3. Upsert channel / identity dimensions, insert the event keyed by id
4. On success: record last write time, advance the continuity watermark

Raw append failure aborts the event. Structured failures are logged with
full context and never propagate: the raw log already holds the event.
"""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING, Any, Iterable

import constants as c
from errors import StorageWriteError
from ingestion.records import IdentityRecord, IngestRecord, SessionRecord, SourceEvent
from observability.logger import log_error, log_event

if TYPE_CHECKING:
    from ingestion.identity_cache import IdentityCache
    from ingestion.watermark import ContinuityWatermark
    from orchestrator.runtime_context import StorageProtocol
    from orchestrator.timers import Clock


class IngestionPipeline:
    def __init__(
        self,
        *,
        storage: StorageProtocol,
        identities: IdentityCache,
        watermark: ContinuityWatermark,
        clock: Clock,
        excluded_channel_names: Iterable[str] = c.EXCLUDED_CHANNEL_NAMES,
        self_identity: str = c.SELF_IDENTITY,
    ) -> None:
        self._storage = storage
        self._identities = identities
        self._watermark = watermark
        self._clock = clock
        self._excluded = frozenset(excluded_channel_names)
        self._self_identity = self_identity

        self.events_ingested = 0
        self.duplicates_absorbed = 0
        self.raw_failures = 0
        self.storage_failures = 0
        self.sessions_recorded = 0
        self.last_write_ts_ms: int | None = None
        self.last_error: str | None = None
        self.last_error_at_ms: int | None = None

    def counters(self) -> dict[str, Any]:
        return {
            "events_ingested": self.events_ingested,
            "duplicates_absorbed": self.duplicates_absorbed,
            "raw_failures": self.raw_failures,
            "storage_failures": self.storage_failures,
            "sessions_recorded": self.sessions_recorded,
        }

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def ingest(self, event: SourceEvent) -> bool:
        """
        Persist one event. Returns True when the event is stored (or was
        already stored); False when a write failed. Never raises.
        """
        # Nothing that can wait on the source client runs before this write
        raw = self._build_record(event)
        try:
            await self._storage.append_raw(raw.to_json_dict())
        except Exception as e:  # pylint: disable=broad-exception-caught
            self.raw_failures += 1
            self.last_error = f"raw append failed for {event.event_id}: {e}"
            self.last_error_at_ms = self._clock.now_ms()
            log_error({
                "ts_ms": self._clock.now_ms(),
                "event_type": "RAW_APPEND_FAILED",
                "event_id": event.event_id,
                "channel_id": event.channel.channel_id,
            }, e)
            return False

        record = await self._resolve_names(raw, event)

        operation = "upsert_channel"
        try:
            if event.channel.name not in self._excluded:
                await self._storage.upsert_channel(event.channel)

            operation = "upsert_identity"
            author_id = event.participant_id or event.sender_id
            if author_id and author_id != self._self_identity:
                author_name = (
                    record.participant_name if event.participant_id else record.sender_name
                )
                await self._storage.upsert_identity(
                    IdentityRecord(
                        identity_id=author_id,
                        display_name=author_name if author_name != author_id else None,
                        handle=None,
                        last_seen_ts_ms=event.ts_ms,
                    )
                )

            operation = "insert_event"
            inserted = await self._storage.insert_event(record)
        except Exception as e:  # pylint: disable=broad-exception-caught
            self._storage_failed(
                e,
                operation=operation,
                event_id=event.event_id,
                channel_id=event.channel.channel_id,
            )
            return False

        if inserted:
            self.events_ingested += 1
        else:
            self.duplicates_absorbed += 1
            log_event({
                "ts_ms": self._clock.now_ms(),
                "event_type": "EVENT_DUPLICATE",
                "level": "debug",
                "event_id": event.event_id,
                "channel_id": event.channel.channel_id,
            })

        self.last_write_ts_ms = self._clock.now_ms()
        await self._watermark.advance(event.ts_ms)
        return True

    def _build_record(self, event: SourceEvent) -> IngestRecord:
        return IngestRecord(
            event_id=event.event_id,
            channel_id=event.channel.channel_id,
            channel_name=event.channel.name,
            sender_id=event.sender_id,
            sender_name=event.sender_id,
            participant_id=event.participant_id,
            participant_name=None,
            kind=event.kind,
            body=event.body,
            ts_ms=event.ts_ms,
            from_me=event.from_me,
            ingested_at_ms=self._clock.now_ms(),
            metadata=dict(event.metadata),
        )

    async def _resolve_names(self, record: IngestRecord, event: SourceEvent) -> IngestRecord:
        sender_name = await self._identities.display_name(event.sender_id)
        participant_name: str | None = None
        if event.participant_id:
            participant_name = await self._identities.display_name(event.participant_id)
        return replace(
            record,
            sender_name=sender_name or event.sender_id,
            participant_name=participant_name,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def record_session(self, session: SessionRecord) -> bool:
        """Raw append then structured insert of a terminal session."""
        try:
            await self._storage.append_raw(session.to_json_dict())
        except Exception as e:  # pylint: disable=broad-exception-caught
            self.raw_failures += 1
            self.last_error = f"raw append failed for session {session.session_id}: {e}"
            self.last_error_at_ms = self._clock.now_ms()
            log_error({
                "ts_ms": self._clock.now_ms(),
                "event_type": "RAW_APPEND_FAILED",
                "session_id": session.session_id,
                "channel_id": session.channel_id,
            }, e)
            return False

        try:
            inserted = await self._storage.insert_session_record(session)
        except Exception as e:  # pylint: disable=broad-exception-caught
            self._storage_failed(
                e,
                operation="insert_session_record",
                session_id=session.session_id,
                channel_id=session.channel_id,
            )
            return False

        if inserted:
            self.sessions_recorded += 1
        self.last_write_ts_ms = self._clock.now_ms()
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _storage_failed(self, exc: Exception, *, operation: str, **ids: Any) -> None:
        self.storage_failures += 1
        err = exc if isinstance(exc, StorageWriteError) else StorageWriteError(
            operation, f"{type(exc).__name__}: {exc}", **ids
        )
        where = ", ".join(f"{key}={value}" for key, value in ids.items())
        self.last_error = f"{operation} failed ({where}): {err}"
        self.last_error_at_ms = self._clock.now_ms()
        log_error({
            "ts_ms": self._clock.now_ms(),
            "event_type": "STORAGE_WRITE_FAILED",
            "operation": operation,
            **ids,
        }, err)
