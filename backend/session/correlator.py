"""
Session correlator.

Tracks in-flight multi-event interactions keyed by session id:
- a start notification creates the session (pending)
- state changes move it forward only
- a terminal status stamps end time and duration, persists the session
  through the ingestion pipeline and removes it from memory

State changes for unknown ids are logged and ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from errors import UnknownSessionReference
from ingestion.records import SessionRecord
from observability.logger import log_error, log_event
from session.session_status import STATUS_RANK, TERMINAL_STATUSES, SessionStatus

if TYPE_CHECKING:
    from ingestion.pipeline import IngestionPipeline


@dataclass
class Session:
    session_id: str
    channel_id: str
    initiator_id: str
    counterpart_id: str | None
    is_video: bool
    is_group: bool
    status: SessionStatus
    start_ts_ms: int
    end_ts_ms: int | None = None
    duration_ms: int | None = None

    def to_record(self) -> SessionRecord:
        """
        Raises:
            ValueError if the session has not ended yet.
        """
        if self.end_ts_ms is None or self.duration_ms is None:
            raise ValueError(f"session {self.session_id} has not ended")
        return SessionRecord(
            session_id=self.session_id,
            channel_id=self.channel_id,
            initiator_id=self.initiator_id,
            counterpart_id=self.counterpart_id,
            is_video=self.is_video,
            is_group=self.is_group,
            status=self.status.value,
            start_ts_ms=self.start_ts_ms,
            end_ts_ms=self.end_ts_ms,
            duration_ms=self.duration_ms,
        )


class SessionCorrelator:
    def __init__(self, pipeline: IngestionPipeline) -> None:
        self._pipeline = pipeline
        self._sessions: dict[str, Session] = {}
        self.unknown_references = 0

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def on_session_start(
        self,
        *,
        session_id: str,
        channel_id: str,
        initiator_id: str,
        ts_ms: int,
        counterpart_id: str | None = None,
        is_video: bool = False,
        is_group: bool = False,
    ) -> Session:
        existing = self._sessions.get(session_id)
        if existing is not None:
            log_event({
                "ts_ms": ts_ms,
                "event_type": "SESSION_START_DUPLICATE",
                "level": "debug",
                "session_id": session_id,
            })
            return existing

        session = Session(
            session_id=session_id,
            channel_id=channel_id,
            initiator_id=initiator_id,
            counterpart_id=None if is_group else counterpart_id,
            is_video=is_video,
            is_group=is_group,
            status=SessionStatus.PENDING,
            start_ts_ms=ts_ms,
        )
        self._sessions[session_id] = session
        log_event({
            "ts_ms": ts_ms,
            "event_type": "SESSION_STARTED",
            "session_id": session_id,
            "channel_id": channel_id,
            "is_video": is_video,
            "is_group": is_group,
        })
        return session

    async def on_state_change(
        self, session_id: str, status: str, ts_ms: int
    ) -> Session | None:
        """
        Apply a status notification. Returns the updated session, or None
        when the notification was ignored.
        """
        session = self._sessions.get(session_id)
        if session is None:
            self.unknown_references += 1
            log_error({
                "ts_ms": ts_ms,
                "event_type": "SESSION_UNKNOWN_REFERENCE",
                "level": "warning",
                "session_id": session_id,
                "status": status,
            }, UnknownSessionReference(session_id))
            return None

        try:
            new_status = SessionStatus(status)
        except ValueError:
            log_event({
                "ts_ms": ts_ms,
                "event_type": "SESSION_STATUS_UNKNOWN",
                "level": "warning",
                "session_id": session_id,
                "status": status,
            })
            return None

        if STATUS_RANK[new_status] <= STATUS_RANK[session.status]:
            log_event({
                "ts_ms": ts_ms,
                "event_type": "SESSION_TRANSITION_IGNORED",
                "level": "debug",
                "session_id": session_id,
                "from_status": session.status.value,
                "to_status": new_status.value,
            })
            return None

        session.status = new_status
        log_event({
            "ts_ms": ts_ms,
            "event_type": "SESSION_STATE_CHANGED",
            "session_id": session_id,
            "status": new_status.value,
        })

        if new_status in TERMINAL_STATUSES:
            session.end_ts_ms = ts_ms
            session.duration_ms = max(ts_ms - session.start_ts_ms, 0)
            del self._sessions[session_id]
            await self._pipeline.record_session(session.to_record())

        return session
