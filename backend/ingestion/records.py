"""
Data records flowing through ingestion.

SourceEvent / ChannelInfo / ResolvedIdentity come from the source client.
IngestRecord / IdentityRecord / SessionRecord are what gets persisted.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Mapping


RECORD_EVENT = "event"
RECORD_SESSION = "session"


# =============================================================================
# Source-side records
# =============================================================================

@dataclass(frozen=True)
class ChannelInfo:
    """A conversation container (direct or group)."""
    channel_id: str
    name: str | None = None
    is_group: bool = False
    last_activity_ts_ms: int | None = None


@dataclass(frozen=True)
class SourceEvent:
    """
    One captured message/event as handed over by the source client.

    Reactions on the event ride in metadata["reactions"] as a list of
    {"emoji": ..., "sender_id": ...} and are stored with the event.
    """
    event_id: str
    channel: ChannelInfo
    sender_id: str
    ts_ms: int
    kind: str = "text"
    body: str | None = None
    participant_id: str | None = None
    from_me: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedIdentity:
    """Result of resolving an identity reference at the source."""
    identity_id: str
    display_name: str | None = None
    handle: str | None = None


# =============================================================================
# Persisted records
# =============================================================================

@dataclass(frozen=True)
class IdentityRecord:
    identity_id: str
    display_name: str | None
    handle: str | None
    last_seen_ts_ms: int


@dataclass(frozen=True)
class IngestRecord:
    """
    Persisted event row.

    event_id is the hard dedupe key; the same id coming from live capture
    and from any catch-up phase maps to one stored row.
    """
    event_id: str
    channel_id: str
    channel_name: str | None
    sender_id: str
    sender_name: str
    participant_id: str | None
    participant_name: str | None
    kind: str
    body: str | None
    ts_ms: int
    from_me: bool
    ingested_at_ms: int
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_json_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["metadata"] = dict(self.metadata)
        return {"record_type": RECORD_EVENT, **data}

    @staticmethod
    def from_json_dict(data: Mapping[str, Any]) -> IngestRecord:
        return IngestRecord(
            event_id=str(data["event_id"]),
            channel_id=str(data["channel_id"]),
            channel_name=data.get("channel_name"),
            sender_id=str(data["sender_id"]),
            sender_name=str(data.get("sender_name") or data["sender_id"]),
            participant_id=data.get("participant_id"),
            participant_name=data.get("participant_name"),
            kind=str(data.get("kind", "text")),
            body=data.get("body"),
            ts_ms=int(data["ts_ms"]),
            from_me=bool(data.get("from_me", False)),
            ingested_at_ms=int(data.get("ingested_at_ms", data["ts_ms"])),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class SessionRecord:
    """A completed multi-event interaction (terminal status only)."""
    session_id: str
    channel_id: str
    initiator_id: str
    counterpart_id: str | None
    is_video: bool
    is_group: bool
    status: str
    start_ts_ms: int
    end_ts_ms: int
    duration_ms: int

    def to_json_dict(self) -> dict[str, Any]:
        return {"record_type": RECORD_SESSION, **asdict(self)}

    @staticmethod
    def from_json_dict(data: Mapping[str, Any]) -> SessionRecord:
        return SessionRecord(
            session_id=str(data["session_id"]),
            channel_id=str(data["channel_id"]),
            initiator_id=str(data["initiator_id"]),
            counterpart_id=data.get("counterpart_id"),
            is_video=bool(data.get("is_video", False)),
            is_group=bool(data.get("is_group", False)),
            status=str(data["status"]),
            start_ts_ms=int(data["start_ts_ms"]),
            end_ts_ms=int(data["end_ts_ms"]),
            duration_ms=int(data["duration_ms"]),
        )
