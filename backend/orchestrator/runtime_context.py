"""
Runtime execution context.

Provides Runtime with live access to the imperative collaborators
needed for command execution and side effects (source client,
credential store, catch-up scheduler, continuity watermark).

This module contains:
- Narrow Protocols (capabilities, not implementations)
- Zero orchestration logic
- Zero state mutation
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Sequence, runtime_checkable

from ingestion.records import (
    ChannelInfo,
    IdentityRecord,
    IngestRecord,
    ResolvedIdentity,
    SessionRecord,
    SourceEvent,
)


# ---------------------------------------------------------------------
# Source client
# ---------------------------------------------------------------------

@runtime_checkable
class SourceClientProtocol(Protocol):
    """
    The external messaging-source client.

    Contract:
    - reinitialize() (re)creates the connection; on a fresh client it is
      the first connect. It reports progress through the event sink
      (AuthChallenge / Authenticated / Ready / Disconnected).
      Raising AuthExpiredError means stored credentials were rejected;
      any other exception is treated as transient.
    - get_connection_state() returns "CONNECTED" for a live connection.
    """

    async def fetch_recent_events(
        self, channel_id: str, limit: int
    ) -> Sequence[SourceEvent]: ...

    async def resolve_identity(self, identity_id: str) -> ResolvedIdentity | None: ...

    async def list_channels(self) -> Sequence[ChannelInfo]: ...

    async def get_connection_state(self) -> str | None: ...

    async def reinitialize(self) -> None: ...

    async def destroy(self) -> None: ...


# ---------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------

@runtime_checkable
class StorageProtocol(Protocol):
    """
    Raw append log + structured store.

    insert_event / insert_session_record return False when the id already
    exists (silent no-op).
    """

    async def open(self) -> None: ...
    async def close(self) -> None: ...

    async def append_raw(self, record: Mapping[str, Any]) -> None: ...

    async def upsert_channel(self, channel: ChannelInfo) -> None: ...
    async def upsert_identity(self, identity: IdentityRecord) -> None: ...
    async def insert_event(self, record: IngestRecord) -> bool: ...
    async def insert_session_record(self, record: SessionRecord) -> bool: ...

    async def get_event_count(self, channel_id: str) -> int: ...
    async def get_active_channels(self, since_ts_ms: int, limit: int) -> list[str]: ...

    async def get_watermark(self) -> int | None: ...
    async def set_watermark(self, value: int) -> None: ...


# ---------------------------------------------------------------------
# Runtime collaborators
# ---------------------------------------------------------------------

class CredentialStoreProtocol(Protocol):
    def purge(self) -> bool: ...


class CatchUpProtocol(Protocol):
    def start(self) -> None: ...


class WatermarkProtocol(Protocol):
    def check_stall(self, now_ms: int) -> bool: ...


# ---------------------------------------------------------------------
# Runtime Execution Context
# ---------------------------------------------------------------------

ConnectionProbe = Callable[[float], Awaitable[Optional[str]]]


class RuntimeExecutionContext:
    """
    Imperative execution context for Runtime.

    Runtime is allowed to:
    - Call the source client
    - Purge credentials
    - Kick catch-up
    - Ask the watermark for a stall check

    Runtime is NOT allowed to:
    - Persist events
    - Perform orchestration decisions
    """

    def __init__(
        self,
        *,
        source: SourceClientProtocol,
        credentials: CredentialStoreProtocol,
        catchup: CatchUpProtocol,
        watermark: WatermarkProtocol,
        probe: ConnectionProbe | None = None,
    ) -> None:
        self._source = source
        self._probe = probe
        self._credentials = credentials
        self._catchup = catchup
        self._watermark = watermark

    @property
    def source(self) -> SourceClientProtocol:
        return self._source

    async def probe_connection_state(self, timeout_s: float) -> str | None:
        """
        Bounded connection-state read for the heartbeat.

        Uses the injected probe when given (the serialized client starts
        the timeout once it holds its lock); otherwise bounds the raw call.
        """
        if self._probe is not None:
            return await self._probe(timeout_s)
        return await asyncio.wait_for(self._source.get_connection_state(), timeout=timeout_s)

    @property
    def credentials(self) -> CredentialStoreProtocol:
        return self._credentials

    @property
    def catchup(self) -> CatchUpProtocol:
        return self._catchup

    @property
    def watermark(self) -> WatermarkProtocol:
        return self._watermark
