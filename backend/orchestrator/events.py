"""
Unified event definitions for the lifecycle reducer.

Each event is an immutable record of something that already happened
to the source connection (or a timer that fired). Events hold data and
nothing else; timestamps are supplied by whoever raises them.

Two families live here:
- Control-plane events, reduced by the lifecycle state machine.
- Data-plane events, routed by the capture service to the ingestion
  pipeline / session correlator and never reduced.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import constants as c

if TYPE_CHECKING:
    from ingestion.records import SourceEvent


# =============================================================================
# Event Type Enumeration
# =============================================================================

class EventType(str, Enum):
    """
    Event discriminants. The reducer has a branch (or an explicit
    ignore) for every control-plane member in every lifecycle state.
    """

    # ------------------------------------------------------------------
    # Source connection lifecycle
    # ------------------------------------------------------------------
    AUTH_CHALLENGE = "AUTH_CHALLENGE"
    AUTHENTICATED = "AUTHENTICATED"
    READY = "READY"
    DISCONNECTED = "DISCONNECTED"
    AUTH_EXPIRED = "AUTH_EXPIRED"
    INIT_FAILED = "INIT_FAILED"

    # ------------------------------------------------------------------
    # Timers / internal control
    # ------------------------------------------------------------------
    HEARTBEAT_PROBE = "HEARTBEAT_PROBE"
    RECONNECT_DUE = "RECONNECT_DUE"

    # ------------------------------------------------------------------
    # Process control
    # ------------------------------------------------------------------
    SHUTDOWN_REQUESTED = "SHUTDOWN_REQUESTED"

    # ------------------------------------------------------------------
    # Data plane (never reduced)
    # ------------------------------------------------------------------
    LIVE_EVENT_RECEIVED = "LIVE_EVENT_RECEIVED"
    SESSION_START_NOTIFIED = "SESSION_START_NOTIFIED"
    SESSION_STATE_CHANGED = "SESSION_STATE_CHANGED"


# =============================================================================
# Base Event
# =============================================================================

@dataclass(frozen=True)
class Event:
    """Common fields: the discriminant and the epoch-ms time it occurred."""

    event_type: EventType
    ts_ms: int


# =============================================================================
# Source Connection Events
# =============================================================================

@dataclass(frozen=True)
class AuthChallenge(Event):
    """Source needs interactive authentication (e.g. a pairing code)."""
    payload: Any = None


@dataclass(frozen=True)
class Authenticated(Event):
    """Source accepted the credentials."""


@dataclass(frozen=True)
class Ready(Event):
    """Source connection is usable."""


@dataclass(frozen=True)
class Disconnected(Event):
    """Source reported loss of the connection."""
    reason: str | None = None


@dataclass(frozen=True)
class AuthExpired(Event):
    """Stored credentials were rejected; re-authentication is required."""
    reason: str | None = None


@dataclass(frozen=True)
class InitFailed(Event):
    """A (re)initialisation attempt of the source client raised."""
    reason: str | None = None


# =============================================================================
# Timer / Internal Events
# =============================================================================

@dataclass(frozen=True)
class HeartbeatProbe(Event):
    """
    Result of one connection-state probe.

    connection_state is the raw reading (None on error or timeout).
    error is set when the probe raised or timed out.
    """
    connection_state: str | None = None
    error: str | None = None

    @property
    def healthy(self) -> bool:
        return self.error is None and self.connection_state == c.SOURCE_CONNECTED_STATE


@dataclass(frozen=True)
class ReconnectDue(Event):
    """Reconnect delay elapsed."""


@dataclass(frozen=True)
class ShutdownRequested(Event):
    """Process received a termination request."""
    reason: str | None = None


# =============================================================================
# Data-Plane Events
# =============================================================================

@dataclass(frozen=True)
class LiveEventReceived(Event):
    """A live captured event from the source."""
    event: SourceEvent


@dataclass(frozen=True)
class SessionStartNotified(Event):
    """A multi-event interaction (e.g. a call) was initiated."""
    session_id: str
    channel_id: str
    initiator_id: str
    counterpart_id: str | None = None
    is_video: bool = False
    is_group: bool = False


@dataclass(frozen=True)
class SessionStateChanged(Event):
    """A tracked interaction changed status (raw status string)."""
    session_id: str
    status: str


CONTROL_EVENT_TYPES: frozenset[EventType] = frozenset({
    EventType.AUTH_CHALLENGE,
    EventType.AUTHENTICATED,
    EventType.READY,
    EventType.DISCONNECTED,
    EventType.AUTH_EXPIRED,
    EventType.INIT_FAILED,
    EventType.HEARTBEAT_PROBE,
    EventType.RECONNECT_DUE,
    EventType.SHUTDOWN_REQUESTED,
})
