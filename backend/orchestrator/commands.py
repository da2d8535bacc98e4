"""
Commands the lifecycle reducer asks the runtime to perform.

The reducer only describes effects (reinitialize the source client, purge
credentials, arm a timer, start catch-up, write a log line); the runtime
in orchestrator/runtime.py is the only place they are carried out.

Every concrete command is a frozen dataclass so a (ctx, event) pair
always yields comparable, replayable output.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from orchestrator.events import EventType

# =============================================================================
# Command Type Enumeration
# =============================================================================

class CommandType(str, Enum):
    """Discriminant used by the runtime to dispatch and by logs to label."""

    # Source client
    REINITIALIZE = "REINITIALIZE"
    DESTROY_CLIENT = "DESTROY_CLIENT"
    PURGE_CREDENTIALS = "PURGE_CREDENTIALS"

    # Catch-up
    START_CATCH_UP = "START_CATCH_UP"

    # Timers
    START_TIMER = "START_TIMER"
    CANCEL_TIMER = "CANCEL_TIMER"

    # Observability
    LOG_EVENT = "LOG_EVENT"


# =============================================================================
# Base Command
# =============================================================================

class Command:
    """Base class; subclasses set command_type as a dataclass default."""

    command_type: CommandType


# =============================================================================
# Source Client Commands
# =============================================================================

@dataclass(frozen=True)
class Reinitialize(Command):
    """
    Tear down (optionally) and re-create the source client connection.

    The runtime reports failure back as InitFailed / AuthExpired.
    """
    reason: str
    destroy_first: bool = True
    command_type: CommandType = CommandType.REINITIALIZE


@dataclass(frozen=True)
class DestroyClient(Command):
    """Release the source client (shutdown)."""
    command_type: CommandType = CommandType.DESTROY_CLIENT


@dataclass(frozen=True)
class PurgeCredentials(Command):
    """Delete stored source credentials so the next init re-authenticates."""
    reason: str
    command_type: CommandType = CommandType.PURGE_CREDENTIALS


# =============================================================================
# Catch-up Commands
# =============================================================================

@dataclass(frozen=True)
class StartCatchUp(Command):
    """Kick the catch-up scheduler after entering connected."""
    command_type: CommandType = CommandType.START_CATCH_UP


# =============================================================================
# Timer Commands
# =============================================================================

@dataclass(frozen=True)
class StartTimer(Command):
    """
    Request to start a named timer.

    On expiration, the runtime must inject the specified timeout event.
    Starting a timer id that is already pending replaces it.
    """
    timer_id: str
    duration_ms: int
    timeout_event_type: EventType
    command_type: CommandType = CommandType.START_TIMER


@dataclass(frozen=True)
class CancelTimer(Command):
    """Request to cancel a previously scheduled timer."""
    timer_id: str
    command_type: CommandType = CommandType.CANCEL_TIMER


# =============================================================================
# Observability Commands
# =============================================================================

@dataclass(frozen=True)
class LogEvent(Command):
    """Request to emit a structured observability event."""
    event: dict[str, Any]
    command_type: CommandType = CommandType.LOG_EVENT
