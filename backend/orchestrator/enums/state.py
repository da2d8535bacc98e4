"""
Authoritative connection lifecycle state enumeration.

Rules:
- This enum defines ONLY the control-plane states.
- No behavior, no helper methods, no side effects.
- Transitions are defined exclusively in the reducer.
"""

from __future__ import annotations

from enum import Enum


class LifecycleState(str, Enum):
    """
    Deterministic control states for the single source connection.

    Exactly one value is current at any time. SHUTTING_DOWN is terminal.
    """

    STARTING = "starting"
    AWAITING_AUTHENTICATION = "awaiting_authentication"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    NEEDS_REAUTHENTICATION = "needs_reauthentication"
    SHUTTING_DOWN = "shutting_down"
