"""
Session (multi-event interaction) status enumeration.

pending -> connecting -> in_progress -> {ended | rejected | missed}
"""

from __future__ import annotations

from enum import Enum


class SessionStatus(str, Enum):
    PENDING = "pending"
    CONNECTING = "connecting"
    IN_PROGRESS = "in_progress"
    ENDED = "ended"
    REJECTED = "rejected"
    MISSED = "missed"


TERMINAL_STATUSES: frozenset[SessionStatus] = frozenset({
    SessionStatus.ENDED,
    SessionStatus.REJECTED,
    SessionStatus.MISSED,
})

# Forward-only ordering; every terminal status shares the last rank
STATUS_RANK: dict[SessionStatus, int] = {
    SessionStatus.PENDING: 0,
    SessionStatus.CONNECTING: 1,
    SessionStatus.IN_PROGRESS: 2,
    SessionStatus.ENDED: 3,
    SessionStatus.REJECTED: 3,
    SessionStatus.MISSED: 3,
}
