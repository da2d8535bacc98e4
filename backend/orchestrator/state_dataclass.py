"""
Authoritative lifecycle state container.

Rules:
- This dataclass is a pure data model.
- It contains ALL state the reducer may ever need.
- No behavior, no helpers, no derived logic.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import constants as c
from orchestrator.enums.state import LifecycleState

if TYPE_CHECKING:
    from config import AppConfig


# =============================================================================
# Reducer Policy
# =============================================================================

@dataclass(frozen=True)
class LifecyclePolicy:
    """Reducer knobs. Passed in so the reducer never reads config itself."""

    base_retry_ms: int = c.BASE_RETRY_MS
    max_retry_ms: int = c.MAX_RETRY_MS
    max_retries_before_auth_reset: int = c.MAX_RETRIES_BEFORE_AUTH_RESET
    auth_grace_ms: int = c.AUTH_GRACE_MS
    initial_retry_delay_ms: int = c.INITIAL_RETRY_DELAY_MS

    @staticmethod
    def from_config(config: AppConfig) -> LifecyclePolicy:
        return LifecyclePolicy(
            base_retry_ms=config.base_retry_ms,
            max_retry_ms=config.max_retry_ms,
            max_retries_before_auth_reset=config.max_retries_before_auth_reset,
            auth_grace_ms=config.auth_grace_ms,
            initial_retry_delay_ms=config.initial_retry_delay_ms,
        )


# =============================================================================
# Connection Context
# =============================================================================

@dataclass(frozen=True)
class ConnectionContext:
    """Immutable snapshot of all lifecycle-owned state."""

    state: LifecycleState = LifecycleState.STARTING

    # Consecutive failed attempts since the last success or forced reset
    retry_count: int = 0

    # Number of client reinitialisations issued over the process lifetime
    restart_count: int = 0

    last_challenge_ts_ms: int | None = None
    last_authenticated_ts_ms: int | None = None
    last_ready_ts_ms: int | None = None

    ever_connected: bool = False
    ever_authenticated: bool = False

    # The first connect attempt gets exactly one quick retry
    initial_retry_used: bool = False

    # Human-readable explanation of the current state
    details: str = "starting"
    last_error: str | None = None
    last_error_ts_ms: int | None = None
