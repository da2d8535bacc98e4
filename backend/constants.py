"""
BEHAVIOUR-AS-CONSTANTS
----------------------
Single source of truth for all behavioural defaults in the system.

Rules:
- If changing a value changes runtime behaviour, it belongs here.
- No magic numbers elsewhere in the codebase.
- AppConfig reads environment overrides; these are the fallbacks.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Time units
# =============================================================================

SECOND_MS: Final[int] = 1_000
MINUTE_MS: Final[int] = 60 * SECOND_MS
HOUR_MS: Final[int] = 60 * MINUTE_MS
DAY_MS: Final[int] = 24 * HOUR_MS

# =============================================================================
# Source connection
# =============================================================================

# Reading returned by get_connection_state() for a live connection
SOURCE_CONNECTED_STATE: Final[str] = "CONNECTED"

# Identity reference used by the source for the capturing account itself
SELF_IDENTITY: Final[str] = "me"

# =============================================================================
# Lifecycle / reconnection
# =============================================================================

HEARTBEAT_MS: Final[int] = 30 * SECOND_MS
PROBE_TIMEOUT_MS: Final[int] = 10 * SECOND_MS

# Probe readings inside this window after authentication/ready are ignored
AUTH_GRACE_MS: Final[int] = 60 * SECOND_MS

BASE_RETRY_MS: Final[int] = 5 * SECOND_MS
MAX_RETRY_MS: Final[int] = 60 * SECOND_MS
MAX_RETRIES_BEFORE_AUTH_RESET: Final[int] = 5

# First connect attempt gets one quick in-process retry
INITIAL_RETRY_DELAY_MS: Final[int] = 1 * SECOND_MS

# Largest exponent used in backoff math (2**32 already dwarfs any cap)
MAX_BACKOFF_EXPONENT: Final[int] = 32

# =============================================================================
# Continuity / health
# =============================================================================

CONTINUITY_WARN_MINUTES: Final[int] = 10
HEALTH_EVENT_THRESHOLD_MS: Final[int] = 10 * MINUTE_MS

# Auth challenges are considered stale after this long
AUTH_CHALLENGE_TTL_MS: Final[int] = 5 * MINUTE_MS

# =============================================================================
# Identity cache
# =============================================================================

IDENTITY_CACHE_TTL_MS: Final[int] = DAY_MS
IDENTITY_CACHE_MAX_ENTRIES: Final[int] = 10_000

# =============================================================================
# Catch-up: prefill
# =============================================================================

PREFILL_DELAY_MS: Final[int] = 2 * SECOND_MS
PREFILL_CHANNEL_LIMIT: Final[int] = 10
PREFILL_EVENT_LIMIT: Final[int] = 1
PREFILL_RESET_AFTER: Final[int] = 50

# =============================================================================
# Catch-up: backfill
# =============================================================================

ENABLE_BACKFILL: Final[bool] = True
BACKFILL_EVENT_LIMIT: Final[int] = 20
BACKFILL_EXTRA_CHANNELS: Final[int] = 10
BACKFILL_EXTRA_EVENT_LIMIT: Final[int] = 30
BACKFILL_RETRY_MS: Final[int] = 2 * MINUTE_MS

# Pause between channels so the source is not hammered
CATCHUP_PACING_MS: Final[int] = 1_500

# =============================================================================
# Catch-up: periodic active-channel refresh
# =============================================================================

REFRESH_PERIOD_MS: Final[int] = DAY_MS
REFRESH_JITTER_MS: Final[int] = HOUR_MS
REFRESH_WINDOW_MS: Final[int] = DAY_MS
REFRESH_TOP_K: Final[int] = 10
REFRESH_MIN_STORED: Final[int] = 20
REFRESH_EVENT_LIMIT: Final[int] = 20

# =============================================================================
# Channels
# =============================================================================

# Source-internal system channels never persisted as dimension rows
EXCLUDED_CHANNEL_NAMES: Final[Tuple[str, ...]] = ("WhatsApp",)

# =============================================================================
# HTTP
# =============================================================================

HTTP_HOST: Final[str] = "0.0.0.0"
HTTP_PORT: Final[int] = 3000
