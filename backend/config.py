"""
Deployment settings read from the environment.

AppConfig is built once at startup and never mutated. Paths, ports and
the source client factory are deployment concerns and live here; every
behavioural default (intervals, limits, thresholds) is taken from
constants.py and only overridden when the matching variable is set.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import constants as c


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class AppConfig:
    """Settings handed to CaptureService and the HTTP layer."""

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str = "dev"
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    data_dir: Path = Path("data")
    db_path: Path = Path("data/app.sqlite")
    raw_log_path: Path = Path("out/raw.jsonl")
    status_path: Path | None = Path("out/status.json")
    auth_dir: Path = Path(".auth")

    # ------------------------------------------------------------------
    # Source client
    # ------------------------------------------------------------------

    # "package.module:factory" returning a SourceClientProtocol
    source_client_factory: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle / reconnection
    # ------------------------------------------------------------------

    heartbeat_ms: int = c.HEARTBEAT_MS
    probe_timeout_ms: int = c.PROBE_TIMEOUT_MS
    auth_grace_ms: int = c.AUTH_GRACE_MS
    base_retry_ms: int = c.BASE_RETRY_MS
    max_retry_ms: int = c.MAX_RETRY_MS
    max_retries_before_auth_reset: int = c.MAX_RETRIES_BEFORE_AUTH_RESET
    initial_retry_delay_ms: int = c.INITIAL_RETRY_DELAY_MS

    # ------------------------------------------------------------------
    # Continuity / health
    # ------------------------------------------------------------------

    continuity_warn_minutes: int = c.CONTINUITY_WARN_MINUTES
    health_event_threshold_ms: int = c.HEALTH_EVENT_THRESHOLD_MS

    # ------------------------------------------------------------------
    # Identity cache
    # ------------------------------------------------------------------

    identity_cache_ttl_ms: int = c.IDENTITY_CACHE_TTL_MS
    identity_cache_max_entries: int = c.IDENTITY_CACHE_MAX_ENTRIES

    # ------------------------------------------------------------------
    # Catch-up
    # ------------------------------------------------------------------

    enable_backfill: bool = c.ENABLE_BACKFILL
    prefill_delay_ms: int = c.PREFILL_DELAY_MS
    prefill_channel_limit: int = c.PREFILL_CHANNEL_LIMIT
    prefill_event_limit: int = c.PREFILL_EVENT_LIMIT
    prefill_reset_after: int = c.PREFILL_RESET_AFTER
    backfill_event_limit: int = c.BACKFILL_EVENT_LIMIT
    backfill_extra_channels: int = c.BACKFILL_EXTRA_CHANNELS
    backfill_extra_event_limit: int = c.BACKFILL_EXTRA_EVENT_LIMIT
    backfill_retry_ms: int = c.BACKFILL_RETRY_MS
    catchup_pacing_ms: int = c.CATCHUP_PACING_MS
    refresh_period_ms: int = c.REFRESH_PERIOD_MS
    refresh_jitter_ms: int = c.REFRESH_JITTER_MS
    refresh_window_ms: int = c.REFRESH_WINDOW_MS
    refresh_top_k: int = c.REFRESH_TOP_K
    refresh_min_stored: int = c.REFRESH_MIN_STORED
    refresh_event_limit: int = c.REFRESH_EVENT_LIMIT

    excluded_channel_names: tuple[str, ...] = c.EXCLUDED_CHANNEL_NAMES

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    http_host: str = c.HTTP_HOST
    http_port: int = c.HTTP_PORT

    # ------------------------------------------------------------------
    # Derived
    # ------------------------------------------------------------------

    @property
    def continuity_warn_ms(self) -> int:
        return self.continuity_warn_minutes * c.MINUTE_MS

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ValueError if a numeric variable is not an integer.
        """
        data_dir = Path(os.environ.get("DATA_DIR", "data"))
        out_dir = Path(os.environ.get("OUTPUT_DIR", "out"))
        status_path = os.environ.get("STATUS_PATH", str(out_dir / "status.json"))

        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),

            data_dir=data_dir,
            db_path=Path(os.environ.get("DB_PATH", str(data_dir / "app.sqlite"))),
            raw_log_path=Path(os.environ.get("RAW_LOG_PATH", str(out_dir / "raw.jsonl"))),
            status_path=Path(status_path) if status_path else None,
            auth_dir=Path(os.environ.get("AUTH_DIR", ".auth")),

            source_client_factory=os.environ.get("SOURCE_CLIENT_FACTORY"),

            heartbeat_ms=_env_int("HEARTBEAT_MS", c.HEARTBEAT_MS),
            probe_timeout_ms=_env_int("PROBE_TIMEOUT_MS", c.PROBE_TIMEOUT_MS),
            auth_grace_ms=_env_int("AUTH_GRACE_MS", c.AUTH_GRACE_MS),
            base_retry_ms=_env_int("BASE_RETRY_MS", c.BASE_RETRY_MS),
            max_retry_ms=_env_int("MAX_RETRY_MS", c.MAX_RETRY_MS),
            max_retries_before_auth_reset=_env_int(
                "MAX_RETRIES_BEFORE_AUTH_RESET", c.MAX_RETRIES_BEFORE_AUTH_RESET
            ),
            initial_retry_delay_ms=_env_int(
                "INITIAL_RETRY_DELAY_MS", c.INITIAL_RETRY_DELAY_MS
            ),

            continuity_warn_minutes=_env_int(
                "CONTINUITY_WARN_MINUTES", c.CONTINUITY_WARN_MINUTES
            ),
            health_event_threshold_ms=_env_int(
                "HEALTH_EVENT_THRESHOLD_MS", c.HEALTH_EVENT_THRESHOLD_MS
            ),

            identity_cache_ttl_ms=_env_int("IDENTITY_CACHE_TTL_MS", c.IDENTITY_CACHE_TTL_MS),
            identity_cache_max_entries=_env_int(
                "IDENTITY_CACHE_MAX_ENTRIES", c.IDENTITY_CACHE_MAX_ENTRIES
            ),

            enable_backfill=_env_bool("ENABLE_BACKFILL", c.ENABLE_BACKFILL),
            prefill_delay_ms=_env_int("PREFILL_DELAY_MS", c.PREFILL_DELAY_MS),
            prefill_channel_limit=_env_int("PREFILL_CHANNEL_LIMIT", c.PREFILL_CHANNEL_LIMIT),
            prefill_event_limit=_env_int("PREFILL_EVENT_LIMIT", c.PREFILL_EVENT_LIMIT),
            prefill_reset_after=_env_int("PREFILL_RESET_AFTER", c.PREFILL_RESET_AFTER),
            backfill_event_limit=_env_int("BACKFILL_EVENT_LIMIT", c.BACKFILL_EVENT_LIMIT),
            backfill_extra_channels=_env_int(
                "BACKFILL_EXTRA_CHANNELS", c.BACKFILL_EXTRA_CHANNELS
            ),
            backfill_extra_event_limit=_env_int(
                "BACKFILL_EXTRA_EVENT_LIMIT", c.BACKFILL_EXTRA_EVENT_LIMIT
            ),
            backfill_retry_ms=_env_int("BACKFILL_RETRY_MS", c.BACKFILL_RETRY_MS),
            catchup_pacing_ms=_env_int("CATCHUP_PACING_MS", c.CATCHUP_PACING_MS),
            refresh_period_ms=_env_int("REFRESH_PERIOD_MS", c.REFRESH_PERIOD_MS),
            refresh_jitter_ms=_env_int("REFRESH_JITTER_MS", c.REFRESH_JITTER_MS),
            refresh_window_ms=_env_int("REFRESH_WINDOW_MS", c.REFRESH_WINDOW_MS),
            refresh_top_k=_env_int("REFRESH_TOP_K", c.REFRESH_TOP_K),
            refresh_min_stored=_env_int("REFRESH_MIN_STORED", c.REFRESH_MIN_STORED),
            refresh_event_limit=_env_int("REFRESH_EVENT_LIMIT", c.REFRESH_EVENT_LIMIT),

            excluded_channel_names=_env_list(
                "EXCLUDED_CHANNEL_NAMES", c.EXCLUDED_CHANNEL_NAMES
            ),

            http_host=os.environ.get("HTTP_HOST", c.HTTP_HOST),
            http_port=_env_int("HTTP_PORT", c.HTTP_PORT),
        )
