"""
Structured logging for the capture service.

Every log entry is a dict written as a single compact JSON line on stdout
and flushed right away. Entries may carry a "level" key
(debug, info, warning, error; default info) that is compared against the
threshold set by configure().
"""

from __future__ import annotations

import json
import sys
from typing import Any, Mapping, Callable


_LEVELS: dict[str, int] = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "error": 40,
}


# ------------------------------------------------------------------
# Explicit output sink (patchable in tests)
# ------------------------------------------------------------------

def _stdout_print(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()

_print: Callable[[str], None] = _stdout_print

_min_level: int = _LEVELS["info"]


def configure(level: str) -> None:
    """Set the minimum level emitted. Unknown names fall back to info."""
    global _min_level  # pylint: disable=global-statement
    _min_level = _LEVELS.get(level.lower(), _LEVELS["info"])


def log_event(event: Mapping[str, Any]) -> None:
    """
    Emit one entry. Callers pass ts_ms, event_type and whatever ids
    (event_id, channel_id, session_id) make the line traceable.

    Entries below the threshold are dropped. Values json cannot encode
    produce a LOGGER_SERIALIZATION_ERROR line instead; this never raises.
    """
    level = str(event.get("level", "info"))
    if _LEVELS.get(level, _LEVELS["info"]) < _min_level:
        return

    try:
        line = json.dumps(event, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        # Logging must never crash the runtime
        fallback: dict[str, Any] = {
            "ts_ms": event.get("ts_ms"),
            "event_type": "LOGGER_SERIALIZATION_ERROR",
            "level": "error",
            "error": str(e),
            "original_event_repr": repr(event),
        }
        line = json.dumps(fallback, ensure_ascii=False, separators=(",", ":"))

    _print(line)


def log_error(event: Mapping[str, Any], exc: BaseException) -> None:
    """log_event at error level with the exception type and message attached."""
    log_event({
        "level": "error",
        **event,
        "exception": type(exc).__name__,
        "message": str(exc),
    })
