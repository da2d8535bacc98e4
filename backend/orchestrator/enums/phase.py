"""
Catch-up phase identifiers.
"""

from __future__ import annotations

from enum import Enum


class CatchUpPhase(str, Enum):
    """History catch-up phases run after (re)connection."""

    PREFILL = "prefill"
    BACKFILL = "backfill"
    REFRESH = "refresh"
