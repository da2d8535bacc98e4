"""
Duration metrics for catch-up runs and other long operations.

Each measurement becomes one METRIC_TIMER line through
observability.logger; nothing is aggregated in-process.

- Durations come from time.monotonic_ns() (wall-clock jumps do not skew them)
- ts_ms on the emitted line is wall-clock, for correlation with other logs
- timed() is the normal entry point; start_timer()/stop_timer() exist for
  code that cannot wrap the measured region in a with-block
"""

from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from observability.logger import log_event


# timer_id -> (metric_name, started_ns)
_open_timers: dict[str, tuple[str, int]] = {}


def start_timer(name: str) -> str:
    """
    Begin measuring `name`. Returns the id to hand to stop_timer().

    Pair every call with stop_timer() in a finally block.
    """
    timer_id = f"timer_{uuid.uuid4().hex[:12]}"
    _open_timers[timer_id] = (name, time.monotonic_ns())
    return timer_id


def stop_timer(
    timer_id: str,
    *,
    phase: str | None = None,
    outcome: str | None = None,
    details: dict[str, Any] | None = None,
) -> int | None:
    """
    Finish a measurement and log it.

    Unknown or already-stopped ids are ignored (returns None); otherwise
    returns the elapsed milliseconds.
    """
    entry = _open_timers.pop(timer_id, None)
    if entry is None:
        return None

    name, started_ns = entry
    elapsed_ms = (time.monotonic_ns() - started_ns) // 1_000_000

    log_event({
        "ts_ms": int(time.time() * 1000),
        "event_type": "METRIC_TIMER",
        "metric": name,
        "value_ms": elapsed_ms,
        "phase": phase,
        "outcome": outcome,
        "details": details or {},
    })
    return elapsed_ms


@contextmanager
def timed(
    name: str,
    *,
    phase: str | None = None,
    details: dict[str, Any] | None = None,
) -> Iterator[dict[str, Any]]:
    """
    Measure the enclosed block; always emits exactly one metric.

    outcome is "ok" when the block completes and "failed" when it raises
    (the exception still propagates). The yielded dict is merged into
    the metric details:

        with timed("catchup_run", phase="prefill") as extra:
            extra["channels"] = len(channels)
    """
    timer_id = start_timer(name)
    extra: dict[str, Any] = dict(details or {})
    outcome = "failed"
    try:
        yield extra
        outcome = "ok"
    finally:
        stop_timer(timer_id, phase=phase, outcome=outcome, details=extra)
