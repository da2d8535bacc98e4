"""
Pure lifecycle reducer.

(context, event, policy) -> (new_context, commands)

Rules:
- Pure: no side effects, no IO, no clocks.
- Deterministic: output depends only on inputs.
- Total: every (state, event) pair is handled or explicitly ignored (logged).
"""

# Reducer owns timer semantics; runtime must not cancel timers implicitly.

from __future__ import annotations

from dataclasses import replace
from typing import Any

from orchestrator.commands import (
    CancelTimer,
    Command,
    DestroyClient,
    LogEvent,
    PurgeCredentials,
    Reinitialize,
    StartCatchUp,
    StartTimer,
)
from orchestrator.enums.state import LifecycleState
from orchestrator.events import (
    AuthChallenge,
    Authenticated,
    AuthExpired,
    Disconnected,
    Event,
    EventType,
    HeartbeatProbe,
    InitFailed,
    Ready,
    ReconnectDue,
    ShutdownRequested,
)
from orchestrator.retry import backoff_delay_ms
from orchestrator.state_dataclass import ConnectionContext, LifecyclePolicy


# =============================================================================
# Timer IDs
# =============================================================================

TIMER_RECONNECT = "lifecycle:reconnect"


# =============================================================================
# Small helpers
# =============================================================================

def _log(
    ctx: ConnectionContext,
    event: Event,
    decision: str,
    details: dict[str, Any] | None = None,
    *,
    level: str = "info",
) -> LogEvent:
    return LogEvent(
        event={
            "ts_ms": event.ts_ms,
            "level": level,
            "state": ctx.state.value,
            "event_type": event.event_type.value,
            "decision": decision,
            "retry_count": ctx.retry_count,
            "restart_count": ctx.restart_count,
            "details": details or {},
        }
    )


def _state_changed(
    prev: ConnectionContext,
    new: ConnectionContext,
    event: Event,
    source: str,
) -> LogEvent:
    return _log(
        new,
        event,
        "state_changed",
        {
            "from_state": prev.state.value,
            "to_state": new.state.value,
            "source": source,
            "details": new.details,
        },
    )


def _ignore(
    ctx: ConnectionContext, event: Event, reason: str, *, level: str = "info"
) -> tuple[ConnectionContext, tuple[Command, ...]]:
    return ctx, (_log(ctx, event, "ignore", {"reason": reason}, level=level),)


def _schedule_reconnect(
    ctx: ConnectionContext,
    event: Event,
    policy: LifecyclePolicy,
    reason: str,
    source: str,
) -> tuple[ConnectionContext, tuple[Command, ...]]:
    attempt = ctx.retry_count + 1
    delay_ms = backoff_delay_ms(
        base_ms=policy.base_retry_ms,
        max_ms=policy.max_retry_ms,
        attempt=attempt,
    )
    new_ctx = replace(
        ctx,
        state=LifecycleState.RECONNECTING,
        retry_count=attempt,
        details=f"reconnecting in {delay_ms}ms (attempt {attempt}): {reason}",
        last_error=reason,
        last_error_ts_ms=event.ts_ms,
    )

    commands: list[Command] = []
    if new_ctx.state is not ctx.state:
        commands.append(_state_changed(ctx, new_ctx, event, source))
    commands.append(
        _log(
            new_ctx,
            event,
            "reconnect_scheduled",
            {"attempt": attempt, "delay_ms": delay_ms, "reason": reason},
            level="warning",
        )
    )
    commands.append(
        StartTimer(
            timer_id=TIMER_RECONNECT,
            duration_ms=delay_ms,
            timeout_event_type=EventType.RECONNECT_DUE,
        )
    )
    return new_ctx, tuple(commands)


def _enter_needs_reauthentication(
    ctx: ConnectionContext,
    event: Event,
    reason: str,
    source: str,
) -> tuple[ConnectionContext, tuple[Command, ...]]:
    """
    Forced credential reset: purge, counter back to 0, reinitialise.
    """
    new_ctx = replace(
        ctx,
        state=LifecycleState.NEEDS_REAUTHENTICATION,
        retry_count=0,
        restart_count=ctx.restart_count + 1,
        details=f"re-authentication required: {reason}",
        last_error=reason,
        last_error_ts_ms=event.ts_ms,
    )
    return new_ctx, (
        _state_changed(ctx, new_ctx, event, source),
        _log(
            new_ctx,
            event,
            "credentials_reset",
            {"reason": reason, "retries_before_reset": ctx.retry_count},
            level="warning",
        ),
        CancelTimer(timer_id=TIMER_RECONNECT),
        PurgeCredentials(reason=reason),
        Reinitialize(reason=f"credentials_reset:{reason}"),
    )


def _grace_anchor_ms(ctx: ConnectionContext) -> int | None:
    stamps = [
        ts for ts in (ctx.last_authenticated_ts_ms, ctx.last_ready_ts_ms)
        if ts is not None
    ]
    return max(stamps) if stamps else None


# =============================================================================
# Per-event handlers
# =============================================================================

def _on_shutdown(
    ctx: ConnectionContext, event: ShutdownRequested
) -> tuple[ConnectionContext, tuple[Command, ...]]:
    new_ctx = replace(
        ctx,
        state=LifecycleState.SHUTTING_DOWN,
        details=f"shutting down: {event.reason or 'requested'}",
    )
    return new_ctx, (
        _state_changed(ctx, new_ctx, event, "shutdown_requested"),
        CancelTimer(timer_id=TIMER_RECONNECT),
        DestroyClient(),
    )


def _on_auth_challenge(
    ctx: ConnectionContext, event: AuthChallenge
) -> tuple[ConnectionContext, tuple[Command, ...]]:
    if ctx.state is LifecycleState.AWAITING_AUTHENTICATION:
        new_ctx = replace(ctx, last_challenge_ts_ms=event.ts_ms)
        return new_ctx, (_log(new_ctx, event, "challenge_refreshed"),)

    new_ctx = replace(
        ctx,
        state=LifecycleState.AWAITING_AUTHENTICATION,
        last_challenge_ts_ms=event.ts_ms,
        details="waiting for interactive authentication",
    )
    return new_ctx, (
        _state_changed(ctx, new_ctx, event, "auth_challenge"),
        CancelTimer(timer_id=TIMER_RECONNECT),
    )


def _on_connected(
    ctx: ConnectionContext, event: Authenticated | Ready
) -> tuple[ConnectionContext, tuple[Command, ...]]:
    if isinstance(event, Authenticated):
        stamped = replace(ctx, last_authenticated_ts_ms=event.ts_ms)
    else:
        stamped = replace(ctx, last_ready_ts_ms=event.ts_ms)

    if ctx.state is LifecycleState.CONNECTED:
        return stamped, (
            _log(stamped, event, "already_connected", level="debug"),
        )

    new_ctx = replace(
        stamped,
        state=LifecycleState.CONNECTED,
        retry_count=0,
        ever_connected=True,
        ever_authenticated=True,
        details="connected",
        last_error=None,
        last_error_ts_ms=None,
    )
    return new_ctx, (
        _state_changed(ctx, new_ctx, event, event.event_type.value.lower()),
        _log(new_ctx, event, "retry_counter_reset", {"previous": ctx.retry_count}),
        CancelTimer(timer_id=TIMER_RECONNECT),
        StartCatchUp(),
    )


def _on_disconnected(
    ctx: ConnectionContext, event: Disconnected, policy: LifecyclePolicy
) -> tuple[ConnectionContext, tuple[Command, ...]]:
    if ctx.state is LifecycleState.RECONNECTING:
        return _ignore(ctx, event, "reconnect_already_pending")
    reason = f"disconnected: {event.reason or 'unknown'}"
    return _schedule_reconnect(ctx, event, policy, reason, "disconnected")


def _on_heartbeat(
    ctx: ConnectionContext, event: HeartbeatProbe, policy: LifecyclePolicy
) -> tuple[ConnectionContext, tuple[Command, ...]]:
    if not ctx.ever_connected:
        return _ignore(ctx, event, "before_first_connection", level="debug")

    if ctx.state is not LifecycleState.CONNECTED:
        return _ignore(ctx, event, "not_connected", level="debug")

    if event.healthy:
        return ctx, (_log(ctx, event, "heartbeat_ok", level="debug"),)

    anchor = _grace_anchor_ms(ctx)
    if anchor is not None and event.ts_ms - anchor < policy.auth_grace_ms:
        return _ignore(
            ctx,
            event,
            "within_auth_grace",
        )

    reading = event.error or f"state={event.connection_state}"
    return _schedule_reconnect(
        ctx, event, policy, f"heartbeat failed: {reading}", "heartbeat_failed"
    )


def _on_reconnect_due(
    ctx: ConnectionContext, event: ReconnectDue, policy: LifecyclePolicy
) -> tuple[ConnectionContext, tuple[Command, ...]]:
    if ctx.state is LifecycleState.RECONNECTING:
        if ctx.retry_count > policy.max_retries_before_auth_reset:
            return _enter_needs_reauthentication(
                ctx, event, "retries_exhausted", "retries_exhausted"
            )
        new_ctx = replace(ctx, restart_count=ctx.restart_count + 1)
        return new_ctx, (
            _log(new_ctx, event, "reinitialize", {"attempt": ctx.retry_count}),
            Reinitialize(reason=f"reconnect_attempt:{ctx.retry_count}"),
        )

    if ctx.state is LifecycleState.STARTING and ctx.initial_retry_used:
        new_ctx = replace(ctx, restart_count=ctx.restart_count + 1)
        return new_ctx, (
            _log(new_ctx, event, "reinitialize", {"attempt": "initial_retry"}),
            Reinitialize(reason="initial_retry"),
        )

    return _ignore(ctx, event, "stale_reconnect_timer")


def _on_init_failed(
    ctx: ConnectionContext, event: InitFailed, policy: LifecyclePolicy
) -> tuple[ConnectionContext, tuple[Command, ...]]:
    reason = f"init failed: {event.reason or 'unknown'}"

    if ctx.state is LifecycleState.CONNECTED:
        return _ignore(ctx, event, "stale_init_failure")

    if ctx.state is LifecycleState.STARTING and not ctx.initial_retry_used:
        new_ctx = replace(
            ctx,
            initial_retry_used=True,
            last_error=reason,
            last_error_ts_ms=event.ts_ms,
            details=(
                f"initial connect failed, retrying in "
                f"{policy.initial_retry_delay_ms}ms: {reason}"
            ),
        )
        return new_ctx, (
            _log(
                new_ctx,
                event,
                "initial_retry_scheduled",
                {"delay_ms": policy.initial_retry_delay_ms, "reason": reason},
                level="warning",
            ),
            StartTimer(
                timer_id=TIMER_RECONNECT,
                duration_ms=policy.initial_retry_delay_ms,
                timeout_event_type=EventType.RECONNECT_DUE,
            ),
        )

    return _schedule_reconnect(ctx, event, policy, reason, "init_failed")


# =============================================================================
# Reducer
# =============================================================================

def reduce(
    ctx: ConnectionContext,
    event: Event,
    policy: LifecyclePolicy,
) -> tuple[ConnectionContext, tuple[Command, ...]]:
    """
    Pure reducer for the connection lifecycle state machine.

    Given the current context and a single event, returns:
    - the next context
    - a tuple of commands describing required side effects

    Properties:
    - Deterministic: no IO, clocks, or randomness
    - Total: every (state, event) pair is handled or explicitly ignored
    - Terminal: nothing leaves SHUTTING_DOWN
    """
    if ctx.state is LifecycleState.SHUTTING_DOWN:
        return _ignore(ctx, event, "shutting_down", level="debug")

    if isinstance(event, ShutdownRequested):
        return _on_shutdown(ctx, event)

    if isinstance(event, AuthChallenge):
        return _on_auth_challenge(ctx, event)

    if isinstance(event, (Authenticated, Ready)):
        return _on_connected(ctx, event)

    if isinstance(event, AuthExpired):
        reason = f"auth expired: {event.reason or 'unknown'}"
        if ctx.state is LifecycleState.NEEDS_REAUTHENTICATION:
            # Credentials already purged; back off instead of purging again
            return _schedule_reconnect(ctx, event, policy, reason, "auth_expired")
        return _enter_needs_reauthentication(ctx, event, reason, "auth_expired")

    if isinstance(event, Disconnected):
        return _on_disconnected(ctx, event, policy)

    if isinstance(event, HeartbeatProbe):
        return _on_heartbeat(ctx, event, policy)

    if isinstance(event, ReconnectDue):
        return _on_reconnect_due(ctx, event, policy)

    if isinstance(event, InitFailed):
        return _on_init_failed(ctx, event, policy)

    return _ignore(ctx, event, "not_a_lifecycle_event")
