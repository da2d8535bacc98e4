# pylint: disable=missing-module-docstring,missing-function-docstring

from dataclasses import replace

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
    EventType,
    HeartbeatProbe,
    InitFailed,
    LiveEventReceived,
    Ready,
    ReconnectDue,
    ShutdownRequested,
)
from orchestrator.reducer import TIMER_RECONNECT, reduce
from orchestrator.state_dataclass import ConnectionContext, LifecyclePolicy

from fakes import source_event


POLICY = LifecyclePolicy(
    base_retry_ms=5_000,
    max_retry_ms=60_000,
    max_retries_before_auth_reset=5,
    auth_grace_ms=60_000,
    initial_retry_delay_ms=1_000,
)


# ---------------------------------------------------------------------
# Event helpers
# ---------------------------------------------------------------------

def challenge(ts_ms: int = 0) -> AuthChallenge:
    return AuthChallenge(event_type=EventType.AUTH_CHALLENGE, ts_ms=ts_ms, payload="qr-data")


def authenticated(ts_ms: int = 0) -> Authenticated:
    return Authenticated(event_type=EventType.AUTHENTICATED, ts_ms=ts_ms)


def ready(ts_ms: int = 0) -> Ready:
    return Ready(event_type=EventType.READY, ts_ms=ts_ms)


def disconnected(ts_ms: int = 0) -> Disconnected:
    return Disconnected(event_type=EventType.DISCONNECTED, ts_ms=ts_ms, reason="network")


def auth_expired(ts_ms: int = 0) -> AuthExpired:
    return AuthExpired(event_type=EventType.AUTH_EXPIRED, ts_ms=ts_ms, reason="logged out")


def init_failed(ts_ms: int = 0) -> InitFailed:
    return InitFailed(event_type=EventType.INIT_FAILED, ts_ms=ts_ms, reason="boom")


def reconnect_due(ts_ms: int = 0) -> ReconnectDue:
    return ReconnectDue(event_type=EventType.RECONNECT_DUE, ts_ms=ts_ms)


def probe(ts_ms: int = 0, state: str | None = "CONNECTED", error: str | None = None) -> HeartbeatProbe:
    return HeartbeatProbe(
        event_type=EventType.HEARTBEAT_PROBE,
        ts_ms=ts_ms,
        connection_state=state,
        error=error,
    )


def shutdown(ts_ms: int = 0) -> ShutdownRequested:
    return ShutdownRequested(event_type=EventType.SHUTDOWN_REQUESTED, ts_ms=ts_ms, reason="sigterm")


def of_type(commands: tuple[Command, ...], kind: type) -> list:
    return [cmd for cmd in commands if isinstance(cmd, kind)]


def decisions(commands: tuple[Command, ...]) -> list[str]:
    return [cmd.event["decision"] for cmd in of_type(commands, LogEvent)]


def connected_ctx(ts_ms: int = 0) -> ConnectionContext:
    ctx, _ = reduce(ConnectionContext(), ready(ts_ms), POLICY)
    return ctx


# ---------------------------------------------------------------------
# Startup / authentication
# ---------------------------------------------------------------------

def test_starting_challenge_moves_to_awaiting_authentication() -> None:
    ctx, commands = reduce(ConnectionContext(), challenge(ts_ms=10), POLICY)

    assert ctx.state is LifecycleState.AWAITING_AUTHENTICATION
    assert ctx.last_challenge_ts_ms == 10
    assert "state_changed" in decisions(commands)
    assert of_type(commands, CancelTimer) == [CancelTimer(timer_id=TIMER_RECONNECT)]


def test_repeated_challenge_only_refreshes_timestamp() -> None:
    ctx, _ = reduce(ConnectionContext(), challenge(ts_ms=10), POLICY)
    ctx, commands = reduce(ctx, challenge(ts_ms=20), POLICY)

    assert ctx.state is LifecycleState.AWAITING_AUTHENTICATION
    assert ctx.last_challenge_ts_ms == 20
    assert decisions(commands) == ["challenge_refreshed"]


def test_authenticated_enters_connected_and_starts_catch_up() -> None:
    ctx, _ = reduce(ConnectionContext(), challenge(), POLICY)
    ctx, commands = reduce(ctx, authenticated(ts_ms=100), POLICY)

    assert ctx.state is LifecycleState.CONNECTED
    assert ctx.retry_count == 0
    assert ctx.ever_connected and ctx.ever_authenticated
    assert ctx.last_authenticated_ts_ms == 100
    assert len(of_type(commands, StartCatchUp)) == 1


def test_session_resumed_without_challenge_goes_straight_to_connected() -> None:
    ctx, commands = reduce(ConnectionContext(), ready(ts_ms=5), POLICY)

    assert ctx.state is LifecycleState.CONNECTED
    assert ctx.last_ready_ts_ms == 5
    assert len(of_type(commands, StartCatchUp)) == 1


def test_ready_after_authenticated_does_not_restart_catch_up() -> None:
    ctx, _ = reduce(ConnectionContext(), authenticated(ts_ms=1), POLICY)
    ctx, commands = reduce(ctx, ready(ts_ms=2), POLICY)

    assert ctx.state is LifecycleState.CONNECTED
    assert ctx.last_ready_ts_ms == 2
    assert not of_type(commands, StartCatchUp)


# ---------------------------------------------------------------------
# Initial connect
# ---------------------------------------------------------------------

def test_first_init_failure_gets_one_quick_retry() -> None:
    ctx, commands = reduce(ConnectionContext(), init_failed(), POLICY)

    assert ctx.state is LifecycleState.STARTING
    assert ctx.initial_retry_used
    assert of_type(commands, StartTimer) == [
        StartTimer(
            timer_id=TIMER_RECONNECT,
            duration_ms=1_000,
            timeout_event_type=EventType.RECONNECT_DUE,
        )
    ]

    ctx, commands = reduce(ctx, reconnect_due(), POLICY)
    assert of_type(commands, Reinitialize) == [Reinitialize(reason="initial_retry")]
    assert ctx.restart_count == 1


def test_second_init_failure_enters_backoff() -> None:
    ctx, _ = reduce(ConnectionContext(), init_failed(), POLICY)
    ctx, commands = reduce(ctx, init_failed(), POLICY)

    assert ctx.state is LifecycleState.RECONNECTING
    assert ctx.retry_count == 1
    assert of_type(commands, StartTimer)[0].duration_ms == 5_000


def test_stale_reconnect_timer_ignored_when_connected() -> None:
    ctx = connected_ctx()
    new_ctx, commands = reduce(ctx, reconnect_due(), POLICY)

    assert new_ctx == ctx
    assert decisions(commands) == ["ignore"]


# ---------------------------------------------------------------------
# Reconnection / backoff
# ---------------------------------------------------------------------

def test_disconnect_schedules_reconnect_with_backoff() -> None:
    ctx, commands = reduce(connected_ctx(), disconnected(ts_ms=50), POLICY)

    assert ctx.state is LifecycleState.RECONNECTING
    assert ctx.retry_count == 1
    assert ctx.last_error is not None and "network" in ctx.last_error
    assert of_type(commands, StartTimer) == [
        StartTimer(
            timer_id=TIMER_RECONNECT,
            duration_ms=5_000,
            timeout_event_type=EventType.RECONNECT_DUE,
        )
    ]
    assert decisions(commands)[:2] == ["state_changed", "reconnect_scheduled"]


def test_disconnect_while_reconnecting_is_ignored() -> None:
    ctx, _ = reduce(connected_ctx(), disconnected(), POLICY)
    new_ctx, commands = reduce(ctx, disconnected(), POLICY)

    assert new_ctx == ctx
    assert not of_type(commands, StartTimer)


def test_reconnect_due_reinitializes_and_counts_restart() -> None:
    ctx, _ = reduce(connected_ctx(), disconnected(), POLICY)
    ctx, commands = reduce(ctx, reconnect_due(), POLICY)

    assert ctx.state is LifecycleState.RECONNECTING
    assert ctx.restart_count == 1
    assert of_type(commands, Reinitialize) == [Reinitialize(reason="reconnect_attempt:1")]


def test_consecutive_failures_follow_backoff_sequence() -> None:
    policy = replace(POLICY, max_retries_before_auth_reset=100)
    ctx, commands = reduce(connected_ctx(), disconnected(), policy)
    delays = [of_type(commands, StartTimer)[0].duration_ms]

    for _ in range(5):
        ctx, _ = reduce(ctx, reconnect_due(), policy)
        ctx, commands = reduce(ctx, init_failed(), policy)
        delays.append(of_type(commands, StartTimer)[0].duration_ms)

    assert delays == [5_000, 10_000, 20_000, 40_000, 60_000, 60_000]
    assert ctx.state is LifecycleState.RECONNECTING


def test_escalation_after_threshold_purges_and_resets_counter() -> None:
    ctx, _ = reduce(connected_ctx(), disconnected(), POLICY)
    for _ in range(POLICY.max_retries_before_auth_reset):
        ctx, _ = reduce(ctx, reconnect_due(), POLICY)
        ctx, _ = reduce(ctx, init_failed(), POLICY)

    assert ctx.retry_count == POLICY.max_retries_before_auth_reset + 1
    assert ctx.state is LifecycleState.RECONNECTING

    restarts_before = ctx.restart_count
    ctx, commands = reduce(ctx, reconnect_due(), POLICY)

    assert ctx.state is LifecycleState.NEEDS_REAUTHENTICATION
    assert ctx.retry_count == 0
    assert ctx.restart_count == restarts_before + 1
    assert len(of_type(commands, PurgeCredentials)) == 1
    assert len(of_type(commands, Reinitialize)) == 1
    assert "credentials_reset" in decisions(commands)


def test_threshold_reached_but_not_exceeded_keeps_retrying() -> None:
    ctx, _ = reduce(connected_ctx(), disconnected(), POLICY)
    for _ in range(POLICY.max_retries_before_auth_reset - 1):
        ctx, _ = reduce(ctx, reconnect_due(), POLICY)
        ctx, _ = reduce(ctx, init_failed(), POLICY)

    assert ctx.retry_count == POLICY.max_retries_before_auth_reset
    ctx, commands = reduce(ctx, reconnect_due(), POLICY)

    assert ctx.state is LifecycleState.RECONNECTING
    assert not of_type(commands, PurgeCredentials)


def test_needs_reauthentication_then_challenge_awaits_authentication() -> None:
    ctx, _ = reduce(connected_ctx(), auth_expired(), POLICY)
    ctx, _ = reduce(ctx, challenge(ts_ms=99), POLICY)

    assert ctx.state is LifecycleState.AWAITING_AUTHENTICATION
    assert ctx.last_challenge_ts_ms == 99


def test_scenario_a_three_disconnects_each_recovered() -> None:
    ctx = connected_ctx()
    for i in range(3):
        ctx, _ = reduce(ctx, disconnected(ts_ms=i * 1_000), POLICY)
        assert ctx.retry_count == 1

        ctx, _ = reduce(ctx, reconnect_due(ts_ms=i * 1_000 + 5_000), POLICY)
        ctx, commands = reduce(ctx, ready(ts_ms=i * 1_000 + 6_000), POLICY)

        assert ctx.state is LifecycleState.CONNECTED
        assert ctx.retry_count == 0
        assert not of_type(commands, PurgeCredentials)

    assert ctx.restart_count == 3


# ---------------------------------------------------------------------
# Auth expiry
# ---------------------------------------------------------------------

def test_auth_expired_purges_credentials_and_reinitializes() -> None:
    ctx, _ = reduce(connected_ctx(), disconnected(), POLICY)
    ctx, commands = reduce(ctx, auth_expired(), POLICY)

    assert ctx.state is LifecycleState.NEEDS_REAUTHENTICATION
    assert ctx.retry_count == 0
    assert of_type(commands, PurgeCredentials)[0].reason.startswith("auth expired")
    assert of_type(commands, CancelTimer) == [CancelTimer(timer_id=TIMER_RECONNECT)]
    assert len(of_type(commands, Reinitialize)) == 1


def test_auth_expired_again_backs_off_instead_of_purging() -> None:
    ctx, _ = reduce(connected_ctx(), auth_expired(), POLICY)
    ctx, commands = reduce(ctx, auth_expired(), POLICY)

    assert ctx.state is LifecycleState.RECONNECTING
    assert ctx.retry_count == 1
    assert not of_type(commands, PurgeCredentials)
    assert len(of_type(commands, StartTimer)) == 1


# ---------------------------------------------------------------------
# Heartbeat
# ---------------------------------------------------------------------

def test_probe_before_first_connection_ignored() -> None:
    ctx, commands = reduce(ConnectionContext(), probe(state="OPENING"), POLICY)

    assert ctx == ConnectionContext()
    assert decisions(commands) == ["ignore"]


def test_healthy_probe_is_a_no_op() -> None:
    ctx = connected_ctx()
    new_ctx, commands = reduce(ctx, probe(ts_ms=200_000), POLICY)

    assert new_ctx == ctx
    assert decisions(commands) == ["heartbeat_ok"]


def test_failed_probe_inside_grace_window_ignored() -> None:
    ctx = connected_ctx(ts_ms=1_000)
    new_ctx, commands = reduce(ctx, probe(ts_ms=1_000 + 59_999, state="OPENING"), POLICY)

    assert new_ctx.state is LifecycleState.CONNECTED
    assert commands[0].event["details"]["reason"] == "within_auth_grace"


def test_failed_probe_after_grace_window_reconnects() -> None:
    ctx = connected_ctx(ts_ms=1_000)
    ctx, commands = reduce(ctx, probe(ts_ms=1_000 + 60_000, state="OPENING"), POLICY)

    assert ctx.state is LifecycleState.RECONNECTING
    assert ctx.retry_count == 1
    assert len(of_type(commands, StartTimer)) == 1


def test_probe_error_treated_like_disconnect() -> None:
    ctx = connected_ctx(ts_ms=0)
    ctx, _ = reduce(ctx, probe(ts_ms=120_000, state=None, error="timeout"), POLICY)

    assert ctx.state is LifecycleState.RECONNECTING
    assert ctx.last_error is not None and "timeout" in ctx.last_error


def test_probe_while_reconnecting_ignored() -> None:
    ctx, _ = reduce(connected_ctx(), disconnected(), POLICY)
    new_ctx, commands = reduce(ctx, probe(ts_ms=500_000, state="OPENING"), POLICY)

    assert new_ctx == ctx
    assert not of_type(commands, StartTimer)


# ---------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------

def test_shutdown_from_any_state_is_terminal() -> None:
    starting_points = [
        ConnectionContext(),
        connected_ctx(),
        reduce(connected_ctx(), disconnected(), POLICY)[0],
        reduce(connected_ctx(), auth_expired(), POLICY)[0],
    ]
    for ctx in starting_points:
        ctx, commands = reduce(ctx, shutdown(), POLICY)
        assert ctx.state is LifecycleState.SHUTTING_DOWN
        assert of_type(commands, DestroyClient) == [DestroyClient()]
        assert of_type(commands, CancelTimer) == [CancelTimer(timer_id=TIMER_RECONNECT)]

        for event in (ready(), disconnected(), reconnect_due(), challenge()):
            after, follow_up = reduce(ctx, event, POLICY)
            assert after == ctx
            assert [type(cmd) for cmd in follow_up] == [LogEvent]


# ---------------------------------------------------------------------
# Totality / purity
# ---------------------------------------------------------------------

def test_data_plane_event_explicitly_ignored() -> None:
    event = LiveEventReceived(
        event_type=EventType.LIVE_EVENT_RECEIVED,
        ts_ms=0,
        event=source_event("e1"),
    )
    ctx, commands = reduce(connected_ctx(), event, POLICY)

    assert ctx.state is LifecycleState.CONNECTED
    assert commands[0].event["details"]["reason"] == "not_a_lifecycle_event"


def test_reducer_is_deterministic() -> None:
    ctx = connected_ctx()
    assert reduce(ctx, disconnected(ts_ms=7), POLICY) == reduce(ctx, disconnected(ts_ms=7), POLICY)


def test_every_transition_logs_state_changed() -> None:
    ctx = ConnectionContext()
    for event in (challenge(), authenticated(), disconnected(), auth_expired(), shutdown()):
        new_ctx, commands = reduce(ctx, event, POLICY)
        if new_ctx.state is not ctx.state:
            changes = [
                cmd.event for cmd in of_type(commands, LogEvent)
                if cmd.event["decision"] == "state_changed"
            ]
            assert changes[0]["details"]["from_state"] == ctx.state.value
            assert changes[0]["details"]["to_state"] == new_ctx.state.value
        ctx = new_ctx
