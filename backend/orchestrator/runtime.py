"""
Runtime execution shell for the source connection lifecycle.

Responsibilities:
- Own the authoritative ConnectionContext
- Call the pure reducer
- Execute commands with side effects (client reinit, purge, catch-up, timers)
- Run the heartbeat probe loop
- Convert timer expiry into events

Non-responsibilities:
- Persisting events (ingestion pipeline)
- Correlating sessions (session correlator)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

import constants as c
from errors import AuthExpiredError
from orchestrator.reducer import reduce
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
    AuthExpired,
    Event,
    EventType,
    HeartbeatProbe,
    InitFailed,
    ReconnectDue,
    ShutdownRequested,
)
from orchestrator.state_dataclass import ConnectionContext, LifecyclePolicy
from orchestrator.timers import Clock, TimerRegistry

from observability.logger import log_error, log_event

if TYPE_CHECKING:
    from orchestrator.runtime_context import RuntimeExecutionContext


TIMER_HEARTBEAT = "lifecycle:heartbeat"
TIMER_INITIAL_CONNECT = "lifecycle:connect"

TransitionCallback = Callable[[ConnectionContext, ConnectionContext], None]


@dataclass(frozen=True)
class PendingChallenge:
    """Latest outstanding authentication challenge."""
    payload: Any
    issued_at_ms: int
    expires_at_ms: int


class Runtime:
    """
    Runtime execution boundary for the single source connection.

    Architectural role:
    Runtime is the bridge between the pure lifecycle layer
    (reducer + immutable context) and the imperative world
    (source client, credential store, timers, logging).

    Guarantees:
    - Reducer is always called exactly once per incoming event
    - The context swap happens before any side effect executes
    - Commands execute in reducer-emitted order
    - Timers emit events back into handle_event (single entry point)
    """

    def __init__(
        self,
        *,
        context: RuntimeExecutionContext,
        timers: TimerRegistry,
        clock: Clock,
        policy: LifecyclePolicy | None = None,
        initial_state: ConnectionContext | None = None,
        heartbeat_ms: int = c.HEARTBEAT_MS,
        probe_timeout_ms: int = c.PROBE_TIMEOUT_MS,
        on_transition: TransitionCallback | None = None,
        on_heartbeat: Callable[[], None] | None = None,
    ) -> None:
        self._ctx = context
        self._timers = timers
        self._clock = clock
        self._policy = policy or LifecyclePolicy()
        self._state = initial_state or ConnectionContext()
        self._heartbeat_ms = heartbeat_ms
        self._probe_timeout_ms = probe_timeout_ms
        self._on_transition = on_transition
        self._on_heartbeat = on_heartbeat
        self._challenge: PendingChallenge | None = None

    @property
    def state(self) -> ConnectionContext:
        """
        Return the current immutable lifecycle context.

        Consumers must never modify this state directly.
        """
        return self._state

    @property
    def pending_challenge(self) -> PendingChallenge | None:
        """Outstanding challenge, or None if absent or expired."""
        challenge = self._challenge
        if challenge is None:
            return None
        if self._clock.now_ms() >= challenge.expires_at_ms:
            return None
        return challenge

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Kick off the first connect attempt and the heartbeat loop.

        Both run in the background; start() returns immediately.
        """
        self._timers.schedule(
            TIMER_INITIAL_CONNECT,
            0,
            lambda: self._execute_command(
                Reinitialize(reason="initial_connect", destroy_first=False)
            ),
        )
        self._schedule_heartbeat()

    async def shutdown(self, reason: str | None = None) -> None:
        self._timers.cancel(TIMER_HEARTBEAT)
        self._timers.cancel(TIMER_INITIAL_CONNECT)
        await self.handle_event(
            ShutdownRequested(
                event_type=EventType.SHUTDOWN_REQUESTED,
                ts_ms=self._clock.now_ms(),
                reason=reason,
            )
        )

    async def handle_event(self, event: Event) -> None:
        """
        Process a single control-plane event.

        Processing steps:
        1. Pass the current context and event to the pure reducer
        2. Swap in the new context
        3. Notify the transition observer (status snapshot / file)
        4. Execute all emitted commands sequentially

        No lock is taken: the swap is synchronous, so concurrent callers
        (source callbacks, timers) always reduce against the latest context.
        """
        prev = self._state
        new_state, commands = reduce(prev, event, self._policy)
        self._state = new_state
        self._track_challenge(new_state, event)

        if new_state != prev and self._on_transition is not None:
            try:
                self._on_transition(prev, new_state)
            except Exception as e:  # pylint: disable=broad-exception-caught
                log_error({
                    "ts_ms": self._clock.now_ms(),
                    "event_type": "TRANSITION_OBSERVER_FAILED",
                    "state": new_state.state.value,
                }, e)

        for cmd in commands:
            await self._execute_command(cmd)

    # ------------------------------------------------------------------
    # Command execution (side effects)
    # ------------------------------------------------------------------

    async def _execute_command(self, cmd: Command) -> None:
        """Execute a single command with side effects."""

        if isinstance(cmd, LogEvent):
            log_event({**cmd.event, "component": "lifecycle"})

        elif isinstance(cmd, StartTimer):
            self._start_timer(
                timer_id=cmd.timer_id,
                duration_ms=cmd.duration_ms,
                timeout_event_type=cmd.timeout_event_type,
            )

        elif isinstance(cmd, CancelTimer):
            if self._timers.cancel(cmd.timer_id):
                log_event({
                    "ts_ms": self._clock.now_ms(),
                    "event_type": "TIMER_CANCELLED",
                    "level": "debug",
                    "timer_id": cmd.timer_id,
                })

        elif isinstance(cmd, Reinitialize):
            await self._reinitialize(cmd)

        elif isinstance(cmd, DestroyClient):
            await self._destroy_client()

        elif isinstance(cmd, PurgeCredentials):
            try:
                purged = self._ctx.credentials.purge()
                log_event({
                    "ts_ms": self._clock.now_ms(),
                    "event_type": "CREDENTIALS_PURGED",
                    "level": "warning",
                    "reason": cmd.reason,
                    "purged": purged,
                })
            except Exception as e:  # pylint: disable=broad-exception-caught
                log_error({
                    "ts_ms": self._clock.now_ms(),
                    "event_type": "CREDENTIALS_PURGE_FAILED",
                    "reason": cmd.reason,
                }, e)

        elif isinstance(cmd, StartCatchUp):
            self._ctx.catchup.start()

        else:
            raise TypeError(f"Unhandled command: {cmd!r}")

    async def _destroy_client(self) -> None:
        try:
            await self._ctx.source.destroy()
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_error({
                "ts_ms": self._clock.now_ms(),
                "event_type": "SOURCE_DESTROY_FAILED",
            }, e)

    async def _reinitialize(self, cmd: Reinitialize) -> None:
        """
        Destroy (optionally) and re-create the source client.

        Failures are fed back into the reducer as events; nothing raises.
        """
        if cmd.destroy_first:
            await self._destroy_client()

        log_event({
            "ts_ms": self._clock.now_ms(),
            "event_type": "SOURCE_REINITIALIZE",
            "reason": cmd.reason,
            "restart_count": self._state.restart_count,
        })

        try:
            await self._ctx.source.reinitialize()
        except AuthExpiredError as e:
            log_error({
                "ts_ms": self._clock.now_ms(),
                "event_type": "SOURCE_AUTH_EXPIRED",
                "reason": cmd.reason,
            }, e)
            await self.handle_event(
                AuthExpired(
                    event_type=EventType.AUTH_EXPIRED,
                    ts_ms=self._clock.now_ms(),
                    reason=str(e),
                )
            )
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_error({
                "ts_ms": self._clock.now_ms(),
                "event_type": "SOURCE_REINITIALIZE_FAILED",
                "reason": cmd.reason,
            }, e)
            await self.handle_event(
                InitFailed(
                    event_type=EventType.INIT_FAILED,
                    ts_ms=self._clock.now_ms(),
                    reason=f"{type(e).__name__}: {e}",
                )
            )

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _schedule_heartbeat(self) -> None:
        if self._state.state is LifecycleState.SHUTTING_DOWN:
            return
        self._timers.schedule(TIMER_HEARTBEAT, self._heartbeat_ms, self._heartbeat_tick)

    async def _heartbeat_tick(self) -> None:
        try:
            await self.probe_once()
        finally:
            if self._on_heartbeat is not None:
                self._on_heartbeat()
            self._schedule_heartbeat()

    async def probe_once(self) -> HeartbeatProbe:
        """
        Probe the connection state once and feed the result to the reducer.

        A probe that raises or exceeds probe_timeout_ms counts as failed.
        While connected, the continuity watermark is checked for stalls.
        """
        connection_state: str | None = None
        error: str | None = None
        try:
            connection_state = await self._ctx.probe_connection_state(
                self._probe_timeout_ms / 1000.0
            )
        except asyncio.TimeoutError:
            error = f"probe timed out after {self._probe_timeout_ms}ms"
        except Exception as e:  # pylint: disable=broad-exception-caught
            error = f"{type(e).__name__}: {e}"

        probe = HeartbeatProbe(
            event_type=EventType.HEARTBEAT_PROBE,
            ts_ms=self._clock.now_ms(),
            connection_state=connection_state,
            error=error,
        )
        await self.handle_event(probe)

        if self._state.state is LifecycleState.CONNECTED:
            self._ctx.watermark.check_stall(self._clock.now_ms())

        return probe

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _start_timer(
        self,
        *,
        timer_id: str,
        duration_ms: int,
        timeout_event_type: EventType,
    ) -> None:
        """
        Start or replace a timer that emits a timeout event.

        Timer tasks re-enter handle_event() when they expire,
        maintaining the single event entry point invariant.
        """
        async def _fire() -> None:
            event = self._construct_timeout_event(timeout_event_type)
            await self.handle_event(event)

        self._timers.schedule(timer_id, duration_ms, _fire)

    def _construct_timeout_event(self, timeout_event_type: EventType) -> Event:
        if timeout_event_type is EventType.RECONNECT_DUE:
            return ReconnectDue(
                event_type=EventType.RECONNECT_DUE,
                ts_ms=self._clock.now_ms(),
            )
        raise ValueError(f"No timeout event for {timeout_event_type}")

    # ------------------------------------------------------------------
    # Auth challenge tracking
    # ------------------------------------------------------------------

    def _track_challenge(self, new_state: ConnectionContext, event: Event) -> None:
        if (
            isinstance(event, AuthChallenge)
            and new_state.state is LifecycleState.AWAITING_AUTHENTICATION
        ):
            self._challenge = PendingChallenge(
                payload=event.payload,
                issued_at_ms=event.ts_ms,
                expires_at_ms=event.ts_ms + c.AUTH_CHALLENGE_TTL_MS,
            )
        elif new_state.state in (
            LifecycleState.CONNECTED,
            LifecycleState.SHUTTING_DOWN,
        ):
            self._challenge = None
