# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import json
import random
from pathlib import Path

import pytest

from config import AppConfig
from errors import StartupError, TransientSourceError
from observability import logger
from orchestrator.enums.state import LifecycleState
from orchestrator.events import (
    Disconnected,
    EventType,
    LiveEventReceived,
    Ready,
    SessionStartNotified,
    SessionStateChanged,
)
from service.capture_service import CaptureService

from fakes import (
    FakeClock,
    FakeCredentials,
    FakeSourceClient,
    LogCapture,
    MemoryStorage,
    channel,
    settle,
    source_event,
)


@pytest.fixture(name="capture")
def fixture_capture(monkeypatch: pytest.MonkeyPatch) -> LogCapture:
    capture = LogCapture()
    monkeypatch.setattr(logger, "_print", capture)
    return capture


class Harness:
    def __init__(self, tmp_path: Path) -> None:
        self.clock = FakeClock()
        self.storage = MemoryStorage()
        self.credentials = FakeCredentials()
        self.source = FakeSourceClient(
            channels=[channel("c1")],
            events={"c1": [source_event("hist-1", ts_ms=self.clock.now_ms() - 60_000)]},
        )
        self.source.emit_on_reinit.append(
            lambda: Ready(event_type=EventType.READY, ts_ms=self.clock.now_ms())
        )
        self.config = AppConfig(status_path=tmp_path / "status.json")
        self.service = CaptureService(
            config=self.config,
            source_factory=self.source.factory,
            storage=self.storage,
            credentials=self.credentials,
            clock=self.clock,
            rng=random.Random(1),
        )

    def live(self, event_id: str, ts_ms: int | None = None) -> LiveEventReceived:
        ts = self.clock.now_ms() if ts_ms is None else ts_ms
        return LiveEventReceived(
            event_type=EventType.LIVE_EVENT_RECEIVED,
            ts_ms=ts,
            event=source_event(event_id, ts_ms=ts),
        )


def test_start_connects_and_live_events_make_service_healthy(
    tmp_path: Path, capture: LogCapture
) -> None:
    h = Harness(tmp_path)

    async def scenario() -> None:
        await h.service.start()
        await h.clock.advance(0)
        assert h.service.is_connected()
        assert h.service.status.is_healthy() is False

        await h.source.emit(h.live("e1"))
        assert h.service.status.is_healthy() is True

        await h.clock.advance(10 * 60_000)
        assert h.service.status.is_healthy() is False
        await h.service.shutdown("test")

    asyncio.run(scenario())

    assert h.storage.opened and h.storage.closed
    assert "e1" in h.storage.events
    # Prefill captured history after the settle delay
    assert "hist-1" in h.storage.events
    assert capture.events("SERVICE_STARTED")[0]["watermark_ms"] == 0
    assert len(capture.events("SERVICE_STOPPED")) == 1


def test_live_events_persisted_while_reconnecting(tmp_path: Path, capture: LogCapture) -> None:
    del capture
    h = Harness(tmp_path)

    async def scenario() -> None:
        await h.service.start()
        await h.clock.advance(0)
        await h.source.emit(
            Disconnected(event_type=EventType.DISCONNECTED, ts_ms=h.clock.now_ms(), reason="net")
        )
        assert h.service.runtime.state.state is LifecycleState.RECONNECTING

        await h.source.emit(h.live("during-outage"))
        await h.service.shutdown()

    asyncio.run(scenario())

    assert "during-outage" in h.storage.events
    assert h.service.watermark.value > 0


def test_session_notifications_routed_to_correlator(tmp_path: Path, capture: LogCapture) -> None:
    del capture
    h = Harness(tmp_path)
    now = h.clock.now_ms()

    async def scenario() -> None:
        await h.service.start()
        await h.source.emit(SessionStartNotified(
            event_type=EventType.SESSION_START_NOTIFIED, ts_ms=now,
            session_id="s1", channel_id="c1", initiator_id="u1", counterpart_id="me",
            is_video=True,
        ))
        assert h.service.correlator.active_count == 1
        assert h.service.status.snapshot().active_sessions == 1

        await h.source.emit(SessionStateChanged(
            event_type=EventType.SESSION_STATE_CHANGED, ts_ms=now + 30_000,
            session_id="s1", status="ended",
        ))
        await h.service.shutdown()

    asyncio.run(scenario())

    assert h.service.correlator.active_count == 0
    assert h.storage.sessions["s1"].duration_ms == 30_000
    assert h.storage.sessions["s1"].is_video is True


def test_handler_failure_never_reaches_source(
    tmp_path: Path, capture: LogCapture, monkeypatch: pytest.MonkeyPatch
) -> None:
    h = Harness(tmp_path)

    async def explode(event):
        raise RuntimeError(f"cannot ingest {event.event_id}")

    monkeypatch.setattr(h.service.pipeline, "ingest", explode)

    asyncio.run(h.source.emit(h.live("e1")))

    failure = capture.events("SOURCE_EVENT_HANDLER_FAILED")[0]
    assert failure["source_event_type"] == "LIVE_EVENT_RECEIVED"
    assert "e1" in failure["message"]


def test_status_file_follows_transitions(tmp_path: Path, capture: LogCapture) -> None:
    del capture
    h = Harness(tmp_path)

    async def scenario() -> None:
        await h.service.start()
        status = json.loads((tmp_path / "status.json").read_text(encoding="utf-8"))
        assert status["state"] == "starting"

        await h.clock.advance(0)
        status = json.loads((tmp_path / "status.json").read_text(encoding="utf-8"))
        assert status["state"] == "connected"
        await h.service.shutdown()

    asyncio.run(scenario())

    status = json.loads((tmp_path / "status.json").read_text(encoding="utf-8"))
    assert status["state"] == "shutting_down"
    assert not (tmp_path / "status.json.tmp").exists()


def test_snapshot_surfaces_latest_error(tmp_path: Path, capture: LogCapture) -> None:
    del capture
    h = Harness(tmp_path)
    h.storage.fail_ops.add("insert_event")

    async def scenario() -> None:
        await h.service.start()
        await h.clock.advance(0)
        await h.source.emit(h.live("e1"))

    asyncio.run(scenario())

    snapshot = h.service.status.snapshot()
    assert snapshot.last_error is not None and "insert_event" in snapshot.last_error
    assert snapshot.counters["storage_failures"] == 1
    assert snapshot.catchup["prefill"]["runs"] == 0


def test_storage_open_failure_is_startup_error(tmp_path: Path, capture: LogCapture) -> None:
    del capture
    h = Harness(tmp_path)
    h.storage.fail_ops.add("open")

    with pytest.raises(StartupError):
        asyncio.run(h.service.start())


def test_factory_failure_is_startup_error(tmp_path: Path) -> None:
    def factory(sink):
        raise OSError("no browser")

    with pytest.raises(StartupError, match="no browser"):
        CaptureService(
            config=AppConfig(status_path=tmp_path / "status.json"),
            source_factory=factory,
            storage=MemoryStorage(),
            credentials=FakeCredentials(),
            clock=FakeClock(),
        )


def test_shutdown_is_idempotent(tmp_path: Path, capture: LogCapture) -> None:
    h = Harness(tmp_path)

    async def scenario() -> None:
        await h.service.start()
        await h.clock.advance(0)
        await h.service.shutdown("first")
        await h.service.shutdown("second")

    asyncio.run(scenario())

    assert h.source.destroy_count == 1
    assert len(capture.events("SERVICE_STOPPED")) == 1
    assert h.service.timers.closed


def test_status_file_refreshed_on_every_heartbeat(tmp_path: Path, capture: LogCapture) -> None:
    del capture
    h = Harness(tmp_path)
    path = tmp_path / "status.json"
    seen: list[tuple[bool, int | None]] = []

    def read() -> None:
        status = json.loads(path.read_text(encoding="utf-8"))
        seen.append((status["healthy"], status["last_event_at_ms"]))

    async def scenario() -> None:
        await h.service.start()
        await h.clock.advance(0)
        await h.source.emit(h.live("e1"))
        read()

        await h.clock.advance(h.config.heartbeat_ms)
        read()

        await h.clock.advance(h.config.health_event_threshold_ms)
        read()
        await h.service.shutdown()

    asyncio.run(scenario())

    assert seen[0] == (False, None)
    assert seen[1][0] is True and seen[1][1] is not None
    assert seen[2][0] is False
    assert h.service.runtime.state.state is LifecycleState.SHUTTING_DOWN


class BlockingStorage(MemoryStorage):
    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()
        self.closed_while_writing = False
        self.writing = False

    async def insert_event(self, record):
        self.writing = True
        await self.release.wait()
        self.writing = False
        return await super().insert_event(record)

    async def close(self) -> None:
        self.closed_while_writing = self.writing
        await super().close()


def test_shutdown_waits_for_in_flight_ingest(tmp_path: Path, capture: LogCapture) -> None:
    h = Harness(tmp_path)
    storage = BlockingStorage()
    h.service = CaptureService(
        config=h.config,
        source_factory=h.source.factory,
        storage=storage,
        credentials=h.credentials,
        clock=h.clock,
        rng=random.Random(1),
    )

    async def scenario() -> None:
        await h.service.start()
        ingest = asyncio.create_task(h.source.emit(h.live("e1")))
        await settle()
        assert storage.writing

        stopping = asyncio.create_task(h.service.shutdown())
        await settle()
        assert not storage.closed

        storage.release.set()
        await ingest
        await stopping

    asyncio.run(scenario())

    assert storage.closed
    assert not storage.closed_while_writing
    assert "e1" in storage.events
    assert capture.events("SHUTDOWN_DRAINING")[0]["in_flight"] == 1


def test_latest_error_is_the_most_recent_one(tmp_path: Path, capture: LogCapture) -> None:
    del capture
    h = Harness(tmp_path)
    h.storage.fail_ops.add("insert_event")
    errors: list[str | None] = []

    async def scenario() -> None:
        await h.service.start()
        await h.clock.advance(0)
        await h.source.emit(h.live("e1"))
        errors.append(h.service.status.latest_error())

        h.source.list_channels_errors.append(TransientSourceError("channel list down"))
        await h.clock.advance(h.config.prefill_delay_ms)
        errors.append(h.service.status.latest_error())

        await h.clock.advance(1_000)
        await h.source.emit(h.live("e2"))
        errors.append(h.service.status.latest_error())
        await h.service.shutdown()

    asyncio.run(scenario())

    assert errors[0] is not None and "insert_event" in errors[0]
    assert errors[1] is not None and "channel list down" in errors[1]
    assert errors[2] is not None and "e2" in errors[2]
