# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio

import pytest

from ingestion.watermark import ContinuityWatermark
from observability import logger

from fakes import FakeClock, LogCapture, MemoryStorage


THRESHOLD_MS = 10 * 60_000


@pytest.fixture(name="capture")
def fixture_capture(monkeypatch: pytest.MonkeyPatch) -> LogCapture:
    capture = LogCapture()
    monkeypatch.setattr(logger, "_print", capture)
    return capture


def make(storage: MemoryStorage | None = None) -> tuple[ContinuityWatermark, MemoryStorage, FakeClock]:
    storage = storage or MemoryStorage()
    clock = FakeClock()
    return ContinuityWatermark(storage, clock, stall_threshold_ms=THRESHOLD_MS), storage, clock


def test_load_defaults_to_zero_without_prior_value(capture: LogCapture) -> None:
    watermark, _, _ = make()

    assert asyncio.run(watermark.load()) == 0
    assert capture.events("WATERMARK_LOADED")[0]["watermark_ms"] == 0


def test_load_restores_persisted_value(capture: LogCapture) -> None:
    del capture
    storage = MemoryStorage()
    storage.watermark = 1_234
    watermark, _, _ = make(storage)

    assert asyncio.run(watermark.load()) == 1_234
    assert watermark.value == 1_234


def test_load_failure_falls_back_to_zero(capture: LogCapture) -> None:
    storage = MemoryStorage()
    storage.fail_ops.add("get_watermark")
    watermark, _, _ = make(storage)

    assert asyncio.run(watermark.load()) == 0
    assert capture.events("WATERMARK_LOAD_FAILED")
    assert watermark.last_error is not None


def test_watermark_never_decreases(capture: LogCapture) -> None:
    del capture
    watermark, storage, _ = make()

    async def scenario() -> None:
        await watermark.advance(2_000)
        await watermark.advance(1_000)
        await watermark.advance(2_000)

    asyncio.run(scenario())

    assert watermark.value == 2_000
    assert storage.watermark == 2_000


def test_flush_failure_keeps_in_memory_progress(capture: LogCapture) -> None:
    watermark, storage, _ = make()
    storage.fail_ops.add("set_watermark")

    async def scenario() -> None:
        await watermark.advance(5_000)
        storage.fail_ops.clear()
        await watermark.advance(6_000)

    asyncio.run(scenario())

    assert watermark.value == 6_000
    assert storage.watermark == 6_000
    failures = capture.events("WATERMARK_FLUSH_FAILED")
    assert len(failures) == 1
    assert failures[0]["watermark_ms"] == 5_000


def test_stall_detected_only_past_threshold(capture: LogCapture) -> None:
    watermark, _, clock = make()
    asyncio.run(watermark.advance(clock.now_ms()))

    assert watermark.check_stall(clock.now_ms() + THRESHOLD_MS) is False
    assert watermark.check_stall(clock.now_ms() + THRESHOLD_MS + 1) is True

    stalls = capture.events("CONTINUITY_STALL")
    assert len(stalls) == 1
    assert stalls[0]["level"] == "warning"
    assert stalls[0]["gap_ms"] == THRESHOLD_MS + 1


def test_zero_watermark_never_stalls(capture: LogCapture) -> None:
    watermark, _, clock = make()

    assert watermark.check_stall(clock.now_ms()) is False
    assert not capture.events("CONTINUITY_STALL")
