# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio

import pytest

from ingestion.identity_cache import IdentityCache
from ingestion.records import ResolvedIdentity
from observability import logger

from fakes import FakeClock, FakeSourceClient, LogCapture


TTL_MS = 24 * 60 * 60 * 1000


@pytest.fixture(name="capture")
def fixture_capture(monkeypatch: pytest.MonkeyPatch) -> LogCapture:
    capture = LogCapture()
    monkeypatch.setattr(logger, "_print", capture)
    return capture


def make(max_entries: int = 100) -> tuple[IdentityCache, FakeSourceClient, FakeClock]:
    source = FakeSourceClient(identities={
        "alice": ResolvedIdentity("alice", display_name="Alice"),
        "bob": ResolvedIdentity("bob", display_name="Bob"),
        "carol": ResolvedIdentity("carol", display_name="Carol"),
    })
    clock = FakeClock()
    cache = IdentityCache(
        source.resolve_identity, clock, ttl_ms=TTL_MS, max_entries=max_entries
    )
    return cache, source, clock


def test_cache_hit_within_ttl_skips_resolver() -> None:
    cache, source, clock = make()
    t0 = clock.now_ms()

    async def scenario() -> None:
        first = await cache.resolve("alice")
        clock.set(t0 + TTL_MS - 1)
        second = await cache.resolve("alice")
        assert first == second

    asyncio.run(scenario())

    assert source.resolve_calls == ["alice"]
    assert cache.hits == 1
    assert cache.misses == 1


def test_cache_entry_expires_after_ttl() -> None:
    cache, source, clock = make()
    t0 = clock.now_ms()

    async def scenario() -> None:
        await cache.resolve("alice")
        clock.set(t0 + TTL_MS + 1)
        await cache.resolve("alice")

    asyncio.run(scenario())

    assert source.resolve_calls == ["alice", "alice"]


def test_failed_lookup_is_not_cached(capture: LogCapture) -> None:
    cache, source, _ = make()
    source.resolve_errors.append(TimeoutError("slow source"))

    async def scenario() -> None:
        assert await cache.resolve("alice") is None
        resolved = await cache.resolve("alice")
        assert resolved is not None and resolved.display_name == "Alice"

    asyncio.run(scenario())

    assert source.resolve_calls == ["alice", "alice"]
    assert cache.failures == 1
    failures = capture.events("IDENTITY_RESOLUTION_FAILED")
    assert failures[0]["identity_id"] == "alice"
    assert failures[0]["exception"] == "CacheResolutionError"
    assert cache.last_error is not None and "alice" in cache.last_error


def test_unknown_identity_not_cached() -> None:
    cache, source, _ = make()

    async def scenario() -> None:
        assert await cache.resolve("nobody") is None
        assert await cache.resolve("nobody") is None

    asyncio.run(scenario())

    assert source.resolve_calls == ["nobody", "nobody"]
    assert len(cache) == 0


def test_self_and_empty_ids_never_resolved() -> None:
    cache, source, _ = make()

    async def scenario() -> None:
        assert await cache.resolve("me") is None
        assert await cache.resolve("") is None
        assert await cache.resolve(None) is None

    asyncio.run(scenario())

    assert not source.resolve_calls


def test_display_name_falls_back_to_raw_id() -> None:
    cache, _, _ = make()

    async def scenario() -> tuple:
        return (
            await cache.display_name("bob"),
            await cache.display_name("stranger"),
            await cache.display_name(None),
        )

    assert asyncio.run(scenario()) == ("Bob", "stranger", None)


def test_capacity_bound_evicts_least_recently_used() -> None:
    cache, source, _ = make(max_entries=2)

    async def scenario() -> None:
        await cache.resolve("alice")
        await cache.resolve("bob")
        await cache.resolve("alice")   # alice becomes most recent
        await cache.resolve("carol")   # evicts bob
        await cache.resolve("alice")
        await cache.resolve("bob")

    asyncio.run(scenario())

    assert len(cache) == 2
    assert source.resolve_calls == ["alice", "bob", "carol", "bob"]
