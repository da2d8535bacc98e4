"""
Source client plumbing.

- SerializedSourceClient: wraps the external client so at most one call
  is in flight at a time (the underlying client is not re-entrant).
- load_source_factory: resolves "package.module:attribute" from config.
"""

from __future__ import annotations

import asyncio
import importlib
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from errors import StartupError
from ingestion.records import ChannelInfo, ResolvedIdentity, SourceEvent
from orchestrator.events import Event
from orchestrator.runtime_context import SourceClientProtocol


EventSink = Callable[[Event], Awaitable[None]]
SourceFactory = Callable[[EventSink], SourceClientProtocol]

T = TypeVar("T")


class SerializedSourceClient:
    """
    All calls to the wrapped client go through one asyncio.Lock.

    The lock is re-entrant per task: a client that delivers events into the
    sink while inside reinitialize() (and whose handlers call back into the
    client, e.g. identity lookups) runs those nested calls inline.
    """

    def __init__(self, inner: SourceClientProtocol) -> None:
        self._inner = inner
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task[Any] | None = None

    @property
    def inner(self) -> SourceClientProtocol:
        return self._inner

    async def _call(self, fn: Callable[[], Awaitable[T]]) -> T:
        task = asyncio.current_task()
        if task is not None and self._owner is task:
            return await fn()
        async with self._lock:
            self._owner = task
            try:
                return await fn()
            finally:
                self._owner = None

    async def fetch_recent_events(self, channel_id: str, limit: int) -> Sequence[SourceEvent]:
        return await self._call(lambda: self._inner.fetch_recent_events(channel_id, limit))

    async def resolve_identity(self, identity_id: str) -> ResolvedIdentity | None:
        return await self._call(lambda: self._inner.resolve_identity(identity_id))

    async def list_channels(self) -> Sequence[ChannelInfo]:
        return await self._call(self._inner.list_channels)

    async def get_connection_state(self) -> str | None:
        return await self._call(self._inner.get_connection_state)

    async def probe_connection_state(self, timeout_s: float) -> str | None:
        """
        get_connection_state() bounded by timeout_s, counted from the moment
        this call holds the lock. Time spent queued behind a slow fetch is
        not held against the connection.

        Raises:
            asyncio.TimeoutError when the client itself does not answer in time.
        """
        return await self._call(
            lambda: asyncio.wait_for(self._inner.get_connection_state(), timeout=timeout_s)
        )

    async def reinitialize(self) -> None:
        await self._call(self._inner.reinitialize)

    async def destroy(self) -> None:
        await self._call(self._inner.destroy)


def load_source_factory(reference: str | None) -> SourceFactory:
    """
    Import "package.module:attribute" and return the callable.

    Raises:
        StartupError if the reference is missing, malformed, unimportable
        or not callable.
    """
    if not reference:
        raise StartupError("SOURCE_CLIENT_FACTORY is not set")

    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise StartupError(f"SOURCE_CLIENT_FACTORY must look like 'module:attr', got {reference!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise StartupError(f"cannot import {module_name!r}: {e}") from e

    factory: Any = module
    for part in attr.split("."):
        factory = getattr(factory, part, None)
        if factory is None:
            raise StartupError(f"{module_name!r} has no attribute {attr!r}")

    if not callable(factory):
        raise StartupError(f"{reference!r} is not callable")
    return factory
