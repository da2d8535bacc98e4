"""
Identity resolution cache.

TTL cache in front of the source's identity lookup, bounded as an LRU.
Failed lookups are never cached so they are retried on the next call.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable

import constants as c
from errors import CacheResolutionError
from ingestion.records import ResolvedIdentity
from observability.logger import log_error

if TYPE_CHECKING:
    from orchestrator.timers import Clock


Resolver = Callable[[str], Awaitable[ResolvedIdentity | None]]


@dataclass(frozen=True)
class CachedIdentity:
    identity: ResolvedIdentity
    resolved_at_ms: int


class IdentityCache:
    """
    Lookup:
    - hit with age < ttl_ms: returned without calling the resolver
    - miss or stale: resolver called; success cached with the current time
    - resolver failure or None: not cached, returns None

    max_entries <= 0 disables the capacity bound.
    """

    def __init__(
        self,
        resolver: Resolver,
        clock: Clock,
        *,
        ttl_ms: int = c.IDENTITY_CACHE_TTL_MS,
        max_entries: int = c.IDENTITY_CACHE_MAX_ENTRIES,
        self_identity: str = c.SELF_IDENTITY,
    ) -> None:
        self._resolver = resolver
        self._clock = clock
        self._ttl_ms = ttl_ms
        self._max_entries = max_entries
        self._self_identity = self_identity
        self._entries: OrderedDict[str, CachedIdentity] = OrderedDict()

        self.hits = 0
        self.misses = 0
        self.failures = 0
        self.last_error: str | None = None
        self.last_error_at_ms: int | None = None

    def __len__(self) -> int:
        return len(self._entries)

    async def resolve(self, identity_id: str | None) -> ResolvedIdentity | None:
        if not identity_id or identity_id == self._self_identity:
            return None

        now_ms = self._clock.now_ms()
        cached = self._entries.get(identity_id)
        if cached is not None:
            if now_ms - cached.resolved_at_ms < self._ttl_ms:
                self._entries.move_to_end(identity_id)
                self.hits += 1
                return cached.identity
            del self._entries[identity_id]

        self.misses += 1
        try:
            identity = await self._resolver(identity_id)
        except Exception as e:  # pylint: disable=broad-exception-caught
            self.failures += 1
            err = CacheResolutionError(identity_id, f"{type(e).__name__}: {e}")
            self.last_error = str(err)
            self.last_error_at_ms = self._clock.now_ms()
            log_error({
                "ts_ms": now_ms,
                "event_type": "IDENTITY_RESOLUTION_FAILED",
                "level": "warning",
                "identity_id": identity_id,
            }, err)
            return None

        if identity is None:
            return None

        self._entries[identity_id] = CachedIdentity(
            identity=identity,
            resolved_at_ms=self._clock.now_ms(),
        )
        self._entries.move_to_end(identity_id)
        self._evict()
        return identity

    async def display_name(self, identity_id: str | None) -> str | None:
        """Resolved display name, falling back to the raw identity string."""
        if not identity_id:
            return None
        identity = await self.resolve(identity_id)
        if identity is not None and identity.display_name:
            return identity.display_name
        return identity_id

    def _evict(self) -> None:
        if self._max_entries <= 0:
            return
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
