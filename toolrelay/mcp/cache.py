"""
Time-to-live cache with prefix eviction and hit/miss accounting.

Entries are replaced wholesale on ``set`` and never mutated in place.  An
expired entry is removed lazily by the first ``get``/``has`` that observes it,
or by the background sweeper started with ``start_sweeper``.

Keys for tool-server data are built by ``CacheKeys`` so that every key owned by
one server shares the ``mcp:{server_id}:`` prefix.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEFAULT_TTL = 5 * 60.0
DEFAULT_SWEEP_INTERVAL = 5 * 60.0


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class CacheStats:
    total_entries: int
    expired_entries: int
    hits: int
    misses: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


class CacheKeys:
    """Key builders for per-server cached reads."""

    @staticmethod
    def server_prefix(server_id: str) -> str:
        return f"mcp:{server_id}:"

    @staticmethod
    def tools(server_id: str) -> str:
        return f"mcp:{server_id}:tools"

    @staticmethod
    def resources(server_id: str) -> str:
        return f"mcp:{server_id}:resources"

    @staticmethod
    def resource(server_id: str, uri: str) -> str:
        return f"mcp:{server_id}:resource:{uri}"

    @staticmethod
    def prompts(server_id: str) -> str:
        return f"mcp:{server_id}:prompts"

    @staticmethod
    def prompt(server_id: str, name: str) -> str:
        return f"mcp:{server_id}:prompt:{name}"

    @staticmethod
    def prompt_prefix(server_id: str) -> str:
        return f"mcp:{server_id}:prompt:"


class TTLCache:
    """
    In-memory key/value store with per-entry expiry.

    Parameters
    ----------
    default_ttl:
        Seconds an entry lives when ``set`` is called without ``ttl``.
    sweep_interval:
        Seconds between background ``clear_expired`` passes.
    clock:
        Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._sweeper: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Reads and writes
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any | None:
        """Return the cached value, or ``None`` if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        lifetime = self._default_ttl if ttl is None else ttl
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + lifetime)

    def has(self, key: str) -> bool:
        """Freshness check that does not count as a hit or a miss."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.expired(self._clock()):
            del self._entries[key]
            return False
        return True

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    # ------------------------------------------------------------------
    # Bulk eviction
    # ------------------------------------------------------------------

    def clear_prefix(self, prefix: str) -> int:
        """Remove every key starting with *prefix*; return how many went."""
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug("Cleared %d cache entries under %r", len(doomed), prefix)
        return len(doomed)

    def clear_all(self) -> None:
        """Drop every entry and reset the hit/miss counters."""
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    def clear_expired(self) -> int:
        now = self._clock()
        doomed = [k for k, e in self._entries.items() if e.expired(now)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def stats(self) -> CacheStats:
        now = self._clock()
        expired = sum(1 for e in self._entries.values() if e.expired(now))
        return CacheStats(
            total_entries=len(self._entries),
            expired_entries=expired,
            hits=self._hits,
            misses=self._misses,
        )

    def keys(self, prefix: str | None = None) -> list[str]:
        if prefix is None:
            return list(self._entries)
        return [k for k in self._entries if k.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Background sweeper
    # ------------------------------------------------------------------

    def start_sweeper(self) -> None:
        """Start the periodic expiry sweep on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            removed = self.clear_expired()
            if removed:
                logger.debug("Cache sweep removed %d expired entries", removed)
