"""Content-addressed cache for tool selection results.

Entries are keyed by a hash of the normalized query and the registry fingerprint
the selection was computed against. A single cache-wide lock guards the entry
table and is only ever held for in-memory work, never across an oracle call, so
two requests for the same uncached key may both miss and both write; the later
write wins.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import BaseModel

from ..models.tool import RankedToolSelection
from .error_handler import CacheUnavailable

logger = logging.getLogger(__name__)

# Queries mentioning these are likely to depend on time or on who is asking
_VOLATILE_TERMS = re.compile(
    r"(@|\b(today|yesterday|tomorrow|now|current|latest|me|my|random)\b)",
    re.IGNORECASE,
)


def make_key(normalized_query: str, fingerprint: str) -> str:
    digest = hashlib.sha256()
    digest.update(normalized_query.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(fingerprint.encode("utf-8"))
    return digest.hexdigest()


def is_volatile_query(query: str) -> bool:
    """True for queries whose best tools probably change between calls."""
    return bool(_VOLATILE_TERMS.search(query))


@dataclass
class CacheEntry:
    selection: RankedToolSelection
    fingerprint: str
    created_at: float
    expires_at: float
    hit_count: int = 0


class CacheStats(BaseModel):
    hits: int
    misses: int
    evictions: int
    size: int
    max_entries: int
    ttl_seconds: float


class SelectionCache:
    """Thread-safe TTL cache of ranked tool selections."""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 1000,
        lock_timeout: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = ttl_seconds
        self.max_entries = max_entries
        self.lock_timeout = lock_timeout
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._current_fingerprint: Optional[str] = None
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise CacheUnavailable(
                "Timed out waiting for the selection cache lock",
                {"lock_timeout": self.lock_timeout},
            )

    @property
    def current_fingerprint(self) -> Optional[str]:
        return self._current_fingerprint

    def get(self, key: str) -> Optional[RankedToolSelection]:
        """Return a copy of the cached selection, or None on miss or expiry."""
        self._acquire()
        try:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                logger.debug(f"Cache miss for key {key[:12]}")
                return None

            stale = (
                self._current_fingerprint is not None
                and entry.fingerprint != self._current_fingerprint
            )
            if stale or entry.expires_at <= self._clock():
                del self._entries[key]
                self._evictions += 1
                self._misses += 1
                logger.debug(f"Dropped {'stale' if stale else 'expired'} entry {key[:12]}")
                return None

            entry.hit_count += 1
            self._hits += 1
            logger.debug(f"Cache hit for key {key[:12]} (hits={entry.hit_count})")
            return entry.selection.model_copy(deep=True)
        finally:
            self._lock.release()

    def put(self, key: str, selection: RankedToolSelection, ttl: Optional[float] = None) -> None:
        """Store a completed selection under ``key``."""
        ttl = self.default_ttl if ttl is None else ttl
        now = self._clock()
        entry = CacheEntry(
            selection=selection.model_copy(deep=True, update={"from_cache": False}),
            fingerprint=selection.registry_fingerprint,
            created_at=now,
            expires_at=now + ttl,
        )

        self._acquire()
        try:
            if key not in self._entries and self._entries and len(self._entries) >= self.max_entries:
                self._remove_oldest()
            self._entries[key] = entry
            logger.debug(f"Stored selection for key {key[:12]} (ttl={ttl}s)")
        finally:
            self._lock.release()

    def invalidate_by_fingerprint(self, fingerprint: str) -> int:
        """Drop every entry computed against a registry other than ``fingerprint``."""
        self._acquire()
        try:
            self._current_fingerprint = fingerprint
            stale_keys = [k for k, e in self._entries.items() if e.fingerprint != fingerprint]
            for key in stale_keys:
                del self._entries[key]
            self._evictions += len(stale_keys)
        finally:
            self._lock.release()

        logger.info(f"Registry fingerprint is now {fingerprint[:12]}; invalidated {len(stale_keys)} entries")
        return len(stale_keys)

    def invalidate_for_tool(self, tool_id: str) -> int:
        """Drop entries whose selection mentions ``tool_id``."""
        self._acquire()
        try:
            keys = [
                k for k, e in self._entries.items()
                if any(m.tool_id == tool_id for m in e.selection.matches)
            ]
            for key in keys:
                del self._entries[key]
            self._evictions += len(keys)
        finally:
            self._lock.release()

        logger.debug(f"Invalidated {len(keys)} cache entries for tool: {tool_id}")
        return len(keys)

    def clear(self) -> None:
        self._acquire()
        try:
            self._evictions += len(self._entries)
            self._entries.clear()
        finally:
            self._lock.release()
        logger.info("Cache invalidated completely")

    def sweep_expired(self) -> int:
        self._acquire()
        try:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
            self._evictions += len(expired)
        finally:
            self._lock.release()

        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    async def run_periodic_sweep(self, interval: float) -> None:
        """Sweep expired entries every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep_expired()
            except CacheUnavailable as e:
                logger.warning(f"Skipping cache sweep: {e}")

    def stats(self) -> CacheStats:
        self._acquire()
        try:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                size=len(self._entries),
                max_entries=self.max_entries,
                ttl_seconds=self.default_ttl,
            )
        finally:
            self._lock.release()

    def _remove_oldest(self) -> None:
        # Caller holds the lock
        oldest_key = min(self._entries, key=lambda k: self._entries[k].expires_at)
        del self._entries[oldest_key]
        self._evictions += 1
        logger.debug("Removed oldest cache entry to make room")
