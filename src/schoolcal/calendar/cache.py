"""In-memory TTL cache of aggregated event lists.

Entries expire lazily: a stale entry is evicted when it is read, and every
write prunes whatever has expired together with its write lock.  Reads never
take a lock; writes for the same key are serialized so concurrent
refreshes settle on the last writer.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from schoolcal.calendar.models import CacheStats, CalendarEvent, CalendarType
from schoolcal.core.metrics import CalendarMetrics

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0


def make_cache_key(
    *,
    user_id: str,
    branch_id: str | None,
    source_flags: Mapping[CalendarType, bool],
    start: datetime | None,
    end: datetime | None,
) -> str:
    """Return a SHA-256 key identifying one aggregation request.

    ``None`` bounds stand for the caller's "from now" defaults, so repeated
    default queries share one entry while the clock moves.
    """
    material = json.dumps(
        {
            "user": user_id,
            "branch": branch_id,
            "sources": sorted(kind.value for kind, enabled in source_flags.items() if enabled),
            "start": start.isoformat() if start is not None else "default",
            "end": end.isoformat() if end is not None else "default",
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    events: tuple[CalendarEvent, ...]
    fetched_at: datetime


class EventCache:
    """TTL cache keyed by :func:`make_cache_key`."""

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int | None = None,
        clock: Callable[[], datetime] | None = None,
        metrics: CalendarMetrics | None = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_entries = max_entries
        self._clock = clock or (lambda: datetime.now(UTC))
        self._metrics = metrics or CalendarMetrics()
        self._entries: dict[str, CacheEntry] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._hits = 0
        self._misses = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl.total_seconds()

    def get(self, key: str) -> tuple[CalendarEvent, ...] | None:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            self._metrics.record_cache_lookup("miss")
            return None

        if self._clock() - entry.fetched_at >= self._ttl:
            self._evict(key)
            self._misses += 1
            self._metrics.record_cache_lookup("stale")
            logger.debug("Evicted stale cache entry %s", key[:12])
            return None

        self._hits += 1
        self._metrics.record_cache_lookup("hit")
        return entry.events

    async def set(self, key: str, events: Iterable[CalendarEvent]) -> None:
        lock = self._write_locks.setdefault(key, asyncio.Lock())
        async with lock:
            now = self._clock()
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(events=tuple(events), fetched_at=now)
            self._prune_expired(now)
            if self._max_entries is not None:
                while len(self._entries) > self._max_entries:
                    oldest_key = min(self._entries, key=lambda k: self._entries[k].fetched_at)
                    self._evict(oldest_key)

    def _prune_expired(self, now: datetime) -> None:
        expired = [k for k, entry in self._entries.items() if now - entry.fetched_at >= self._ttl]
        for expired_key in expired:
            self._evict(expired_key)
        if expired:
            logger.debug("Pruned %d expired cache entries", len(expired))

    def _evict(self, key: str) -> None:
        self._entries.pop(key, None)
        # A held lock still guards an in-progress write for this key.
        lock = self._write_locks.get(key)
        if lock is not None and not lock.locked():
            del self._write_locks[key]

    def clear(self) -> None:
        self._entries.clear()
        self._write_locks.clear()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> CacheStats:
        lookups = self._hits + self._misses
        oldest = min((entry.fetched_at for entry in self._entries.values()), default=None)
        return CacheStats(
            entries=len(self._entries),
            hits=self._hits,
            misses=self._misses,
            hit_rate=self._hits / lookups if lookups else 0.0,
            oldest_entry=oldest,
            ttl_seconds=self.ttl_seconds,
        )
