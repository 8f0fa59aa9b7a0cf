"""In-memory result cache with TTL expiry and explicit sweeping.

Scan jobs read the same stored bars several times a day (detector pass,
then table build), so reads go through this cache. Expired entries are
dropped lazily on access and in bulk by ``sweep_expired``, which every scan
run calls so long or aborted runs do not leave stale entries behind.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Final

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants: TTL values in seconds
# ---------------------------------------------------------------------------

TTL_STORED_BARS: Final[int] = 30 * 60  # 30 minutes
TTL_DEFAULT: Final[int] = 5 * 60  # 5 minutes
MAX_ENTRIES: Final[int] = 20_000


class CacheEntry(BaseModel):
    """A single cached value with metadata for expiration checking."""

    model_config = ConfigDict(frozen=True)

    key: str
    value: Any
    created_at: datetime.datetime
    ttl_seconds: int

    def is_expired(self, now: datetime.datetime | None = None) -> bool:
        """Return True once the entry is older than its TTL. TTL 0 never expires."""
        if self.ttl_seconds == 0:
            return False
        current = now or datetime.datetime.now(datetime.UTC)
        return (current - self.created_at).total_seconds() > self.ttl_seconds


class ResultCache:
    """Process-local key/value cache.

    Usage::

        cache = ResultCache()
        bars = cache.get(key)
        if bars is None:
            bars = await repository.get_bars(...)
            cache.set(key, bars, TTL_STORED_BARS)
    """

    def __init__(self, *, max_entries: int = MAX_ENTRIES) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._max_entries = max_entries
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> object | None:
        """Return the cached value, or None on a miss or an expired entry."""
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if entry.is_expired():
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def set(self, key: str, value: object, ttl_seconds: int = TTL_DEFAULT) -> None:
        if len(self._entries) >= self._max_entries and key not in self._entries:
            self.sweep_expired()
            if len(self._entries) >= self._max_entries:
                # Still full: evict the oldest insertion
                oldest = next(iter(self._entries))
                del self._entries[oldest]
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            created_at=datetime.datetime.now(datetime.UTC),
            ttl_seconds=ttl_seconds,
        )

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove every key starting with ``prefix``. Returns how many were removed."""
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def sweep_expired(self) -> int:
        """Evict all expired entries. Returns how many were evicted."""
        now = datetime.datetime.now(datetime.UTC)
        expired = [k for k, v in self._entries.items() if v.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Cache sweep evicted %d expired entries", len(expired))
        return len(expired)
