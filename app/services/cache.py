"""
Process-local expiring key/value store.

Entries live in a ``cachetools.TLRUCache`` whose time-to-use is each entry's
own absolute expiry, so every ``set`` may pick its TTL. An entry is gone from
the moment its expiry is reached: reads report a miss and evict it, and the
periodic sweep purges entries nobody reads again. Until then they still count
towards ``len`` and show up as ``expired`` in the stats.

The store is per-process and non-authoritative: everything in it can be
re-derived from MongoDB, so instances never coordinate invalidation.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Pattern, Tuple, Union

from cachetools import TLRUCache

from app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    created_at: float
    expires_at: float


def _entry_expiry(key: str, entry: CacheEntry, now: float) -> float:
    return entry.expires_at


class TTLCache:
    """Expiring cache with regex invalidation and a background sweep."""

    def __init__(
        self,
        default_ttl: Optional[float] = None,
        cleanup_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        max_entries: Optional[int] = None,
    ):
        self.default_ttl = default_ttl if default_ttl is not None else settings.CACHE_DEFAULT_TTL_SECONDS
        self.cleanup_interval = (
            cleanup_interval if cleanup_interval is not None else settings.CACHE_CLEANUP_INTERVAL_SECONDS
        )
        self._clock = clock
        self._entries = TLRUCache(
            maxsize=max_entries if max_entries is not None else settings.CACHE_MAX_ENTRIES,
            ttu=_entry_expiry,
            timer=clock,
        )
        self._cleanup_task: Optional[asyncio.Task] = None

    @staticmethod
    def generate_key(prefix: str, *params: Any) -> str:
        return ":".join([prefix, *(str(p) for p in params)])

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        self._entries[key] = CacheEntry(
            value=value,
            created_at=now,
            expires_at=now + (self.default_ttl if ttl is None else ttl),
        )

    def lookup(self, key: str) -> Tuple[bool, Any]:
        """Return ``(hit, value)`` so stored falsy values still count as hits."""
        try:
            entry = self._entries[key]
        except KeyError:
            self._discard(key)
            return False, None
        return True, entry.value

    def get(self, key: str, default: Any = None) -> Any:
        hit, value = self.lookup(key)
        return value if hit else default

    def delete(self, key: str) -> bool:
        present = key in self._entries
        self._discard(key)
        return present

    def _discard(self, key: str) -> None:
        # TLRUCache refuses expired keys on read but still holds them
        try:
            del self._entries[key]
        except KeyError:
            pass

    def clear_pattern(self, pattern: Union[str, Pattern]) -> int:
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        matched = [key for key in list(self._entries) if regex.search(key)]
        for key in matched:
            self._discard(key)
        return len(matched)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _active_keys(self):
        return [key for key in list(self._entries) if key in self._entries]

    def get_stats(self) -> Dict[str, int]:
        total = len(self._entries)
        active = len(self._active_keys())
        return {
            "total": total,
            "active": active,
            "expired": total - active,
            "memory_usage": self.get_memory_usage(),
        }

    def get_memory_usage(self) -> int:
        """Rough byte estimate over live entries: serialized key + value plus a fixed overhead."""
        size = 0
        for key in self._active_keys():
            size += len(json.dumps(key))
            size += len(json.dumps(self._entries[key].value, default=str))
            size += 24
        return size

    def cleanup(self) -> int:
        expired = self._entries.expire()
        if expired:
            logger.info(f"Cache cleanup: removed {len(expired)} expired entries")
        return len(expired)

    def start_cleanup(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop_cleanup(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"Cache cleanup tick failed: {e}")
