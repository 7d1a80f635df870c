from __future__ import annotations

import copy
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping

import structlog

from spendsync.client.store import JsonFileStore

logger = structlog.get_logger(__name__)

QUERY_CACHE_KEY = "query-cache"
DEFAULT_STALE_SECONDS = 5 * 60


@dataclass
class CacheEntry:
    value: Any
    updated_at: float
    stale: bool = False


def cache_key(path: str, params: Mapping[str, Any] | None = None) -> str:
    cleaned = {k: v for k, v in (params or {}).items() if v is not None}
    return json.dumps([path, cleaned], sort_keys=True, default=str)


class QueryCache:
    """Last-known server data, keyed by request path and query params.

    Invalidation only marks entries stale: the value is kept so that a read
    which cannot reach the server still has something to show.
    """

    def __init__(
        self,
        store: JsonFileStore | None = None,
        stale_seconds: float = DEFAULT_STALE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._entries: Dict[str, CacheEntry] = {}
        self._store = store
        self._stale_seconds = stale_seconds
        self._clock = clock

    def get(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        entry = self._entries.get(cache_key(path, params))
        return copy.deepcopy(entry.value) if entry else None

    def has(self, path: str, params: Mapping[str, Any] | None = None) -> bool:
        return cache_key(path, params) in self._entries

    def is_fresh(self, path: str, params: Mapping[str, Any] | None = None) -> bool:
        entry = self._entries.get(cache_key(path, params))
        if entry is None or entry.stale:
            return False
        return self._clock() - entry.updated_at < self._stale_seconds

    def set(self, path: str, value: Any, params: Mapping[str, Any] | None = None) -> None:
        self._entries[cache_key(path, params)] = CacheEntry(value=copy.deepcopy(value), updated_at=self._clock())

    def update(
        self,
        path: str,
        fn: Callable[[Any], Any],
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """Apply `fn` to the cached value in place of a refetch; freshness is unchanged."""
        key = cache_key(path, params)
        entry = self._entries.get(key)
        new_value = fn(copy.deepcopy(entry.value) if entry else None)
        if entry is None:
            self._entries[key] = CacheEntry(value=new_value, updated_at=self._clock(), stale=True)
        else:
            entry.value = new_value
        return copy.deepcopy(new_value)

    def invalidate(self, prefix: str | None = None) -> int:
        count = 0
        for key, entry in self._entries.items():
            if prefix is None or json.loads(key)[0].startswith(prefix):
                entry.stale = True
                count += 1
        return count

    def remove(self, prefix: str | None = None) -> None:
        if prefix is None:
            self._entries.clear()
            return
        for key in [k for k in self._entries if json.loads(k)[0].startswith(prefix)]:
            del self._entries[key]

    def persist(self) -> None:
        if self._store is None:
            return
        self._store.set(
            QUERY_CACHE_KEY,
            {
                key: {"value": entry.value, "updatedAt": entry.updated_at, "stale": entry.stale}
                for key, entry in self._entries.items()
            },
        )

    def restore(self) -> int:
        if self._store is None:
            return 0
        raw = self._store.get(QUERY_CACHE_KEY) or {}
        if not isinstance(raw, dict):
            logger.warning("query_cache_unreadable", kind=type(raw).__name__)
            return 0
        for key, item in raw.items():
            if not isinstance(item, dict) or "value" not in item:
                continue
            # Restored data is kept for fallback but always refetched first.
            self._entries[key] = CacheEntry(
                value=item["value"],
                updated_at=float(item.get("updatedAt") or 0),
                stale=True,
            )
        logger.debug("query_cache_restored", entries=len(raw))
        return len(self._entries)
