"""
In-process TTL cache for admin booking queries.

Keys are derived from the full query signature with sorted-key JSON, so the
same logical query always lands on the same slot. Staleness is checked on
read; nothing sweeps in the background.
"""
import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

from utils.logger import get_logger

log = get_logger(__name__)


@dataclass
class CacheEntry:
    data: Any
    timestamp: float


class QueryCache:
    def __init__(self, ttl_seconds: float = 60, max_size: int = 100, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def generate_key(table: str, operation: str, params: Optional[dict] = None) -> str:
        signature = json.dumps(params or {}, sort_keys=True, default=str, separators=(",", ":"))
        return f"{table}:{operation}:{signature}"

    def _fresh(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp < self.ttl_seconds

    def get(self, key: str) -> Optional[Any]:
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not self._fresh(entry, now):
                del self._entries[key]
                entry = None
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1
        log.debug("cache_hit", key=key)
        return entry.data

    def set(self, key: str, data: Any) -> None:
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.max_size:
                oldest, _ = self._entries.popitem(last=False)
                log.debug("cache_evicted", key=oldest)
            self._entries[key] = CacheEntry(data=data, timestamp=self.clock())

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        log.debug("cache_cleared", entries=count)
        return count

    def clear_table(self, table: str) -> int:
        prefix = f"{table}:"
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for k in keys:
                del self._entries[k]
        return len(keys)

    def get_stats(self) -> dict:
        now = self.clock()
        with self._lock:
            entries = list(self._entries.items())
        lookups = self.hits + self.misses
        return {
            "size": len(entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "fresh_entries": sum(1 for _, e in entries if self._fresh(e, now)),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 3) if lookups else 0.0,
            "keys": [k for k, _ in entries],
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and self._fresh(entry, self.clock())
