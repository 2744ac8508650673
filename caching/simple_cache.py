"""
Simple In-Memory Caching System
Holds resolved destinations in process memory so repeated carrier lookups
never touch the ciphertext again
"""

import time
import logging
import threading
from typing import Any, Optional, Dict, Tuple

logger = logging.getLogger(__name__)


class SimpleCache:
    """Thread-safe in-memory cache with TTL support"""

    def __init__(self, default_ttl: int = 300, name: str = "cache"):
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self.default_ttl = default_ttl
        self.name = name
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                value, expires_at = entry
                if expires_at > time.monotonic():
                    self.stats["hits"] += 1
                    return value
                del self._entries[key]
                self.stats["evictions"] += 1
            self.stats["misses"] += 1
            return default

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        lifetime = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = (value, time.monotonic() + lifetime)
            self.stats["sets"] += 1

    def delete(self, key: str) -> bool:
        with self._lock:
            if self._entries.pop(key, None) is not None:
                self.stats["deletes"] += 1
                return True
            return False

    def clear(self) -> None:
        with self._lock:
            self.stats["deletes"] += len(self._entries)
            self._entries.clear()

    def purge_expired(self) -> int:
        """Drop expired entries, returning how many were removed"""
        now = time.monotonic()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
            self.stats["evictions"] += len(expired)
        if expired:
            logger.debug(f"🧹 CACHE_PURGE: {self.name} evicted {len(expired)} entries")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        total_requests = self.stats["hits"] + self.stats["misses"]
        hit_rate = (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0
        return {
            **self.stats,
            "name": self.name,
            "total_requests": total_requests,
            "hit_rate_percent": round(hit_rate, 2),
            "cache_size": len(self._entries),
        }
