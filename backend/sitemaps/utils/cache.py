import hashlib
import threading
from typing import Any, Dict, Optional

import orjson
from cachetools import TTLCache

from .logging import get_logger

logger = get_logger(__name__)

PRIMARY = "primary"
FALLBACK = "fallback"
_SERVICE_TYPES = (PRIMARY, FALLBACK)


class ServiceAvailabilityCache:
    """Remembers, per viewport, whether primary or fallback imagery answered.

    Scoped to one report-generation session. Entries are only ever added
    until ``clear`` is called at the start of the next session.
    """

    def __init__(self):
        self._entries: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
        }

    @staticmethod
    def make_key(center_x: float, center_y: float, size: float) -> str:
        return "_".join(f"{round(value, 4):.4f}" for value in (center_x, center_y, size))

    def get_service_type(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._entries.get(key)
            if value is None:
                self.stats['misses'] += 1
            else:
                self.stats['hits'] += 1
        return value

    def set_service_type(self, key: str, service_type: str) -> None:
        if service_type not in _SERVICE_TYPES:
            raise ValueError(f"Unknown service type: {service_type}")
        with self._lock:
            self._entries[key] = service_type
            self.stats['sets'] += 1
        logger.debug("Service availability recorded", extra={'cache_key': key, 'service_type': service_type})

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("Service availability cache cleared")

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {**self.stats, 'size': len(self._entries)}


class ResponseCache:
    """TTL cache for rendered screenshot responses, keyed by request payload."""

    def __init__(self, max_size: int = 256, ttl: int = 900):
        self.cache = TTLCache(maxsize=max_size, ttl=ttl)
        self._lock = threading.Lock()
        self.stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
        }

    @staticmethod
    def make_key(data: Any) -> str:
        serialized = orjson.dumps(data, option=orjson.OPT_SORT_KEYS)
        return hashlib.sha256(serialized).hexdigest()[:24]

    def get(self, key: Any) -> Optional[Any]:
        cache_key = self.make_key(key)
        with self._lock:
            value = self.cache.get(cache_key)
            if value is None:
                self.stats['misses'] += 1
            else:
                self.stats['hits'] += 1
        return value

    def set(self, key: Any, value: Any) -> None:
        cache_key = self.make_key(key)
        with self._lock:
            self.cache[cache_key] = value
            self.stats['sets'] += 1

    def clear(self) -> None:
        with self._lock:
            self.cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        total = self.stats['hits'] + self.stats['misses']
        return {
            **self.stats,
            'hit_rate': self.stats['hits'] / total if total else 0,
            'size': len(self.cache),
            'max_size': self.cache.maxsize,
        }


_response_cache: Optional[ResponseCache] = None


def get_response_cache(ttl: int = 900, max_size: int = 256) -> ResponseCache:
    global _response_cache
    if _response_cache is None:
        _response_cache = ResponseCache(max_size=max_size, ttl=ttl)
        logger.info(f"Initialized response cache with TTL={ttl}s, max_size={max_size}")
    return _response_cache
