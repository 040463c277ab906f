"""
Client persistent cache for the operation queue.

A key-value store (get / set / remove) the queue uses for crash recovery.
Two adapters:
- RedisOfflineCache: JSON in Redis with a TTL, degrades to "nothing stored"
  when Redis is unavailable
- MemoryOfflineCache: process-local dict (single-process tools and tests)
"""
import json
import logging
import threading
from typing import Any, Dict, Optional, Protocol

from redis.exceptions import RedisError

from core.cache import get_redis_client
from core.config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "plan_sync_backup"


def backup_key(session_id: str) -> str:
    """One backup per client session; sessions never share an entry."""
    return f"{KEY_PREFIX}:{session_id}"


class OfflineCache(Protocol):
    def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    def set(self, key: str, value: Dict[str, Any]) -> None: ...

    def remove(self, key: str) -> None: ...


class RedisOfflineCache:
    def __init__(self, ttl_s: int = None):
        self.ttl_s = ttl_s or settings.PLAN_SYNC_OFFLINE_CACHE_TTL_S

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        client = get_redis_client()
        if not client:
            return None
        try:
            raw = client.get(key)
        except RedisError as e:
            logger.warning(f"Offline cache read failed for {key}: {e}")
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Offline cache entry {key} is corrupt, discarding")
            self.remove(key)
            return None

    def set(self, key: str, value: Dict[str, Any]) -> None:
        client = get_redis_client()
        if not client:
            logger.warning(f"Redis unavailable, pending operations for {key} kept in memory only")
            return
        try:
            client.setex(key, self.ttl_s, json.dumps(value, default=str))
        except RedisError as e:
            logger.warning(f"Offline cache write failed for {key}: {e}")

    def remove(self, key: str) -> None:
        client = get_redis_client()
        if not client:
            return
        try:
            client.delete(key)
        except RedisError as e:
            logger.warning(f"Offline cache delete failed for {key}: {e}")


class MemoryOfflineCache:
    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw else None

    def set(self, key: str, value: Dict[str, Any]) -> None:
        # Stored serialized so callers never share mutable state with the cache.
        with self._lock:
            self._data[key] = json.dumps(value, default=str)

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self):
        with self._lock:
            return list(self._data)
