"""
Redis Caching Layer

Backs two things in the plan sync engine:
- the offline operation backup for client sessions (see services.plan_sync.offline_cache)
- the read-through cache of canonical plan trees

Includes graceful degradation if Redis is unavailable.
"""
import json
import logging
import time
from typing import Optional, Any
import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError
from core.config import settings

logger = logging.getLogger(__name__)

# Redis connection pool (singleton)
_redis_client: Optional[redis.Redis] = None
# After a failed connect, do not hammer Redis on every call.
_unavailable_until: float = 0.0
RECONNECT_COOLDOWN_S = 30

PLAN_TREE_TTL_S = 300


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client with connection pooling. Returns None if Redis unavailable."""
    global _redis_client, _unavailable_until

    if _redis_client is not None:
        return _redis_client

    if time.monotonic() < _unavailable_until:
        return None

    try:
        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30
        )
        client.ping()
        _redis_client = client
        logger.info("Redis connection established")
        return _redis_client
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}. Caching disabled for {RECONNECT_COOLDOWN_S}s.")
        _unavailable_until = time.monotonic() + RECONNECT_COOLDOWN_S
        return None


def cache_key(prefix: str, *args, **kwargs) -> str:
    """Generate cache key from prefix and arguments."""
    key_parts = [prefix]

    for arg in args:
        if arg is not None:
            key_parts.append(str(arg))

    for k, v in sorted(kwargs.items()):
        if v is not None:
            key_parts.append(f"{k}:{v}")

    return ":".join(key_parts)


def get_cache(key: str) -> Optional[Any]:
    """Get value from cache. Returns None if not found or Redis unavailable."""
    client = get_redis_client()
    if not client:
        return None

    try:
        value = client.get(key)
        if value:
            return json.loads(value)
        return None
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Cache get error for key {key}: {e}")
        return None
    except ValueError as e:
        # Corrupt entry: drop it rather than fail every read.
        logger.warning(f"Cache entry for key {key} is not valid JSON: {e}")
        delete_cache(key)
        return None


def set_cache(key: str, value: Any, ttl: int = None) -> bool:
    """Set value in cache. Returns True if successful, False otherwise."""
    client = get_redis_client()
    if not client:
        return False

    try:
        client.setex(
            key,
            ttl or PLAN_TREE_TTL_S,
            json.dumps(value, default=str)  # default=str handles datetime, UUID, etc.
        )
        return True
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Cache set error for key {key}: {e}")
        return False


def delete_cache(key: str) -> bool:
    """Delete key from cache. Returns True if successful, False otherwise."""
    client = get_redis_client()
    if not client:
        return False

    try:
        client.delete(key)
        return True
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Cache delete error for key {key}: {e}")
        return False


def plan_tree_key(plan_id: str) -> str:
    return cache_key("plan_tree", plan_id)


def invalidate_plan_cache(plan_id: str) -> bool:
    """Drop the cached tree for a plan after its updated_at moved."""
    deleted = delete_cache(plan_tree_key(plan_id))
    if deleted:
        logger.debug(f"Invalidated plan tree cache for plan {plan_id}")
    return deleted
