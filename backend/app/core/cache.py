"""
Simple in-memory TTL cache.

Used for short-lived aggregator access tokens so a sync does not request a
new token for every call. No external dependency like Redis is required;
each worker process keeps its own cache.
"""

import time
import threading
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)

# In-memory cache storage
_cache: Dict[str, Dict[str, Any]] = {}
_lock = threading.Lock()


def get_cached(key: str) -> Optional[Any]:
    """Get a value from cache if it exists and hasn't expired."""
    with _lock:
        entry = _cache.get(key)
        if entry is None:
            return None
        if time.time() < entry["expires_at"]:
            logger.debug(f"Cache HIT for key: {key}")
            return entry["value"]
        # Expired, remove it
        del _cache[key]
        logger.debug(f"Cache EXPIRED for key: {key}")
    return None


def set_cached(key: str, value: Any, ttl: float) -> None:
    """Store a value in cache with TTL in seconds. Non-positive TTLs are ignored."""
    if ttl <= 0:
        return
    with _lock:
        _cache[key] = {
            "value": value,
            "expires_at": time.time() + ttl,
            "created_at": time.time()
        }
    logger.debug(f"Cache SET for key: {key} (TTL: {int(ttl)}s)")


def delete_cached(key: str) -> bool:
    """Remove a single entry. Returns True if it existed."""
    with _lock:
        return _cache.pop(key, None) is not None


def clear_cache(prefix: Optional[str] = None) -> int:
    """Clear cache entries, optionally only those matching a prefix."""
    with _lock:
        if prefix is None:
            count = len(_cache)
            _cache.clear()
            return count
        keys_to_delete = [k for k in _cache if k.startswith(prefix)]
        for key in keys_to_delete:
            del _cache[key]
        return len(keys_to_delete)


def get_cache_stats() -> Dict[str, Any]:
    """Get cache statistics."""
    now = time.time()
    with _lock:
        active_entries = sum(1 for v in _cache.values() if now < v["expires_at"])
        total = len(_cache)

    return {
        "total_entries": total,
        "active_entries": active_entries,
        "expired_entries": total - active_entries,
    }
