# services/cache/cache_backend.py
from __future__ import annotations

import os
import threading
import time
from typing import Dict, Optional, Protocol, Tuple

import redis as redis_sync

# -------------------------
# Config
# -------------------------
DEFAULT_TTL_SEC = int(os.getenv("CACHE_DEFAULT_TTL_SEC", "60"))

# Prefix isolates app + env. Example:
#   portfolio-agent:prod:
#   portfolio-agent:preview:
REDIS_PREFIX = os.getenv("REDIS_PREFIX", "portfolio-agent:")

REDIS_URL = os.getenv("REDIS_URL") or os.getenv("UPSTASH_REDIS_URL")


class CacheBackend(Protocol):
    """Raw string key/value store with per-key TTL."""

    def get(self, key: str) -> Optional[str]:
        ...

    def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        ...


def _norm_key(key: str) -> str:
    # Case-preserving: user ids and conversation ids are opaque.
    return (key or "").strip()


def _ttl(ttl_seconds: int) -> int:
    return int(ttl_seconds) if ttl_seconds and ttl_seconds > 0 else DEFAULT_TTL_SEC


class InMemoryCache:
    """Process-local TTL store, used when no Redis URL is configured."""

    def __init__(self) -> None:
        # key -> (expires_at_epoch, payload)
        self._items: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        k = _norm_key(key)
        with self._lock:
            hit = self._items.get(k)
            if not hit:
                return None
            expires_at, payload = hit
            if time.time() <= expires_at:
                return payload
            self._items.pop(k, None)
            return None

    def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        k = _norm_key(key)
        if not k:
            raise ValueError("cache key must not be empty")
        with self._lock:
            self._items[k] = (time.time() + _ttl(ttl_seconds), value)

    def ttl(self, key: str) -> Optional[float]:
        with self._lock:
            hit = self._items.get(_norm_key(key))
        if not hit:
            return None
        return max(0.0, hit[0] - time.time())


class RedisCache:
    """
    Redis-backed store. Errors are raised to the caller; a broken cache
    must not look like an empty conversation.
    """

    def __init__(self, client: "redis_sync.Redis", prefix: str = REDIS_PREFIX) -> None:
        self._client = client
        self._prefix = prefix

    def _redis_key(self, key: str) -> str:
        return f"{self._prefix}{_norm_key(key)}"

    def get(self, key: str) -> Optional[str]:
        raw = self._client.get(self._redis_key(key))
        if raw is None:
            return None
        if isinstance(raw, (bytes, bytearray)):
            return raw.decode("utf-8", errors="replace")
        return str(raw)

    def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        k = _norm_key(key)
        if not k:
            raise ValueError("cache key must not be empty")
        self._client.setex(self._redis_key(k), _ttl(ttl_seconds), value)


_backend: Optional[CacheBackend] = None
_backend_lock = threading.Lock()


def get_redis_client() -> Optional["redis_sync.Redis"]:
    """Build a redis client from REDIS_URL. Returns None if not configured."""
    if not REDIS_URL:
        return None
    return redis_sync.from_url(
        REDIS_URL,
        decode_responses=True,  # returns str for GET
        socket_timeout=2,
        socket_connect_timeout=2,
    )


def get_cache_backend() -> CacheBackend:
    """Lazy init shared backend: Redis when configured, otherwise in-process."""
    global _backend
    if _backend is not None:
        return _backend
    with _backend_lock:
        if _backend is None:
            client = get_redis_client()
            _backend = RedisCache(client) if client is not None else InMemoryCache()
    return _backend


def set_cache_backend(backend: Optional[CacheBackend]) -> None:
    """Swap the shared backend (tests, or an app factory with its own client)."""
    global _backend
    with _backend_lock:
        _backend = backend
