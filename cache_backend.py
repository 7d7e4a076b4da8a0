"""Unified caching interface with Redis / in-memory swap.

Holds fetched question markdown and generated explanations. When REDIS_URL
is configured and reachable, uses Redis; otherwise uses the in-memory
TTLCache from ai_resilience.py.

Usage:
    from cache_backend import init_cache, get_cache
    init_cache(app)          # called once in create_app()
    cache = get_cache()      # module-level accessor
    cache.set("key", value, ttl=300)
    value = cache.get("key")
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import redis

from ai_resilience import TTLCache

logger = logging.getLogger(__name__)

KEY_PREFIX = "pep:"


def _encode(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


def _decode(raw: Any) -> Any:
    if isinstance(raw, bytes):
        raw = raw.decode()
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw


# ── Protocol ───────────────────────────────────────────────

class CacheBackend(Protocol):
    name: str
    def get(self, key: str) -> Any | None: ...
    def set(self, key: str, value: Any, ttl: int = 300) -> None: ...
    def delete(self, key: str) -> None: ...
    def clear(self) -> None: ...
    def cleanup(self) -> int: ...


# ── In-Memory Implementation ──────────────────────────────

class InMemoryCache:
    """Process-local cache over TTLCache. Values are stored JSON-encoded."""

    name = "memory"

    def __init__(self) -> None:
        self._store = TTLCache()

    def get(self, key: str) -> Any | None:
        raw = self._store.get(KEY_PREFIX + key)
        return None if raw is None else _decode(raw)

    def set(self, key: str, value: Any, ttl: int = 300) -> None:
        self._store.set(KEY_PREFIX + key, _encode(value), ttl)

    def delete(self, key: str) -> None:
        self._store.delete(KEY_PREFIX + key)

    def clear(self) -> None:
        self._store.clear()

    def cleanup(self) -> int:
        return self._store.cleanup()


# ── Redis Implementation ──────────────────────────────────

class RedisCache:
    """Wraps redis.Redis; connection errors degrade to cache misses."""

    name = "redis"

    def __init__(self, redis_client: redis.Redis) -> None:
        self._redis = redis_client

    def get(self, key: str) -> Any | None:
        try:
            raw = self._redis.get(KEY_PREFIX + key)
        except redis.RedisError as e:
            logger.warning("Redis GET error (key=%s): %s", key, e)
            return None
        return None if raw is None else _decode(raw)

    def set(self, key: str, value: Any, ttl: int = 300) -> None:
        try:
            self._redis.setex(KEY_PREFIX + key, ttl, _encode(value))
        except redis.RedisError as e:
            logger.warning("Redis SET error (key=%s): %s", key, e)

    def delete(self, key: str) -> None:
        try:
            self._redis.delete(KEY_PREFIX + key)
        except redis.RedisError as e:
            logger.warning("Redis DELETE error (key=%s): %s", key, e)

    def clear(self) -> None:
        try:
            keys = list(self._redis.scan_iter(match=KEY_PREFIX + "*"))
            if keys:
                self._redis.delete(*keys)
        except redis.RedisError as e:
            logger.warning("Redis CLEAR error: %s", e)

    def cleanup(self) -> int:
        # Redis handles expiry natively
        return 0


# ── Module-level singleton ────────────────────────────────

_cache: CacheBackend | None = None


def init_cache(app) -> None:
    """Initialize the cache backend. Call once from create_app()."""
    global _cache

    redis_url = app.config.get("REDIS_URL", "")
    if redis_url:
        try:
            client = redis.Redis.from_url(redis_url, decode_responses=False)
            client.ping()
            _cache = RedisCache(client)
            app.logger.info("Cache backend: Redis (%s)", redis_url)
            return
        except redis.RedisError as e:
            app.logger.warning("Redis connection failed (%s) — falling back to in-memory cache.", e)

    _cache = InMemoryCache()
    app.logger.info("Cache backend: in-memory (TTLCache)")


def get_cache() -> CacheBackend:
    """Return the active cache backend. Lazily initializes if needed."""
    global _cache
    if _cache is None:
        _cache = InMemoryCache()
    return _cache
