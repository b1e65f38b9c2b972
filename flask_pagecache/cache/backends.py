"""
Key-value backends for the page cache.

The engine only needs five operations from its store: ``get``, ``set``, ``remove``,
an atomic ``add`` (set-if-absent with a TTL, used by the busy lock) and ``update``
(read-modify-write, used by the key index). :class:`CacheBackend` defines that
contract; two adapters implement it:

- :class:`RedisBackend` talks to redis-py directly. ``add`` is ``SET NX EX`` and
  ``update`` is a ``WATCH``/``MULTI`` compare-and-swap loop, so neither the busy lock
  nor the index can lose updates.
- :class:`FlaskCachingBackend` wraps an existing Flask-Caching ``Cache``. ``add`` is
  delegated to ``Cache.add`` (atomic on the Redis and Memcached cache types) and
  ``update`` falls back to the plain get/mutate/set of the base class.

Backends never expire entries on the engine's behalf. Expiration is tracked in the
entries themselves because not every store honours a TTL.
"""

import pickle
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import redis
import structlog
from flask_caching import Cache
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from flask_pagecache.cache.exceptions import (
    CacheKeyError,
    CacheSerializationError,
    handle_redis_exception,
)

logger = structlog.get_logger(__name__)

# Mutator contract for CacheBackend.update: receives the current value and returns
# the value to write, or None to leave the stored value untouched.
UpdateFunc = Callable[[Any], Optional[Any]]


class CacheBackend(ABC):
    """
    Contract between the page cache engine and a key-value store.

    ``get`` returns ``None`` for an absent key. ``ttl`` values are whole seconds;
    ``None`` or ``0`` means the store keeps the value until it is removed.
    """

    name = "backend"

    @abstractmethod
    def get(self, key: str) -> Any:
        """Return the value stored under ``key`` or ``None``."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store ``value`` under ``key``, overwriting any previous value."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove ``key``. Removing an absent key is not an error."""

    @abstractmethod
    def add(self, key: str, value: Any, ttl: int) -> bool:
        """
        Store ``value`` only if ``key`` is absent, expiring it after ``ttl`` seconds.

        Must be atomic: of any number of concurrent callers at most one gets ``True``.
        """

    def update(self, key: str, func: UpdateFunc, default: Any = None) -> Any:
        """
        Read-modify-write ``key`` through ``func``.

        This default is not atomic: two concurrent updates may lose one of the
        writes. Backends with a compare-and-swap primitive override it. ``func`` may
        be called more than once and must not have side effects.

        Returns:
            The value written, or ``None`` when ``func`` declined to write
        """
        try:
            current = self.get(key)
        except CacheSerializationError:
            logger.warning("Discarding unreadable value before update", key=key)
            current = None

        new_value = func(default if current is None else current)
        if new_value is None:
            return None

        self.set(key, new_value)
        return new_value


class RedisBackend(CacheBackend):
    """
    Page cache backend on a redis-py client.

    Values are pickled so entries keep their raw ``bytes`` bodies. The client must be
    created with ``decode_responses=False``.

    Args:
        client: redis-py client
        key_prefix: Namespace prepended to every key
    """

    name = "redis"

    def __init__(self, client: redis.Redis, key_prefix: str = "page_cache:"):
        self._client = client
        self._key_prefix = key_prefix

        logger.info("Redis page cache backend initialized", key_prefix=key_prefix)

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "page_cache:", **client_kwargs: Any) -> "RedisBackend":
        """Create a backend from a ``redis://`` URL."""
        client_kwargs.setdefault("socket_timeout", 1.0)
        client_kwargs.setdefault("socket_connect_timeout", 1.0)
        client_kwargs["decode_responses"] = False
        return cls(redis.Redis.from_url(url, **client_kwargs), key_prefix=key_prefix)

    @property
    def client(self) -> redis.Redis:
        return self._client

    def _format_key(self, key: str) -> str:
        if not key or not isinstance(key, str):
            raise CacheKeyError(f"Invalid cache key: {key!r}", key=key)
        return f"{self._key_prefix}{key}"

    def _serialize(self, value: Any) -> bytes:
        try:
            return pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
        except (pickle.PicklingError, TypeError, AttributeError) as e:
            raise CacheSerializationError(
                f"Failed to serialize value for cache storage: {e}",
                original_error=e
            )

    def _deserialize(self, raw: bytes) -> Any:
        try:
            return pickle.loads(raw)
        except (pickle.UnpicklingError, EOFError, TypeError, ValueError, AttributeError, ImportError) as e:
            raise CacheSerializationError(
                f"Failed to deserialize value from cache: {e}",
                original_error=e
            )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, max=0.2),
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        reraise=True
    )
    def _execute(self, command: str, *args: Any, **kwargs: Any) -> Any:
        return getattr(self._client, command)(*args, **kwargs)

    def get(self, key: str) -> Any:
        formatted_key = self._format_key(key)
        try:
            raw = self._execute("get", formatted_key)
        except redis.RedisError as e:
            raise handle_redis_exception(e, f"get key '{key}'")

        if raw is None:
            return None
        return self._deserialize(raw)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        formatted_key = self._format_key(key)
        data = self._serialize(value)
        try:
            if ttl:
                self._execute("set", formatted_key, data, ex=ttl)
            else:
                self._execute("set", formatted_key, data)
        except redis.RedisError as e:
            raise handle_redis_exception(e, f"set key '{key}'")

    def remove(self, key: str) -> None:
        formatted_key = self._format_key(key)
        try:
            self._execute("delete", formatted_key)
        except redis.RedisError as e:
            raise handle_redis_exception(e, f"delete key '{key}'")

    def add(self, key: str, value: Any, ttl: int) -> bool:
        formatted_key = self._format_key(key)
        data = self._serialize(value)
        try:
            return bool(self._execute("set", formatted_key, data, nx=True, ex=ttl))
        except redis.RedisError as e:
            raise handle_redis_exception(e, f"add key '{key}'")

    def update(self, key: str, func: UpdateFunc, default: Any = None) -> Any:
        """Compare-and-swap ``key`` with ``WATCH``; retried when another client wins."""
        formatted_key = self._format_key(key)
        try:
            return self._update_watched(formatted_key, func, default)
        except redis.RedisError as e:
            raise handle_redis_exception(e, f"update key '{key}'")

    @retry(
        stop=stop_after_attempt(10),
        wait=wait_random(min=0, max=0.01),
        retry=retry_if_exception_type(WatchError),
        reraise=True
    )
    def _update_watched(self, formatted_key: str, func: UpdateFunc, default: Any) -> Any:
        with self._client.pipeline() as pipe:
            pipe.watch(formatted_key)
            raw = pipe.get(formatted_key)

            current = default
            if raw is not None:
                try:
                    current = self._deserialize(raw)
                except CacheSerializationError:
                    logger.warning("Discarding unreadable value before update", key=formatted_key)

            new_value = func(current)
            if new_value is None:
                pipe.unwatch()
                return None

            pipe.multi()
            pipe.set(formatted_key, self._serialize(new_value))
            pipe.execute()
            return new_value


class FlaskCachingBackend(CacheBackend):
    """
    Page cache backend on top of a Flask-Caching ``Cache``.

    Busy locking relies on ``Cache.add``, which is atomic for the ``RedisCache`` and
    ``MemcachedCache`` types. ``SimpleCache`` honours the marker TTL but only locks
    within one process. Keys are stored without a timeout unless one is given.

    Args:
        cache: Initialized Flask-Caching extension
    """

    name = "flask-caching"

    def __init__(self, cache: Cache):
        self._cache = cache

    @property
    def cache(self) -> Cache:
        return self._cache

    def get(self, key: str) -> Any:
        try:
            return self._cache.get(key)
        except redis.RedisError as e:
            raise handle_redis_exception(e, f"get key '{key}'")

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            self._cache.set(key, value, timeout=ttl or 0)
        except redis.RedisError as e:
            raise handle_redis_exception(e, f"set key '{key}'")

    def remove(self, key: str) -> None:
        try:
            self._cache.delete(key)
        except redis.RedisError as e:
            raise handle_redis_exception(e, f"delete key '{key}'")

    def add(self, key: str, value: Any, ttl: int) -> bool:
        try:
            return bool(self._cache.add(key, value, timeout=ttl))
        except redis.RedisError as e:
            raise handle_redis_exception(e, f"add key '{key}'")


def create_backend(source: Any) -> CacheBackend:
    """
    Coerce a backend source into a :class:`CacheBackend`.

    Accepts a backend, a Flask-Caching ``Cache``, a redis-py client or a ``redis://``
    URL.
    """
    if isinstance(source, CacheBackend):
        return source
    if isinstance(source, Cache):
        return FlaskCachingBackend(source)
    if isinstance(source, redis.Redis):
        return RedisBackend(source)
    if isinstance(source, str):
        return RedisBackend.from_url(source)
    raise TypeError(f"Unsupported page cache backend: {type(source).__name__}")


__all__ = [
    "CacheBackend",
    "RedisBackend",
    "FlaskCachingBackend",
    "UpdateFunc",
    "create_backend",
]
