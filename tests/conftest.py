"""
Shared pytest fixtures for the page cache test suite.

Backends:
- ``memory_backend``: in-process :class:`DictBackend` recording every call, with
  a controllable ``add`` for busy-lock scenarios
- ``redis_backend``: :class:`RedisBackend` over fakeredis, giving the real
  ``SET NX EX`` and ``WATCH``/``MULTI`` semantics without a server

Metrics are always registered against a private ``CollectorRegistry`` so tests
never touch the process-wide Prometheus registry.
"""

import copy
from typing import Any, Dict, List, Optional, Tuple

import fakeredis
import pytest
from prometheus_client import CollectorRegistry

from flask_pagecache import CacheBackend, CacheBackendError, PageCacheMetrics, RedisBackend
from tests.fixtures.app import create_test_app


class DictBackend(CacheBackend):
    """
    In-memory backend for unit tests.

    Values are deep-copied on the way in and out, like a real store would serialize
    them. Markers written with ``add`` honour their TTL through ``now``.
    """

    name = "memory"

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.expiry: Dict[str, float] = {}
        self.calls: List[Tuple[str, str]] = []
        self.now: Optional[float] = None

    def _alive(self, key: str) -> bool:
        if key not in self.data:
            return False
        deadline = self.expiry.get(key)
        if deadline is not None and self.now is not None and deadline <= self.now:
            del self.data[key]
            del self.expiry[key]
            return False
        return True

    def get(self, key: str) -> Any:
        self.calls.append(("get", key))
        if not self._alive(key):
            return None
        return copy.deepcopy(self.data[key])

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self.calls.append(("set", key))
        self.data[key] = copy.deepcopy(value)
        self.expiry.pop(key, None)

    def remove(self, key: str) -> None:
        self.calls.append(("remove", key))
        self.data.pop(key, None)
        self.expiry.pop(key, None)

    def add(self, key: str, value: Any, ttl: int) -> bool:
        self.calls.append(("add", key))
        if self._alive(key):
            return False
        self.data[key] = copy.deepcopy(value)
        if self.now is not None:
            self.expiry[key] = self.now + ttl
        return True

    def called(self, operation: str) -> List[str]:
        return [key for op, key in self.calls if op == operation]


class FailingBackend(CacheBackend):
    """Backend whose every operation fails like an unreachable server."""

    name = "failing"

    def _fail(self, operation: str):
        raise CacheBackendError(
            "Backend unavailable",
            operation=operation,
            error_code="REDIS_CONNECTION_ERROR"
        )

    def get(self, key):
        self._fail("get")

    def set(self, key, value, ttl=None):
        self._fail("set")

    def remove(self, key):
        self._fail("remove")

    def add(self, key, value, ttl):
        self._fail("add")


@pytest.fixture
def metrics() -> PageCacheMetrics:
    return PageCacheMetrics(registry=CollectorRegistry())


@pytest.fixture
def memory_backend() -> DictBackend:
    return DictBackend()


@pytest.fixture
def failing_backend() -> FailingBackend:
    return FailingBackend()


@pytest.fixture
def fake_redis():
    server = fakeredis.FakeServer()
    client = fakeredis.FakeRedis(server=server)
    yield client
    client.flushall()


@pytest.fixture
def redis_backend(fake_redis) -> RedisBackend:
    return RedisBackend(fake_redis)


@pytest.fixture
def make_app(metrics):
    """Factory building the fixture application with private metrics."""
    def factory(page_cache: Optional[Dict[str, Any]] = None, backend: Any = None, **kwargs):
        return create_test_app(page_cache=page_cache, backend=backend, metrics=metrics, **kwargs)
    return factory


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    return app.test_client()
