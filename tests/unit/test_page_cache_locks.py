"""
Busy lock tests.
"""

import threading

import pytest

from flask_pagecache import BusyLock
from flask_pagecache.cache.locks import DEFAULT_LOCK_PREFIX

pytestmark = pytest.mark.unit


class TestBusyLock:

    def test_marker_key_in_reserved_namespace(self, memory_backend):
        lock = BusyLock(memory_backend, ttl=10)

        assert DEFAULT_LOCK_PREFIX == "_page_cache_busy:"
        assert lock.marker_key("/cache/count") == "_page_cache_busy:/cache/count"

    def test_custom_prefix(self, memory_backend):
        lock = BusyLock(memory_backend, ttl=10, prefix="locks/")

        lock.try_acquire("/page")

        assert "locks//page" in memory_backend.data

    def test_ttl_must_be_positive(self, memory_backend):
        with pytest.raises(ValueError):
            BusyLock(memory_backend, 0)

    def test_prefix_must_not_be_empty(self, memory_backend):
        with pytest.raises(ValueError):
            BusyLock(memory_backend, 10, prefix="")

    def test_first_caller_wins(self, redis_backend):
        lock = BusyLock(redis_backend, ttl=10)

        assert lock.try_acquire("/page") is True
        assert lock.try_acquire("/page") is False
        assert lock.try_acquire("/other") is True
        assert redis_backend.get("_page_cache_busy:/page") is not None

    def test_page_ending_in_busy_does_not_hold_lock(self, redis_backend):
        lock = BusyLock(redis_backend, ttl=10)
        redis_backend.set("/page:busy", {"body": b"someone else's page"})

        assert lock.try_acquire("/page") is True

    def test_marker_expires_with_ttl(self, fake_redis, redis_backend):
        lock = BusyLock(redis_backend, ttl=10)
        lock.try_acquire("/page")

        assert 0 < fake_redis.ttl("page_cache:_page_cache_busy:/page") <= 10

        fake_redis.delete("page_cache:_page_cache_busy:/page")
        assert lock.try_acquire("/page") is True

    def test_marker_lapses_on_memory_backend(self, memory_backend):
        memory_backend.now = 1000
        lock = BusyLock(memory_backend, ttl=5)

        assert lock.try_acquire("/page") is True
        memory_backend.now = 1004
        assert lock.try_acquire("/page") is False
        memory_backend.now = 1005
        assert lock.try_acquire("/page") is True

    def test_single_winner_across_threads(self, redis_backend):
        lock = BusyLock(redis_backend, ttl=10)
        barrier = threading.Barrier(6)
        winners = []

        def contend():
            barrier.wait()
            if lock.try_acquire("/page"):
                winners.append(threading.get_ident())

        threads = [threading.Thread(target=contend) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
