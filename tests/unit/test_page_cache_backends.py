"""
Backend adapter tests.

The Redis backend runs against fakeredis, which implements ``SET NX EX`` and
``WATCH``/``MULTI`` faithfully. The Flask-Caching backend runs on a ``SimpleCache``.
"""

import pickle
import threading
from datetime import timedelta
from unittest.mock import Mock

import fakeredis
import pytest
import redis
from flask import Flask
from flask_caching import Cache
from freezegun import freeze_time
from redis.exceptions import ConnectionError as RedisConnectionError

from flask_pagecache import (
    CacheBackend,
    CacheBackendError,
    CacheKeyError,
    CacheSerializationError,
    FlaskCachingBackend,
    RedisBackend,
    create_backend,
)
from flask_pagecache.cache.exceptions import handle_redis_exception

pytestmark = pytest.mark.unit


class TestRedisBackend:
    """Redis adapter over fakeredis."""

    def test_set_and_get_keep_bytes(self, redis_backend):
        entry = {"body": b"\x00page", "create_time": 1, "expire_time": 2}
        redis_backend.set("/page", entry)

        assert redis_backend.get("/page") == entry

    def test_absent_key(self, redis_backend):
        assert redis_backend.get("/missing") is None

    def test_keys_are_prefixed(self, fake_redis, redis_backend):
        redis_backend.set("/page", "value")

        assert fake_redis.exists("page_cache:/page") == 1
        assert fake_redis.exists("/page") == 0

    def test_custom_prefix(self, fake_redis):
        backend = RedisBackend(fake_redis, key_prefix="site-a:")
        backend.set("/page", "value")

        assert fake_redis.exists("site-a:/page") == 1

    def test_set_with_ttl(self, fake_redis, redis_backend):
        redis_backend.set("/page", "value", ttl=30)

        assert 0 < fake_redis.ttl("page_cache:/page") <= 30

    def test_set_without_ttl_persists(self, fake_redis, redis_backend):
        redis_backend.set("/page", "value")

        assert fake_redis.ttl("page_cache:/page") == -1

    def test_remove(self, redis_backend):
        redis_backend.set("/page", "value")
        redis_backend.remove("/page")
        redis_backend.remove("/never-stored")

        assert redis_backend.get("/page") is None

    def test_add_only_when_absent(self, fake_redis, redis_backend):
        assert redis_backend.add("/page:busy", 1, ttl=10) is True
        assert redis_backend.add("/page:busy", 2, ttl=10) is False

        assert redis_backend.get("/page:busy") == 1
        assert 0 < fake_redis.ttl("page_cache:/page:busy") <= 10

    def test_concurrent_add_has_single_winner(self, fake_redis):
        backend = RedisBackend(fake_redis)
        results = []
        barrier = threading.Barrier(8)

        def contender():
            barrier.wait()
            results.append(backend.add("/page:busy", 1, ttl=10))

        threads = [threading.Thread(target=contender) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1

    def test_invalid_key(self, redis_backend):
        with pytest.raises(CacheKeyError):
            redis_backend.get("")

    def test_corrupt_value_raises_serialization_error(self, fake_redis, redis_backend):
        fake_redis.set("page_cache:/page", b"not a pickle")

        with pytest.raises(CacheSerializationError):
            redis_backend.get("/page")

    def test_unpicklable_value(self, redis_backend):
        with pytest.raises(CacheSerializationError):
            redis_backend.set("/page", threading.Lock())

    def test_update_writes_function_result(self, redis_backend):
        redis_backend.update("/index", lambda current: {**current, "/a": True}, default={})
        redis_backend.update("/index", lambda current: {**current, "/b": True}, default={})

        assert redis_backend.get("/index") == {"/a": True, "/b": True}

    def test_update_skips_write_when_function_declines(self, fake_redis, redis_backend):
        result = redis_backend.update("/index", lambda current: None, default={})

        assert result is None
        assert fake_redis.exists("page_cache:/index") == 0

    def test_update_replaces_unreadable_value(self, fake_redis, redis_backend):
        fake_redis.set("page_cache:/index", b"garbage")

        redis_backend.update("/index", lambda current: {**current, "/a": True}, default={})

        assert redis_backend.get("/index") == {"/a": True}

    def test_update_retries_after_concurrent_write(self):
        server = fakeredis.FakeServer()
        backend = RedisBackend(fakeredis.FakeRedis(server=server))
        intruder = RedisBackend(fakeredis.FakeRedis(server=server))
        calls = []

        def mutate(current):
            calls.append(dict(current))
            if len(calls) == 1:
                # Another client writes between WATCH and EXEC
                intruder.set("/index", {"/other": True})
            return {**current, "/mine": True}

        backend.update("/index", mutate, default={})

        assert len(calls) == 2
        assert calls[1] == {"/other": True}
        assert backend.get("/index") == {"/other": True, "/mine": True}

    def test_concurrent_updates_lose_nothing(self, fake_redis):
        backend = RedisBackend(fake_redis)
        keys = [f"/page/{n}" for n in range(4)]

        def add(key):
            backend.update("/index", lambda current: {**current, key: True}, default={})

        threads = [threading.Thread(target=add, args=(key,)) for key in keys]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert set(backend.get("/index")) == set(keys)

    def test_connection_errors_retried_then_translated(self):
        client = Mock(spec=redis.Redis)
        client.get.side_effect = RedisConnectionError("Connection refused")
        backend = RedisBackend(client)

        with pytest.raises(CacheBackendError) as exc_info:
            backend.get("/page")

        assert client.get.call_count == 3
        assert exc_info.value.error_code == "REDIS_CONNECTION_ERROR"
        assert exc_info.value.operation == "get key '/page'"

    def test_transient_connection_error_recovers(self):
        client = Mock(spec=redis.Redis)
        client.get.side_effect = [RedisConnectionError("reset"), pickle.dumps("value")]
        backend = RedisBackend(client)

        assert backend.get("/page") == "value"
        assert client.get.call_count == 2

    def test_from_url(self):
        backend = RedisBackend.from_url("redis://localhost:6379/3", key_prefix="x:")
        kwargs = backend.client.connection_pool.connection_kwargs

        assert kwargs["db"] == 3
        assert kwargs["decode_responses"] is False
        assert kwargs["socket_timeout"] == 1.0


class TestRedisExceptionTranslation:

    @pytest.mark.parametrize("error, error_code", [
        (redis.exceptions.AuthenticationError("denied"), "REDIS_AUTHENTICATION_ERROR"),
        (redis.exceptions.ConnectionError("refused"), "REDIS_CONNECTION_ERROR"),
        (redis.exceptions.TimeoutError("slow"), "REDIS_CONNECTION_ERROR"),
        (redis.exceptions.ResponseError("WRONGTYPE"), "REDIS_ERROR"),
    ])
    def test_error_codes(self, error, error_code):
        translated = handle_redis_exception(error, "get key '/page'")

        assert isinstance(translated, CacheBackendError)
        assert translated.error_code == error_code
        assert translated.original_error is error

    def test_data_error_is_serialization_error(self):
        translated = handle_redis_exception(redis.exceptions.DataError("bad"), "set")

        assert isinstance(translated, CacheSerializationError)
        assert translated.error_code == "CACHE_SERIALIZATION_ERROR"


class TestFlaskCachingBackend:
    """Adapter over a Flask-Caching SimpleCache."""

    @pytest.fixture
    def backend(self):
        app = Flask(__name__)
        cache = Cache(app, config={"CACHE_TYPE": "SimpleCache"})
        return FlaskCachingBackend(cache)

    def test_roundtrip_and_remove(self, backend):
        backend.set("/page", {"body": b"page"})
        assert backend.get("/page") == {"body": b"page"}

        backend.remove("/page")
        assert backend.get("/page") is None

    def test_add_only_when_absent(self, backend):
        assert backend.add("/page:busy", 1, ttl=10) is True
        assert backend.add("/page:busy", 2, ttl=10) is False
        assert backend.get("/page:busy") == 1

    def test_add_succeeds_once_marker_lapses(self, backend):
        with freeze_time("2026-01-01 00:00:00") as frozen:
            assert backend.add("_page_cache_busy:/page", 1, ttl=10) is True

            frozen.tick(timedelta(seconds=9))
            assert backend.add("_page_cache_busy:/page", 2, ttl=10) is False

            frozen.tick(timedelta(seconds=2))
            assert backend.add("_page_cache_busy:/page", 3, ttl=10) is True
            assert backend.get("_page_cache_busy:/page") == 3

    def test_update_uses_read_modify_write(self, backend):
        backend.update("/index", lambda current: {**current, "/a": True}, default={})
        backend.update("/index", lambda current: {**current, "/b": True}, default={})

        assert backend.get("/index") == {"/a": True, "/b": True}

    def test_backend_errors_translated(self):
        cache = Mock(spec=Cache)
        cache.get.side_effect = RedisConnectionError("refused")

        with pytest.raises(CacheBackendError) as exc_info:
            FlaskCachingBackend(cache).get("/page")

        assert exc_info.value.error_code == "REDIS_CONNECTION_ERROR"


class TestCreateBackend:

    def test_passes_backend_through(self, redis_backend):
        assert create_backend(redis_backend) is redis_backend

    def test_wraps_flask_caching(self):
        cache = Cache(Flask(__name__), config={"CACHE_TYPE": "SimpleCache"})

        backend = create_backend(cache)

        assert isinstance(backend, FlaskCachingBackend)
        assert backend.cache is cache

    def test_wraps_redis_client(self, fake_redis):
        backend = create_backend(fake_redis)

        assert isinstance(backend, RedisBackend)
        assert backend.client is fake_redis

    def test_url(self):
        assert isinstance(create_backend("redis://localhost:6379/0"), RedisBackend)

    def test_unsupported_source(self):
        with pytest.raises(TypeError):
            create_backend(object())

    def test_contract_is_abstract(self):
        with pytest.raises(TypeError):
            CacheBackend()
