"""
Page cache decision engine.

The engine makes two decisions per request:

- ``before_dispatch``: can this request be answered from the cache? Returns a
  ready response to short-circuit the view, or ``None`` to let the view run.
- ``after_finalize``: should the response the view just produced be stored?

Between the two, the view opts in with ``cache_page`` or the request path matches
one of the ``auto_cache`` patterns. All per-request flags live in a
:class:`PageCacheState` created fresh for every request, so nothing carries over from
one request to the next.

Entries record their own creation and expiry times and the engine enforces expiry
on read; the backend is never trusted to expire pages. With ``busy_lock`` enabled an
expired page is regenerated by exactly one request while concurrent requests keep
receiving the stale copy.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type

import structlog
from flask import Request, Response
from werkzeug.http import http_date

from flask_pagecache.cache.backends import CacheBackend
from flask_pagecache.cache.exceptions import CacheKeyError, CacheSerializationError, PageCacheError
from flask_pagecache.cache.index import PageCacheIndex, compile_full_match
from flask_pagecache.cache.keys import make_key, resolve_key_maker
from flask_pagecache.cache.locks import BusyLock
from flask_pagecache.cache.monitoring import PageCacheMetrics, get_page_cache_metrics
from flask_pagecache.config.settings import PageCacheConfig

logger = structlog.get_logger(__name__)


def _now() -> int:
    return int(time.time())


@dataclass
class CacheEntry:
    """A rendered page as stored in the backend."""

    body: bytes
    create_time: int
    expire_time: int
    content_type: Optional[str] = None
    content_encoding: Optional[str] = None

    def __post_init__(self):
        if self.expire_time <= self.create_time:
            raise ValueError("Cache entry must expire after it is created")

    @classmethod
    def create(
        cls,
        body: bytes,
        ttl: int,
        content_type: Optional[str] = None,
        content_encoding: Optional[str] = None,
        now: Optional[int] = None
    ) -> "CacheEntry":
        created = _now() if now is None else now
        return cls(
            body=body,
            create_time=created,
            expire_time=created + ttl,
            content_type=content_type,
            content_encoding=content_encoding
        )

    def is_expired(self, now: int) -> bool:
        return self.expire_time <= now

    def max_age(self, now: int) -> int:
        return max(0, self.expire_time - now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "body": self.body,
            "content_type": self.content_type,
            "content_encoding": self.content_encoding,
            "create_time": self.create_time,
            "expire_time": self.expire_time
        }

    @classmethod
    def from_dict(cls, data: Any) -> "CacheEntry":
        try:
            body = data["body"]
            if isinstance(body, str):
                body = body.encode("utf-8")
            return cls(
                body=body,
                create_time=int(data["create_time"]),
                expire_time=int(data["expire_time"]),
                content_type=data.get("content_type"),
                content_encoding=data.get("content_encoding")
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CacheSerializationError(
                f"Malformed page cache entry: {e}",
                serialization_method="dict",
                original_error=e
            )


@dataclass
class PageCacheState:
    """
    Per-request page cache flags.

    Attributes:
        cache_page: Seconds to cache this response for, or None to not cache it
        page_cache_used: The response came from the cache; skip the store step
        refreshing_key: Key whose busy lock this request holds
        key: Cache key of this request, computed once
    """

    cache_page: Optional[int] = None
    page_cache_used: bool = False
    refreshing_key: Optional[str] = None
    key: Optional[str] = None


class PageCacheEngine:
    """
    Serves and stores whole pages.

    Args:
        backend: Store for entries, the key index and busy-lock markers
        config: Validated options
        metrics: Prometheus collectors; the process-wide set when omitted
        response_class: Response type built for cache hits
    """

    def __init__(
        self,
        backend: CacheBackend,
        config: Optional[PageCacheConfig] = None,
        metrics: Optional[PageCacheMetrics] = None,
        response_class: Type[Response] = Response
    ):
        self.backend = backend
        self.config = config or PageCacheConfig()
        self.metrics = metrics or get_page_cache_metrics()
        self.response_class = response_class

        self.index = PageCacheIndex(backend, self.config.index_key)
        self.busy_lock = (
            BusyLock(backend, self.config.busy_lock, self.config.busy_lock_prefix)
            if self.config.busy_lock_enabled else None
        )
        self.key_maker = resolve_key_maker(self.config.key_maker)

    def _trace(self, event: str, **context: Any) -> None:
        if self.config.debug:
            logger.debug(event, **context)

    def is_cacheable_method(self, method: str) -> bool:
        return method.upper() not in self.config.no_cache_methods

    def key_for(self, request: Request, state: PageCacheState) -> str:
        if state.key is None:
            key = make_key(self.key_maker, request)
            # The index and busy-lock markers share the backend with the pages
            if key == self.config.index_key or key.startswith(self.config.busy_lock_prefix):
                raise CacheKeyError("Cache key collides with a reserved page cache key", key=key)
            state.key = key
        return state.key

    def cache_page(self, state: PageCacheState, expires: Optional[int] = None) -> None:
        """
        Mark the current response for caching.

        ``expires`` defaults to the configured ``expires`` when omitted or zero. A
        negative value leaves the response uncached.
        """
        expires = expires or self.config.expires
        if expires > 0:
            state.cache_page = int(expires)

    # -- dispatch ----------------------------------------------------------------

    def before_dispatch(self, request: Request, state: PageCacheState) -> Optional[Response]:
        """
        Answer ``request`` from the cache if possible.

        Returns:
            A response to send instead of running the view, or None to run it
        """
        if not self.is_cacheable_method(request.method):
            return None

        try:
            with self.metrics.time_stage("dispatch"):
                return self._serve_from_cache(request, state)
        except PageCacheError as e:
            self._record_failure("dispatch", e, request)
            return None

    def _fetch(self, key: str) -> Optional[CacheEntry]:
        data = self.backend.get(key)
        if data is None:
            return None
        try:
            return CacheEntry.from_dict(data)
        except CacheSerializationError:
            logger.warning("Ignoring malformed page cache entry", cache_key=key)
            return None

    def _serve_from_cache(self, request: Request, state: PageCacheState) -> Optional[Response]:
        key = self.key_for(request, state)

        entry = self._fetch(key)
        if entry is None:
            self.metrics.record_miss(self.backend.name, "absent")
            return None

        now = _now()
        if entry.is_expired(now):
            entry = self._handle_expired(key, state, now)
            if entry is None:
                return None

        self._trace(
            "Serving page from cache",
            cache_key=key,
            expires_in=entry.expire_time - now
        )
        state.page_cache_used = True

        if_modified_since = request.if_modified_since
        if if_modified_since is not None and int(if_modified_since.timestamp()) == entry.create_time:
            self.metrics.record_not_modified(self.backend.name)
            return self._not_modified_response()

        self.metrics.record_hit(self.backend.name)
        return self._build_response(entry, now)

    def _handle_expired(self, key: str, state: PageCacheState, now: int) -> Optional[CacheEntry]:
        if self.busy_lock is None:
            self._trace("Expiring page from cache", cache_key=key)
            self.backend.remove(key)
            self.index.discard(key)
            self.metrics.record_miss(self.backend.name, "expired")
            return None

        if self.busy_lock.try_acquire(key):
            # The stale entry stays in place for concurrent requests until this one
            # stores its replacement or drops it in after_finalize.
            self._trace(
                "Page expired, regenerating under busy lock",
                cache_key=key,
                busy_lock=self.busy_lock.ttl
            )
            state.refreshing_key = key
            self.metrics.record_miss(self.backend.name, "expired")
            return None

        entry = self._fetch(key)
        if entry is None:
            self.metrics.record_miss(self.backend.name, "evicted")
            return None

        if entry.is_expired(now):
            self._trace("Page is being regenerated elsewhere, serving stale copy", cache_key=key)
            self.metrics.record_stale_served(self.backend.name)
        return entry

    def _not_modified_response(self) -> Response:
        response = self.response_class(status=304)
        for header in [name for name in response.headers.keys() if name.lower().startswith("content-")]:
            del response.headers[header]
        return response

    def _build_response(self, entry: CacheEntry, now: int) -> Response:
        response = self.response_class(entry.body)
        if entry.content_type:
            response.content_type = entry.content_type
        if entry.content_encoding:
            response.content_encoding = entry.content_encoding

        if self.config.set_http_headers:
            response.headers["Cache-Control"] = f"max-age={entry.max_age(now)}"
            response.headers["Expires"] = http_date(entry.expire_time)
            response.headers["Last-Modified"] = http_date(entry.create_time)

        return response

    # -- finalize ----------------------------------------------------------------

    def after_finalize(self, request: Request, response: Response, state: PageCacheState) -> None:
        """Store ``response`` if the view or an ``auto_cache`` pattern asked for it."""
        if not self.is_cacheable_method(request.method) or state.page_cache_used:
            return

        try:
            with self.metrics.time_stage("finalize"):
                self._store(request, response, state)
        except PageCacheError as e:
            self._record_failure("finalize", e, request)

    def _store(self, request: Request, response: Response, state: PageCacheState) -> None:
        trigger = "explicit"
        if state.cache_page is None and self.config.auto_cache_patterns:
            path = "/" + request.path.lstrip("/")
            for pattern in self.config.auto_cache_patterns:
                if pattern.fullmatch(path):
                    self._trace("Auto-caching page", path=path, pattern=pattern.pattern)
                    self.cache_page(state)
                    trigger = "auto"
                    break

        if state.cache_page is None:
            self._drop_stale(state)
            return

        if response.is_streamed or response.direct_passthrough:
            self._trace("Streamed response not cached", path=request.path)
            self._drop_stale(state)
            return

        key = self.key_for(request, state)
        entry = CacheEntry.create(
            body=response.get_data(),
            ttl=state.cache_page,
            content_type=response.content_type,
            content_encoding=response.content_encoding
        )

        self._trace("Caching page", cache_key=key, expires=state.cache_page)
        self.backend.set(key, entry.to_dict())
        self.index.add(key)
        self.metrics.record_store(self.backend.name, trigger)

    def _drop_stale(self, state: PageCacheState) -> None:
        # A regeneration that did not produce a cacheable page must not leave the
        # expired copy behind to be served again once the busy lock lapses.
        if state.refreshing_key is not None:
            self.backend.remove(state.refreshing_key)
            self.index.discard(state.refreshing_key)

    # -- invalidation ------------------------------------------------------------

    def clear_cached_page(self, pattern: str) -> int:
        """
        Remove every cached page whose key fully matches ``pattern``.

        ``pattern`` is an absolute path (``/list``) or a regular expression
        (``/view/.*``).

        Returns:
            Number of pages removed

        Raises:
            CacheConfigurationError: If ``pattern`` does not compile
        """
        compiled = compile_full_match(pattern)

        try:
            removed = self.index.remove_matching(compiled)
            for key in removed:
                self.backend.remove(key)
                self._trace("Removed page from cache", cache_key=key)
        except PageCacheError as e:
            self._record_failure("clear", e)
            return 0

        self.metrics.record_invalidation(self.backend.name, len(removed))
        logger.info("Cleared cached pages", pattern=pattern, removed=len(removed))
        return len(removed)

    def prune_index(self) -> int:
        """Drop index records for pages no longer in the backend."""
        pruned = self.index.prune()
        if pruned:
            logger.info("Pruned page cache index", pruned=len(pruned))
        return len(pruned)

    def _record_failure(self, stage: str, error: PageCacheError, request: Optional[Request] = None) -> None:
        self.metrics.record_error(self.backend.name, stage, error.error_code)
        logger.warning(
            "Page cache unavailable, serving live",
            stage=stage,
            error_code=error.error_code,
            error=error.message,
            path=request.path if request is not None else None,
            method=request.method if request is not None else None
        )


__all__ = [
    "CacheEntry",
    "PageCacheState",
    "PageCacheEngine",
]
