"""
Flask integration for the page cache.

:class:`PageCache` follows the usual extension pattern::

    cache = Cache(app, config={"CACHE_TYPE": "RedisCache"})
    page_cache = PageCache(app)          # picks up the Flask-Caching instance

    @app.route("/list")
    def list_items():
        page_cache.cache_page(3600)
        return render_template("list.html")

    @app.route("/admin/refresh", methods=["POST"])
    def refresh():
        clear_cached_page("/list")
        return "ok"

The extension registers a ``before_request`` hook that answers from the cache and
an ``after_request`` hook that stores the response. Register it after any extension
whose ``before_request`` hooks must still run for cached pages.

Backend resolution, first match wins: the ``backend`` argument, the ``redis_url``
option, a Flask-Caching ``Cache`` already registered on the app. With none of
these the extension logs one warning and every request is served live.
"""

from functools import wraps
from typing import Any, Callable, Optional, TypeVar

import structlog
from flask import Flask, Response, current_app, g, request

from flask_pagecache.cache.backends import CacheBackend, FlaskCachingBackend, RedisBackend, create_backend
from flask_pagecache.cache.engine import PageCacheEngine, PageCacheState
from flask_pagecache.cache.index import compile_full_match
from flask_pagecache.cache.monitoring import PageCacheMetrics
from flask_pagecache.config.settings import PageCacheConfig

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

EXTENSION_NAME = "page_cache"
_STATE_ATTR = "_page_cache_state"


def _discover_flask_caching(app: Flask) -> Optional[CacheBackend]:
    # Flask-Caching registers {Cache instance: backend} under app.extensions["cache"]
    registered = app.extensions.get("cache") or {}
    for cache in registered:
        return FlaskCachingBackend(cache)
    return None


def _resolve_backend(app: Flask, source: Any, config: PageCacheConfig) -> Optional[CacheBackend]:
    if isinstance(source, str):
        return RedisBackend.from_url(source, key_prefix=config.key_prefix)
    if source is not None:
        return create_backend(source)
    if config.redis_url:
        return RedisBackend.from_url(config.redis_url, key_prefix=config.key_prefix)
    return _discover_flask_caching(app)


def get_engine(app: Optional[Flask] = None) -> Optional[PageCacheEngine]:
    """Engine bound to ``app`` (the current app by default), None when caching is disabled."""
    app = app or current_app
    if EXTENSION_NAME not in app.extensions:
        raise RuntimeError("PageCache is not initialized on this application")
    return app.extensions[EXTENSION_NAME]


def get_request_state() -> PageCacheState:
    """Page cache flags of the current request, created on first use."""
    state = g.get(_STATE_ATTR)
    if state is None:
        state = PageCacheState()
        setattr(g, _STATE_ATTR, state)
    return state


class PageCache:
    """
    Full-page cache extension.

    Args:
        app: Application to initialize immediately
        backend: CacheBackend, Flask-Caching ``Cache``, redis-py client or URL
        config: Options; read from ``app.config`` and the environment when omitted
        metrics: Prometheus collectors; the process-wide set when omitted
    """

    def __init__(
        self,
        app: Optional[Flask] = None,
        backend: Any = None,
        config: Optional[PageCacheConfig] = None,
        metrics: Optional[PageCacheMetrics] = None
    ):
        self._backend_source = backend
        self._config = config
        self._metrics = metrics

        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask, backend: Any = None) -> None:
        config = self._config or PageCacheConfig.from_app(app)
        source = backend if backend is not None else self._backend_source
        resolved = _resolve_backend(app, source, config)

        if resolved is None:
            logger.warning(
                "No cache backend configured, page caching disabled",
                app_name=app.import_name
            )
            engine = None
        else:
            engine = PageCacheEngine(
                resolved,
                config=config,
                metrics=self._metrics,
                response_class=app.response_class
            )
            logger.info(
                "Page cache initialized",
                backend=resolved.name,
                expires=config.expires,
                auto_cache=config.auto_cache,
                busy_lock=config.busy_lock,
                set_http_headers=config.set_http_headers
            )

        app.extensions[EXTENSION_NAME] = engine
        app.before_request(self._before_request)
        app.after_request(self._after_request)

    @staticmethod
    def _before_request() -> Optional[Response]:
        # Fresh flags for every request
        state = PageCacheState()
        setattr(g, _STATE_ATTR, state)

        engine = get_engine()
        if engine is None:
            return None
        return engine.before_dispatch(request, state)

    @staticmethod
    def _after_request(response: Response) -> Response:
        engine = get_engine()
        state = g.get(_STATE_ATTR)
        if engine is None or state is None:
            return response

        engine.after_finalize(request, response, state)
        return response

    def cache_page(self, expires: Optional[int] = None) -> None:
        cache_page(expires)

    def clear_cached_page(self, pattern: str) -> int:
        return clear_cached_page(pattern)

    def prune_index(self) -> int:
        engine = get_engine()
        return engine.prune_index() if engine is not None else 0

    def cached(self, expires: Optional[int] = None) -> Callable[[F], F]:
        """
        Decorator equivalent to calling ``cache_page(expires)`` at the top of a view.
        """
        def decorator(view: F) -> F:
            @wraps(view)
            def wrapper(*args, **kwargs):
                cache_page(expires)
                return view(*args, **kwargs)
            return wrapper
        return decorator


def cache_page(expires: Optional[int] = None) -> None:
    """
    Cache the current response for ``expires`` seconds (the configured default when
    omitted or zero). A negative value is a no-op.
    """
    engine = get_engine()
    if engine is not None:
        engine.cache_page(get_request_state(), expires)


def clear_cached_page(pattern: str) -> int:
    """
    Remove cached pages whose key fully matches ``pattern``, an absolute path such
    as ``/list`` or a regular expression such as ``/view/.*``.

    Returns:
        Number of pages removed
    """
    engine = get_engine()
    if engine is None:
        compile_full_match(pattern)
        return 0
    return engine.clear_cached_page(pattern)


__all__ = [
    "EXTENSION_NAME",
    "PageCache",
    "cache_page",
    "clear_cached_page",
    "get_engine",
    "get_request_state",
]
