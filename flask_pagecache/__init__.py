"""
flask-pagecache: cache the output of entire pages.

Many dynamic pages are expensive to render yet rarely change from one request to
the next. The page cache stores the full rendered response keyed by path and
parameters and answers later requests for it without running the view.

Usage::

    from flask import Flask
    from flask_caching import Cache
    from flask_pagecache import PageCache, cache_page, clear_cached_page

    app = Flask(__name__)
    app.config["PAGE_CACHE"] = {
        "expires": 300,
        "set_http_headers": True,
        "auto_cache": ["/view/.*", "/list"],
        "busy_lock": 10,
    }
    Cache(app, config={"CACHE_TYPE": "RedisCache"})
    PageCache(app)

    @app.route("/report")
    def report():
        cache_page(3600)
        return build_report()

Only pages without user-specific content should be cached: the cache key does not
include cookies or authentication, so a page rendered for one user is served to
everyone. Responses to POST requests are never cached.
"""

from flask_pagecache.cache.backends import CacheBackend, FlaskCachingBackend, RedisBackend, create_backend
from flask_pagecache.cache.engine import CacheEntry, PageCacheEngine, PageCacheState
from flask_pagecache.cache.exceptions import (
    CacheBackendError,
    CacheConfigurationError,
    CacheKeyError,
    CacheSerializationError,
    PageCacheError,
)
from flask_pagecache.cache.extension import PageCache, cache_page, clear_cached_page, get_engine
from flask_pagecache.cache.index import PageCacheIndex
from flask_pagecache.cache.keys import CacheKeyBuilder, KeyMaker
from flask_pagecache.cache.locks import BusyLock
from flask_pagecache.cache.monitoring import PageCacheMetrics
from flask_pagecache.config.logging import configure_logging
from flask_pagecache.config.settings import PageCacheConfig

__version__ = "1.0.0"

__all__ = [
    "BusyLock",
    "CacheBackend",
    "CacheBackendError",
    "CacheConfigurationError",
    "CacheEntry",
    "CacheKeyBuilder",
    "CacheKeyError",
    "CacheSerializationError",
    "FlaskCachingBackend",
    "KeyMaker",
    "PageCache",
    "PageCacheConfig",
    "PageCacheEngine",
    "PageCacheError",
    "PageCacheIndex",
    "PageCacheMetrics",
    "PageCacheState",
    "RedisBackend",
    "cache_page",
    "clear_cached_page",
    "configure_logging",
    "create_backend",
    "get_engine",
]
