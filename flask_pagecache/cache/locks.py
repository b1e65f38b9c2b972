"""
Busy lock for expired page cache entries.

When an entry expires, the first request to notice takes a short-lived marker
``"_page_cache_busy:<key>"`` and regenerates the page. Every other request arriving
while the marker lives is served the expired entry instead of regenerating it too.
The marker is never released explicitly; it disappears with its TTL, so a
regeneration that crashes only blocks refreshes for ``busy_lock`` seconds.

Markers live under a reserved prefix that page keys never start with, so no request
can store a page over another page's marker.
"""

import time

from flask_pagecache.cache.backends import CacheBackend

DEFAULT_LOCK_PREFIX = "_page_cache_busy:"


class BusyLock:
    """
    Try-acquire-with-TTL lock on a page cache key.

    Args:
        backend: Backend providing atomic ``add``
        ttl: Lifetime of the marker in seconds
        prefix: Reserved namespace for marker keys
    """

    def __init__(self, backend: CacheBackend, ttl: int, prefix: str = DEFAULT_LOCK_PREFIX):
        if ttl <= 0:
            raise ValueError("Busy lock TTL must be positive")
        if not prefix:
            raise ValueError("Busy lock prefix must not be empty")
        self._backend = backend
        self.ttl = ttl
        self.prefix = prefix

    def marker_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def try_acquire(self, key: str) -> bool:
        """
        Take the regeneration lock for ``key``.

        Returns:
            True if this caller owns the regeneration, False if another caller does
        """
        return self._backend.add(self.marker_key(key), int(time.time()), self.ttl)


__all__ = [
    "DEFAULT_LOCK_PREFIX",
    "BusyLock",
]
