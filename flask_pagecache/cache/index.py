"""
Index of keys stored by the page cache.

The index lives in the same backend as the pages, under one reserved key, as a
``{cache_key: True}`` mapping. It makes pattern invalidation possible on stores that
cannot enumerate their keys. It is eventually consistent: a key in the index may
point at an entry that has already been evicted, and every reader tolerates that.

Mutations go through :meth:`CacheBackend.update`. On backends without
compare-and-swap that is a plain read-modify-write, and two requests storing
different pages at the same moment can drop one of the two index records. The
dropped page is still served from cache; it just cannot be cleared by pattern until
it is stored again.
"""

import re
from typing import Dict, List, Pattern

import structlog

from flask_pagecache.cache.backends import CacheBackend
from flask_pagecache.cache.exceptions import CacheConfigurationError

logger = structlog.get_logger(__name__)

DEFAULT_INDEX_KEY = "_page_cache_index"


def _normalize(raw) -> Dict[str, bool]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        logger.warning("Malformed page cache index treated as empty", index_type=type(raw).__name__)
        return {}
    return {key: True for key in raw if isinstance(key, str)}


class PageCacheIndex:
    """
    Set of page cache keys persisted in the backend.

    Args:
        backend: Backend holding both the pages and the index
        index_key: Reserved key the index is stored under
    """

    def __init__(self, backend: CacheBackend, index_key: str = DEFAULT_INDEX_KEY):
        self._backend = backend
        self.index_key = index_key

    def keys(self) -> List[str]:
        """Keys currently recorded. A malformed index reads as empty."""
        return sorted(_normalize(self._backend.get(self.index_key)))

    def add(self, key: str) -> None:
        def mutate(raw):
            index = _normalize(raw)
            if index.get(key) and raw == index:
                return None
            index[key] = True
            return index

        self._backend.update(self.index_key, mutate, default={})

    def discard(self, key: str) -> None:
        def mutate(raw):
            index = _normalize(raw)
            if key not in index:
                return None
            del index[key]
            return index

        self._backend.update(self.index_key, mutate, default={})

    def remove_matching(self, pattern: Pattern) -> List[str]:
        """
        Drop every key fully matching ``pattern`` from the index.

        The index is only written back when at least one key matched.

        Returns:
            Keys removed from the index, for the caller to delete from the backend
        """
        removed: List[str] = []

        def mutate(raw):
            index = _normalize(raw)
            matched = [key for key in index if pattern.fullmatch(key)]
            # update() may retry; report only the keys of the attempt that was written
            removed[:] = matched
            if not matched:
                return None
            for key in matched:
                del index[key]
            return index

        self._backend.update(self.index_key, mutate, default={})
        return sorted(removed)

    def prune(self) -> List[str]:
        """
        Drop records whose page entry is no longer in the backend.

        Returns:
            Keys pruned from the index
        """
        missing = [key for key in self.keys() if self._backend.get(key) is None]
        if not missing:
            return []

        missing_set = set(missing)

        def mutate(raw):
            index = _normalize(raw)
            pruned = {key: True for key in index if key not in missing_set}
            if len(pruned) == len(index):
                return None
            return pruned

        self._backend.update(self.index_key, mutate, default={})
        return missing


def compile_full_match(pattern: str, option: str = "pattern") -> Pattern:
    """
    Compile a path pattern. Callers match it with ``fullmatch`` so ``/list`` never
    matches ``/list/old``.

    Raises:
        CacheConfigurationError: If the pattern does not compile
    """
    try:
        return re.compile(pattern)
    except (re.error, TypeError) as e:
        raise CacheConfigurationError(
            f"Invalid page cache pattern {pattern!r}: {e}",
            option=option,
            value=pattern,
            validation_errors=[str(e)]
        )


__all__ = [
    "DEFAULT_INDEX_KEY",
    "PageCacheIndex",
    "compile_full_match",
]
