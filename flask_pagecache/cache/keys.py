"""
Page cache key derivation.

A page is identified by its path and its parameters. Parameters are sorted by name
so the same page requested with ``?b=2&a=1`` and ``?a=1&b=2`` shares one entry.
Values are used as submitted; no escaping is applied, so a value containing ``&``
or ``=`` can collide with a different parameter set.
"""

from typing import Callable, Iterable, Mapping, Optional, Tuple, Union

from flask import Request
from werkzeug.datastructures import MultiDict

from flask_pagecache.cache.exceptions import CacheKeyError

# A key maker turns a request into a cache key. Replacing the default lets an
# application vary keys on host, scheme, locale or anything else on the request.
KeyMaker = Callable[[Request], str]

Params = Union[MultiDict, Mapping[str, str], Iterable[Tuple[str, str]], None]


class CacheKeyBuilder:
    """Default key maker: ``/path?name=value&...`` with parameters sorted by name."""

    def build_key(self, path: str, params: Params = None) -> str:
        key = "/" + path.lstrip("/")

        pairs = self._sorted_pairs(params)
        if pairs:
            key += "?" + "&".join(f"{name}={value}" for name, value in pairs)

        return key

    @staticmethod
    def _sorted_pairs(params: Params):
        if not params:
            return []

        if isinstance(params, MultiDict):
            items = list(params.items(multi=True))
        elif isinstance(params, Mapping):
            items = list(params.items())
        else:
            items = list(params)

        # sorted() is stable, so repeated names keep their submission order
        return sorted(items, key=lambda item: item[0])

    def __call__(self, request: Request) -> str:
        return self.build_key(request.path, request.values)


def make_key(key_maker: KeyMaker, request: Request) -> str:
    """Run a key maker and reject anything that is not a non-empty string."""
    try:
        key = key_maker(request)
    except Exception as e:
        raise CacheKeyError(f"Key maker failed: {e}", original_error=e) from e
    if not isinstance(key, str) or not key:
        raise CacheKeyError("Key maker must return a non-empty string", key=key)
    return key


def resolve_key_maker(key_maker: Optional[KeyMaker]) -> KeyMaker:
    return key_maker if key_maker is not None else CacheKeyBuilder()


__all__ = [
    "CacheKeyBuilder",
    "KeyMaker",
    "make_key",
    "resolve_key_maker",
]
