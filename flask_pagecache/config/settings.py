"""
Page cache configuration.

Options can come from three places, later ones winning:

1. Environment variables named ``PAGE_CACHE_<OPTION>`` (a ``.env`` file is loaded
   with python-dotenv first)
2. Flat Flask config keys with the same names, e.g. ``app.config["PAGE_CACHE_EXPIRES"]``
3. A ``PAGE_CACHE`` dict in the Flask config, e.g.
   ``app.config["PAGE_CACHE"] = {"expires": 300, "auto_cache": ["/view/.*"]}``

Recognized options:

    expires            default TTL in seconds for cached pages (300)
    set_http_headers   emit Cache-Control / Expires / Last-Modified on hits (False)
    auto_cache         patterns of paths cached without an explicit cache_page() ([]);
                       from a string, patterns are separated by whitespace
    debug              verbose tracing of every cache decision (False)
    busy_lock          seconds one request may spend regenerating an expired page
                       while others get the stale copy; 0 disables (0)
    busy_lock_prefix   reserved namespace for busy-lock markers ("_page_cache_busy:")
    key_maker          callable(request) -> str, or "module:function" import string
    no_cache_methods   HTTP methods never read from or written to the cache (["POST"]);
                       from a string, separated by commas or whitespace
    index_key          reserved key holding the page index ("_page_cache_index")
    redis_url          build a Redis backend from this URL when none is passed
    key_prefix         namespace for keys written by the Redis backend ("page_cache:")
"""

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional, Pattern, Union

import structlog
from dotenv import load_dotenv
from flask import Flask
from werkzeug.utils import ImportStringError, import_string

from flask_pagecache.cache.exceptions import CacheConfigurationError
from flask_pagecache.cache.index import DEFAULT_INDEX_KEY, compile_full_match
from flask_pagecache.cache.keys import KeyMaker
from flask_pagecache.cache.locks import DEFAULT_LOCK_PREFIX

logger = structlog.get_logger(__name__)

CONFIG_PREFIX = "PAGE_CACHE_"
DEFAULT_EXPIRES = 300

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass
class PageCacheConfig:
    """
    Validated page cache options.

    A zero or missing ``expires`` falls back to the 300 second default. Patterns in
    ``auto_cache`` are compiled up front so a typo fails at startup rather than on
    the first request.
    """

    expires: int = DEFAULT_EXPIRES
    set_http_headers: bool = False
    auto_cache: List[str] = field(default_factory=list)
    debug: bool = False
    busy_lock: int = 0
    busy_lock_prefix: str = DEFAULT_LOCK_PREFIX
    key_maker: Optional[Union[KeyMaker, str]] = None
    no_cache_methods: List[str] = field(default_factory=lambda: ["POST"])
    index_key: str = DEFAULT_INDEX_KEY
    redis_url: Optional[str] = None
    key_prefix: str = "page_cache:"

    auto_cache_patterns: List[Pattern] = field(init=False, repr=False, default_factory=list)

    def __post_init__(self):
        self.expires = _coerce_int("expires", self.expires or 0) or DEFAULT_EXPIRES
        if self.expires <= 0:
            raise CacheConfigurationError(
                "Page cache expires must be a positive number of seconds",
                option="expires",
                value=self.expires
            )

        self.busy_lock = _coerce_int("busy_lock", self.busy_lock or 0)
        if self.busy_lock < 0:
            raise CacheConfigurationError(
                "Page cache busy_lock must be zero (disabled) or positive",
                option="busy_lock",
                value=self.busy_lock
            )

        self.set_http_headers = _coerce_bool("set_http_headers", self.set_http_headers)
        self.debug = _coerce_bool("debug", self.debug)

        # Commas are legal inside patterns (/a{1,3}), so strings split on whitespace only
        self.auto_cache = _coerce_list(self.auto_cache, separator=None)
        self.auto_cache_patterns = [
            compile_full_match(pattern, option="auto_cache") for pattern in self.auto_cache
        ]

        self.no_cache_methods = [method.upper() for method in _coerce_list(self.no_cache_methods)]

        if isinstance(self.key_maker, str):
            self.key_maker = _import_key_maker(self.key_maker)
        if self.key_maker is not None and not callable(self.key_maker):
            raise CacheConfigurationError(
                "Page cache key_maker must be callable",
                option="key_maker",
                value=self.key_maker
            )

        if not self.index_key:
            raise CacheConfigurationError("Page cache index_key must not be empty", option="index_key")
        if not self.busy_lock_prefix:
            raise CacheConfigurationError(
                "Page cache busy_lock_prefix must not be empty", option="busy_lock_prefix"
            )
        if self.index_key.startswith(self.busy_lock_prefix):
            raise CacheConfigurationError(
                "Page cache index_key must not fall inside busy_lock_prefix",
                option="index_key",
                value=self.index_key
            )

    @property
    def busy_lock_enabled(self) -> bool:
        return self.busy_lock > 0

    @classmethod
    def option_names(cls) -> List[str]:
        return [f.name for f in fields(cls) if f.init]

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "PageCacheConfig":
        """Build from a dict of option names; unknown options are rejected."""
        known = set(cls.option_names())
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise CacheConfigurationError(
                f"Unknown page cache options: {', '.join(unknown)}",
                option=unknown[0],
                validation_errors=[f"unknown option '{name}'" for name in unknown]
            )
        return cls(**dict(mapping))

    @classmethod
    def from_app(cls, app: Flask, load_env_file: bool = True) -> "PageCacheConfig":
        """Merge environment, flat ``PAGE_CACHE_*`` keys and the ``PAGE_CACHE`` dict."""
        options = _read_prefixed(os.environ if not load_env_file else _load_environ())
        options.update(_read_prefixed(app.config))

        nested = app.config.get("PAGE_CACHE") or {}
        if not isinstance(nested, Mapping):
            raise CacheConfigurationError(
                "PAGE_CACHE must be a mapping of option names",
                option="PAGE_CACHE",
                value=nested
            )
        options.update(nested)

        config = cls.from_mapping(options)
        logger.debug(
            "Page cache configuration loaded",
            expires=config.expires,
            set_http_headers=config.set_http_headers,
            auto_cache=config.auto_cache,
            busy_lock=config.busy_lock,
            custom_key_maker=config.key_maker is not None
        )
        return config


def _load_environ() -> Mapping[str, str]:
    load_dotenv()
    return os.environ


def _read_prefixed(source: Mapping[str, Any]) -> Dict[str, Any]:
    options = {}
    for name in PageCacheConfig.option_names():
        config_key = f"{CONFIG_PREFIX}{name.upper()}"
        if config_key in source:
            options[name] = source[config_key]
    return options


def _coerce_int(option: str, value: Any) -> int:
    if isinstance(value, bool):
        raise CacheConfigurationError(f"Page cache {option} must be an integer", option=option, value=value)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise CacheConfigurationError(f"Page cache {option} must be an integer", option=option, value=value)


def _coerce_bool(option: str, value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise CacheConfigurationError(f"Page cache {option} must be a boolean", option=option, value=value)
    return bool(value)


def _coerce_list(value: Any, separator: Optional[str] = ",") -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        if separator is not None:
            value = value.replace(separator, " ")
        return value.split()
    return list(value)


def _import_key_maker(path: str) -> KeyMaker:
    try:
        return import_string(path)
    except ImportStringError as e:
        raise CacheConfigurationError(
            f"Cannot import page cache key_maker {path!r}",
            option="key_maker",
            value=path,
            validation_errors=[str(e)]
        )


__all__ = [
    "CONFIG_PREFIX",
    "DEFAULT_EXPIRES",
    "PageCacheConfig",
]
