"""
Page cache core.

- backends.py: CacheBackend contract with Redis and Flask-Caching adapters
- keys.py: cache key derivation and the pluggable key maker
- index.py: index of stored keys used for pattern invalidation
- locks.py: busy lock serializing regeneration of expired pages
- engine.py: dispatch and finalize decisions
- extension.py: Flask extension and handler-facing helpers
- exceptions.py: error hierarchy
- monitoring.py: Prometheus metrics

Import from the top-level ``flask_pagecache`` package; this package does not
re-export so that ``flask_pagecache.config`` can import its leaf modules.
"""
