"""
Configuration and logging setup for the page cache.

- settings.py: PageCacheConfig and its loading from Flask config and environment
- logging.py: structlog configuration
"""
