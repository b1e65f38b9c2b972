"""
Page cache exception classes.

Every failure raised by the page cache derives from :class:`PageCacheError`, so the
request hooks can catch one type and degrade to serving the page live. Configuration
errors are the exception: they are raised from ``init_app`` and from
``clear_cached_page`` so an operator sees a broken pattern immediately.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis.exceptions as redis_exceptions
import structlog

logger = structlog.get_logger(__name__)


class PageCacheError(Exception):
    """
    Base exception class for all page cache errors.

    Attributes:
        message: Human-readable error description
        error_code: Stable error code for monitoring and alerting
        details: Additional context for debugging
        timestamp: When the error was raised
    """

    def __init__(
        self,
        message: str,
        error_code: str = "PAGE_CACHE_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the exception to a JSON-serializable dictionary."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat()
        }


class CacheBackendError(PageCacheError):
    """
    Raised when the key-value backend fails to answer a get, set, add or remove.

    Attributes:
        operation: Backend operation that failed
        original_error: Exception raised by the backend client
    """

    def __init__(
        self,
        message: str,
        operation: str = "unknown",
        original_error: Optional[Exception] = None,
        error_code: str = "CACHE_BACKEND_ERROR"
    ):
        details = {
            "operation": operation,
            "original_error_type": type(original_error).__name__ if original_error else None,
            "original_error_message": str(original_error) if original_error else None
        }
        super().__init__(message=message, error_code=error_code, details=details)
        self.operation = operation
        self.original_error = original_error


class CacheConfigurationError(PageCacheError):
    """
    Raised for invalid page cache configuration, including patterns that do not compile.

    Attributes:
        option: Configuration option at fault
        value: Offending value
        validation_errors: Individual validation messages
    """

    def __init__(
        self,
        message: str,
        option: Optional[str] = None,
        value: Any = None,
        validation_errors: Optional[List[str]] = None
    ):
        details = {
            "option": option,
            "value": repr(value) if value is not None else None,
            "validation_errors": validation_errors or []
        }
        super().__init__(message=message, error_code="CACHE_CONFIGURATION_ERROR", details=details)
        self.option = option
        self.value = value
        self.validation_errors = validation_errors or []


class CacheKeyError(PageCacheError):
    """Raised when a key maker produces something that cannot be used as a cache key."""

    def __init__(self, message: str, key: Any = None, original_error: Optional[Exception] = None):
        super().__init__(
            message=message,
            error_code="CACHE_KEY_ERROR",
            details={
                "key": repr(key),
                "key_type": type(key).__name__,
                "original_error_type": type(original_error).__name__ if original_error else None
            }
        )
        self.key = key
        self.original_error = original_error


class CacheSerializationError(PageCacheError):
    """Raised when a value cannot be serialized to or restored from the backend."""

    def __init__(
        self,
        message: str,
        serialization_method: str = "pickle",
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            error_code="CACHE_SERIALIZATION_ERROR",
            details={
                "serialization_method": serialization_method,
                "original_error": str(original_error) if original_error else None
            }
        )
        self.serialization_method = serialization_method
        self.original_error = original_error


def handle_redis_exception(redis_error: Exception, operation: str = "unknown") -> PageCacheError:
    """
    Translate a redis-py exception into the page cache hierarchy.

    Args:
        redis_error: Exception raised by redis-py
        operation: Description of the operation that failed

    Returns:
        Matching PageCacheError subclass
    """
    error_message = f"Redis operation '{operation}' failed: {redis_error}"

    if isinstance(redis_error, redis_exceptions.AuthenticationError):
        return CacheBackendError(
            message=f"Redis authentication failed for operation '{operation}'",
            operation=operation,
            original_error=redis_error,
            error_code="REDIS_AUTHENTICATION_ERROR"
        )

    if isinstance(redis_error, (redis_exceptions.ConnectionError, redis_exceptions.TimeoutError)):
        return CacheBackendError(
            message=error_message,
            operation=operation,
            original_error=redis_error,
            error_code="REDIS_CONNECTION_ERROR"
        )

    if isinstance(redis_error, redis_exceptions.DataError):
        return CacheSerializationError(
            message=error_message,
            serialization_method="redis",
            original_error=redis_error
        )

    logger.debug(
        "Unclassified Redis error translated",
        operation=operation,
        redis_error_type=type(redis_error).__name__
    )
    return CacheBackendError(
        message=error_message,
        operation=operation,
        original_error=redis_error,
        error_code="REDIS_ERROR"
    )


__all__ = [
    "PageCacheError",
    "CacheBackendError",
    "CacheConfigurationError",
    "CacheKeyError",
    "CacheSerializationError",
    "handle_redis_exception",
]
