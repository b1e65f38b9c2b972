"""
Structured logging setup for applications using the page cache.

The page cache modules log through ``structlog.get_logger(__name__)`` with keyword
context (``cache_key``, ``path``, ``error_code``...). ``configure_logging`` wires
structlog into the standard library so those events go through normal handlers,
rendered as JSON in production and as console lines when the app runs in debug.
Page cache decision tracing additionally requires the ``debug`` page cache option.
"""

import logging
import logging.config
from typing import Any, Dict, Optional

import structlog
from flask import Flask, has_request_context, request

LOG_FORMAT_JSON = "json"
LOG_FORMAT_CONSOLE = "console"


def add_request_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach method and path of the active Flask request, if any."""
    if has_request_context():
        event_dict.setdefault("request_method", request.method)
        event_dict.setdefault("request_path", request.path)
    return event_dict


def configure_logging(
    app: Optional[Flask] = None,
    level: Optional[str] = None,
    log_format: Optional[str] = None
) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog and stdlib logging.

    Args:
        app: Application whose ``LOG_LEVEL``, ``LOG_FORMAT`` and ``DEBUG`` settings apply
        level: Log level overriding the application setting
        log_format: ``json`` or ``console``, overriding the application setting

    Returns:
        Logger for the page cache package
    """
    config = app.config if app is not None else {}
    debug = bool(config.get("DEBUG", False))

    level = (level or config.get("LOG_LEVEL") or ("DEBUG" if debug else "INFO")).upper()
    log_format = log_format or config.get("LOG_FORMAT") or (LOG_FORMAT_CONSOLE if debug else LOG_FORMAT_JSON)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        add_request_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == LOG_FORMAT_CONSOLE:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {"format": "%(message)s"}
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout"
            }
        },
        "loggers": {
            "flask_pagecache": {
                "handlers": ["console"],
                "level": level,
                "propagate": False
            }
        }
    })

    logger = structlog.get_logger("flask_pagecache")
    logger.debug("Structured logging configured", level=level, log_format=log_format)
    return logger


__all__ = [
    "LOG_FORMAT_CONSOLE",
    "LOG_FORMAT_JSON",
    "add_request_context",
    "configure_logging",
]
