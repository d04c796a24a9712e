"""
Structured Logging Utilities for dbunit

Wraps structlog so every component logs key/value events tagged with a
category. Configuration happens once per process and is skipped entirely
when the host test suite has already configured structlog itself.

Environment:
- DBUNIT_LOG_LEVEL: minimum level (default WARNING)
- DBUNIT_LOG_FORMAT: ``console`` for human readable output, ``json`` for
  one JSON object per line (default console)
"""

import logging
import os
import sys
import threading
from enum import Enum
from typing import Optional

import structlog


class LogCategory(Enum):
    """Log categories for filtering dbunit output."""
    LIFECYCLE = "lifecycle"
    CONNECTION = "connection"
    MIGRATION = "migration"
    FACTORY = "factory"
    TRANSACTION = "transaction"
    ASSERTION = "assertion"


_configure_lock = threading.Lock()
_configured = False


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.getenv('DBUNIT_LOG_LEVEL') or 'WARNING').upper()
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        return logging.WARNING
    return resolved


def configure_logging(level: Optional[str] = None, log_format: Optional[str] = None,
                      force: bool = False) -> bool:
    """
    Configure structlog for dbunit output.

    Args:
        level: Level name, falls back to DBUNIT_LOG_LEVEL
        log_format: ``console`` or ``json``, falls back to DBUNIT_LOG_FORMAT
        force: Reconfigure even if structlog is already configured

    Returns:
        True if this call changed the structlog configuration
    """
    global _configured

    with _configure_lock:
        if not force and (_configured or structlog.is_configured()):
            return False

        shared_processors = [
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
        ]

        fmt = (log_format or os.getenv('DBUNIT_LOG_FORMAT') or 'console').lower()
        if fmt == 'json':
            processors = shared_processors + [
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ]
        else:
            processors = shared_processors + [
                structlog.dev.ConsoleRenderer(colors=False)
            ]

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.make_filtering_bound_logger(_resolve_level(level)),
            logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
            cache_logger_on_first_use=False,
        )
        _configured = True
        return True


def get_logger(component: str = "dbunit"):
    """Return a structlog logger bound to a dbunit component name."""
    return structlog.get_logger("dbunit").bind(component=component)


def mask_url(url) -> str:
    """Render a database URL with the password hidden."""
    render = getattr(url, 'render_as_string', None)
    if render is not None:
        return render(hide_password=True)
    text = str(url)
    if '@' in text and '://' in text:
        scheme, rest = text.split('://', 1)
        return f"{scheme}://***@{rest.split('@', 1)[1]}"
    return text
