"""
Exception hierarchy for dbunit.

Every error raised by dbunit itself derives from ``DbUnitError`` and carries
a machine readable ``error_code`` plus a ``details`` mapping, so failures can
be logged as structured events and inspected from tests.

Errors coming from the database layer are not part of this
hierarchy: anything SQLAlchemy raises (connection refused, SQL errors,
constraint violations) propagates unchanged to the test runner.
``DatabaseError`` is exported here only as a convenient alias for catching
those in tests.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError as DatabaseError


class ErrorCategory(Enum):
    """Error categories used in structured log output."""
    CONFIGURATION = "configuration"
    MIGRATION = "migration"
    FACTORY = "factory"
    TRANSACTION = "transaction"


class DbUnitError(Exception):
    """
    Base exception class for all dbunit errors.

    Args:
        message: Human readable description
        error_code: Stable identifier, defaults to the class name
        details: Extra context included in ``to_dict``
        category: Error category for log routing
    """

    category = ErrorCategory.CONFIGURATION

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        category: Optional[ErrorCategory] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        if category is not None:
            self.category = category
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for logging."""
        return {
            'error_code': self.error_code,
            'message': self.message,
            'category': self.category.value,
            'timestamp': self.timestamp.isoformat(),
            'details': self.details,
            'type': self.__class__.__name__,
        }


class ConfigError(DbUnitError):
    """Missing or invalid configuration, raised before any connection is opened."""

    category = ErrorCategory.CONFIGURATION

    def __init__(self, message: str, key: Optional[str] = None, **kwargs):
        details = kwargs.pop('details', None) or {}
        if key:
            details['key'] = key
        super().__init__(message, details=details, **kwargs)
        self.key = key


class MigrationError(DbUnitError):
    """A migration file could not be loaded or is malformed."""

    category = ErrorCategory.MIGRATION

    def __init__(self, message: str, migration: Optional[str] = None, **kwargs):
        details = kwargs.pop('details', None) or {}
        if migration:
            details['migration'] = migration
        super().__init__(message, details=details, **kwargs)
        self.migration = migration


class FactoryError(DbUnitError):
    """Unknown factory definition or a factory module that failed to load."""

    category = ErrorCategory.FACTORY


class TransactionError(DbUnitError):
    """The transaction guard was used out of order."""

    category = ErrorCategory.TRANSACTION


__all__ = [
    'ErrorCategory',
    'DbUnitError',
    'ConfigError',
    'MigrationError',
    'FactoryError',
    'TransactionError',
    'DatabaseError',
]
