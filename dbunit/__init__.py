"""
dbunit - isolated, repeatable relational databases for test suites.

Provisions connections, applies migrations, loads model factories and wraps
each test in a transaction that is rolled back afterwards.
"""

from .assertions import assert_database_count, assert_database_has, assert_database_missing
from .config import ConnectionConfig, TestDatabaseConfig, validate_config
from .connection import ConnectionManager, init_connections
from .context import TestDatabaseContext, refresh_database
from .exceptions import (
    ConfigError,
    DatabaseError,
    DbUnitError,
    FactoryError,
    MigrationError,
    TransactionError,
)
from .factories import FactoryBuilder, FactoryRegistry, init_factories
from .migrations import MigrationRepository, Migrator
from .transaction import TransactionGuard, TransactionState

__version__ = '1.0.0'

__all__ = [
    'refresh_database',
    'TestDatabaseContext',
    'TestDatabaseConfig',
    'ConnectionConfig',
    'validate_config',
    'ConnectionManager',
    'init_connections',
    'MigrationRepository',
    'Migrator',
    'FactoryRegistry',
    'FactoryBuilder',
    'init_factories',
    'TransactionGuard',
    'TransactionState',
    'assert_database_has',
    'assert_database_missing',
    'assert_database_count',
    'DbUnitError',
    'ConfigError',
    'MigrationError',
    'FactoryError',
    'TransactionError',
    'DatabaseError',
]
