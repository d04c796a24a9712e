"""
Database assertions for tests.

Each helper counts the rows of a table that match every field of a partial
predicate (an equality conjunction) and raises ``AssertionError`` with the
table, predicate and actual count when the expectation does not hold, so
pytest reports a test failure rather than an error.
"""

import json
from typing import Any, Mapping, Optional

from sqlalchemy import and_, column, func, select, table
from sqlalchemy.engine import Connection

from .logging import LogCategory, get_logger

logger = get_logger('assertions')


def count_rows(connection: Connection, table_name: str,
               data: Optional[Mapping[str, Any]] = None) -> int:
    """Count rows in ``table_name`` whose columns equal every value in ``data``."""
    data = data or {}
    target = table(table_name, *(column(name) for name in data))
    statement = select(func.count()).select_from(target)
    if data:
        statement = statement.where(and_(*(target.c[name] == value for name, value in data.items())))
    return connection.execute(statement).scalar_one()


def _describe(data: Optional[Mapping[str, Any]]) -> str:
    return json.dumps(dict(data or {}), default=str, ensure_ascii=False)


def _fail(message: str, table_name: str, data, found: int):
    logger.info(
        "Database assertion failed",
        category=LogCategory.ASSERTION.value,
        table=table_name,
        predicate=dict(data or {}),
        found=found,
    )
    raise AssertionError(message)


def assert_database_has(connection: Connection, table_name: str,
                        data: Mapping[str, Any]) -> None:
    """Assert that at least one row of ``table_name`` matches ``data``."""
    found = count_rows(connection, table_name, data)
    if found < 1:
        _fail(
            f"Failed asserting that a row in the table [{table_name}] matches the "
            f"attributes {_describe(data)}. Found {found} matching row(s).",
            table_name, data, found,
        )


def assert_database_missing(connection: Connection, table_name: str,
                            data: Mapping[str, Any]) -> None:
    """Assert that no row of ``table_name`` matches ``data``."""
    found = count_rows(connection, table_name, data)
    if found > 0:
        _fail(
            f"Failed asserting that no row in the table [{table_name}] matches the "
            f"attributes {_describe(data)}. Found {found} matching row(s).",
            table_name, data, found,
        )


def assert_database_count(connection: Connection, table_name: str, expected: int,
                          data: Optional[Mapping[str, Any]] = None) -> None:
    """Assert that exactly ``expected`` rows of ``table_name`` match ``data``."""
    found = count_rows(connection, table_name, data)
    if found != expected:
        _fail(
            f"Failed asserting that the table [{table_name}] has {expected} row(s) "
            f"matching the attributes {_describe(data)}. Found {found} matching row(s).",
            table_name, data, found,
        )
