"""Fixture project used by the dbunit test suite."""

from pathlib import Path

FIXTURES_DIR = Path(__file__).parent
MIGRATIONS_DIR = FIXTURES_DIR / "migrations"
POSTS_MIGRATIONS_DIR = FIXTURES_DIR / "migrations_posts"
FACTORIES_DIR = FIXTURES_DIR / "factories"


def sqlite_memory():
    return {'driver': 'sqlite', 'database': ':memory:'}
