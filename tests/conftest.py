"""
Pytest configuration and shared fixtures for the dbunit test suite.

Provides:
- path setup so ``tests.fixtures`` is importable from factory modules
- the ``dbunit_config`` fixture consumed by the ``database`` fixture of
  ``dbunit.pytest_plugin``
- helpers to build configurations pointing at temporary directories
"""

import sys
from pathlib import Path

import pytest

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from tests.fixtures import (  # noqa: E402
    FACTORIES_DIR,
    MIGRATIONS_DIR,
    POSTS_MIGRATIONS_DIR,
    sqlite_memory,
)

pytest_plugins = ["dbunit.pytest_plugin"]


def pytest_configure(config):
    """Register markers for test categorization."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Full refresh/rollback lifecycle tests")


def pytest_collection_modifyitems(config, items):
    """Apply markers based on test location."""
    for item in items:
        parts = Path(str(item.fspath)).parts
        if "unit" in parts:
            item.add_marker(pytest.mark.unit)
        elif "integration" in parts:
            item.add_marker(pytest.mark.integration)


def sqlite_file(path: Path):
    return {'url': f"sqlite:///{path}"}


@pytest.fixture
def memory_config():
    """Configuration for a single in-memory sqlite connection."""
    return {
        'database_config': {'default': sqlite_memory()},
        'migration_path': [str(MIGRATIONS_DIR)],
        'factory_path': str(FACTORIES_DIR),
    }


@pytest.fixture
def file_config(tmp_path):
    """Configuration backed by a sqlite file, observable from other engines."""
    return {
        'database_config': {'default': sqlite_file(tmp_path / "test.db")},
        'migration_path': [str(MIGRATIONS_DIR), str(POSTS_MIGRATIONS_DIR)],
        'factory_path': str(FACTORIES_DIR),
        'faker_seed': 1234,
    }


@pytest.fixture
def dbunit_config(memory_config):
    return memory_config


@pytest.fixture
def migration_dir(tmp_path):
    """Empty directory for migrations written by a test."""
    directory = tmp_path / "migrations"
    directory.mkdir()
    return directory


@pytest.fixture
def factory_dir(tmp_path):
    directory = tmp_path / "factories"
    directory.mkdir()
    return directory
