"""
pytest integration for dbunit.

Enable it from a ``conftest.py``::

    pytest_plugins = ["dbunit.pytest_plugin"]

    @pytest.fixture
    def dbunit_config(tmp_path):
        return {
            'database_config': {'default': {'driver': 'sqlite', 'database': ':memory:'}},
            'migration_path': 'tests/migrations',
            'factory_path': 'tests/factories',
        }

The plugin is opt-in and has no ``pytest11`` entry point; a project enables
it only through ``pytest_plugins`` as shown above.

Tests then request the ``database`` fixture. A failure while refreshing the
database is reported as a setup error, and the transaction is always rolled
back when the test finishes.
"""

import pytest

from .context import TestDatabaseContext, refresh_database
from .exceptions import ConfigError


def pytest_configure(config):
    """Register the dbunit marker."""
    config.addinivalue_line(
        "markers",
        "dbunit(connections=None): run the test inside a dbunit database transaction; "
        "connections overrides the transacted connection names",
    )


@pytest.fixture
def dbunit_config():
    """
    Configuration mapping for the ``database`` fixture.

    Projects must override this fixture.
    """
    raise ConfigError("override the dbunit_config fixture to configure the test database")


@pytest.fixture
def database(request, dbunit_config) -> TestDatabaseContext:
    """
    Refreshed test database with an active transaction.

    Yields:
        TestDatabaseContext rolled back and closed after the test
    """
    marker = request.node.get_closest_marker('dbunit')
    connections = marker.kwargs.get('connections') if marker else None

    context = refresh_database(dbunit_config, connections_to_transact=connections)
    try:
        yield context
    finally:
        context.close()
