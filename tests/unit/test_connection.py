"""Unit tests for the connection registry."""

import pytest
from sqlalchemy import inspect, text
from sqlalchemy.pool import StaticPool

from dbunit.config import ConnectionConfig, validate_config
from dbunit.connection import ConnectionManager, init_connections
from dbunit.exceptions import ConfigError


@pytest.fixture
def manager(tmp_path):
    manager = ConnectionManager()
    manager.add_connection(ConnectionConfig(name='default', driver='sqlite'))
    manager.add_connection(ConnectionConfig(name='reporting', url=f"sqlite:///{tmp_path / 'reporting.db'}"))
    yield manager
    manager.dispose()


def test_first_connection_becomes_default(manager):
    assert manager.default == 'default'
    assert manager.resolve() == 'default'
    assert manager.resolve(None) == 'default'
    assert manager.resolve('reporting') == 'reporting'


def test_unknown_connection(manager):
    with pytest.raises(ConfigError, match="unknown connection: archive"):
        manager.resolve('archive')


def test_default_can_be_changed(manager):
    manager.default = 'reporting'
    assert manager.resolve() == 'reporting'
    with pytest.raises(ConfigError):
        manager.default = 'archive'


def test_engines_are_created_once(manager):
    engine = manager.engine()
    assert manager.engine('default') is engine
    assert manager.engine('reporting') is not engine


def test_memory_database_shared_across_connections(manager):
    assert isinstance(manager.engine().pool, StaticPool)

    with manager.connect() as conn:
        conn.execute(text("CREATE TABLE things (id INTEGER PRIMARY KEY)"))
        conn.execute(text("INSERT INTO things (id) VALUES (1)"))
        conn.commit()

    with manager.connect() as conn:
        assert conn.execute(text("SELECT count(*) FROM things")).scalar_one() == 1


@pytest.mark.parametrize('name', ['default', 'reporting'])
def test_sqlite_transactions_cover_ddl_and_savepoints(manager, name):
    with manager.connect(name) as conn:
        conn.execute(text("CREATE TABLE scratch (id INTEGER PRIMARY KEY)"))
        savepoint = conn.begin_nested()
        conn.execute(text("INSERT INTO scratch (id) VALUES (1)"))
        savepoint.rollback()
        assert conn.execute(text("SELECT count(*) FROM scratch")).scalar_one() == 0
        conn.rollback()

    with manager.connect(name) as conn:
        assert not inspect(conn).has_table('scratch')


def test_file_database_uses_regular_pool(manager):
    assert not isinstance(manager.engine('reporting').pool, StaticPool)


def test_dispose_forgets_engines(manager):
    engine = manager.engine()
    manager.dispose()
    assert manager.engine() is not engine


def test_sqlite_foreign_keys_pragma():
    manager = ConnectionManager()
    manager.add_connection(ConnectionConfig(name='default', driver='sqlite',
                                            foreign_key_constraints=True))
    try:
        with manager.connect() as conn:
            assert conn.execute(text("PRAGMA foreign_keys")).scalar_one() == 1
    finally:
        manager.dispose()


def test_init_connections_registers_every_entry(migration_dir, factory_dir):
    config = validate_config({
        'database_config': {
            'primary': {'driver': 'sqlite'},
            'secondary': {'driver': 'sqlite'},
        },
        'migration_path': str(migration_dir),
        'factory_path': str(factory_dir),
        'default_connection': 'secondary',
    })

    manager = init_connections(config)
    try:
        assert list(manager.names()) == ['primary', 'secondary']
        assert manager.resolve() == 'secondary'
        # separate in-memory databases per name
        assert manager.engine('primary') is not manager.engine('secondary')
    finally:
        manager.dispose()
