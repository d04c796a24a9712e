"""
Test database context

``TestDatabaseContext`` owns everything one test needs from the database:
the validated configuration, the connection manager, the migrator, the
factory registry and the transaction guard. Nothing is stored in process
globals, so two contexts never share connections or transactions.

Typical pytest usage::

    @pytest.fixture
    def database():
        context = refresh_database({
            'database_config': {'default': {'driver': 'sqlite', 'database': ':memory:'}},
            'migration_path': 'tests/fixtures/migrations',
            'factory_path': 'tests/fixtures/factories',
        })
        yield context
        context.rollback_database()

and with unittest::

    class UserTest(unittest.TestCase):
        def setUp(self):
            self.database = refresh_database(CONFIG)

        def tearDown(self):
            self.database.rollback_database()
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from sqlalchemy import literal_column, select, table as table_clause
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Session

from . import assertions
from .config import TestDatabaseConfig, validate_config
from .connection import ConnectionManager, init_connections
from .factories import DEFAULT_DEFINITION, FactoryBuilder, FactoryRegistry, init_factories
from .logging import LogCategory, configure_logging, get_logger
from .migrations import MigrationRepository, Migrator
from .transaction import TransactionGuard

ConfigInput = Union[Mapping[str, Any], TestDatabaseConfig]


class TestDatabaseContext:
    """
    Per-test database environment.

    Args:
        config: Raw configuration mapping or an already validated config
        connections_to_transact: Overrides the configured set of connection
            names wrapped in a transaction (``None`` means the default one)
    """

    __test__ = False

    def __init__(self, config: ConfigInput,
                 connections_to_transact: Optional[Sequence[Optional[str]]] = None):
        self.raw_config = config
        self.connections_to_transact = (
            tuple(connections_to_transact) if connections_to_transact is not None else None
        )
        self.config: Optional[TestDatabaseConfig] = None
        self.manager: Optional[ConnectionManager] = None
        self.repository: Optional[MigrationRepository] = None
        self.migrator: Optional[Migrator] = None
        self.factories: Optional[FactoryRegistry] = None
        self.guard: Optional[TransactionGuard] = None
        self.migrated: List[str] = []

        configure_logging()
        self.logger = get_logger('lifecycle')

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def refresh_database(self) -> 'TestDatabaseContext':
        """
        Validate configuration, connect, migrate, load factories and begin
        the test transaction.

        Any failure aborts the setup; connections opened before the failure
        are disposed before the error propagates.
        """
        config = validate_config(self.raw_config)
        if self.connections_to_transact is not None:
            config = config.transacting(self.connections_to_transact)

        self._dispose()
        self.config = config
        self.manager = init_connections(config)

        try:
            self.repository = MigrationRepository(self.manager, table=config.migration_table)
            self.repository.create_repository()
            self.migrator = Migrator(self.repository)
            self.factories = init_factories(config, session_provider=self.session)
            self.migrated = self.migrator.run(config.migration_paths)
            self.guard = TransactionGuard(self.manager, config.connections_to_transact)
            self.begin_database_transaction()
        except Exception:
            self._dispose()
            raise

        self.logger.info(
            "Database refreshed",
            category=LogCategory.LIFECYCLE.value,
            connections=list(self.manager.names()),
            migrated=len(self.migrated),
            factories=len(self.factories),
        )
        return self

    def begin_database_transaction(self) -> None:
        self._require_guard().begin()

    def rollback_database(self) -> None:
        """Roll back the test transaction and disconnect. Safe to call twice."""
        if self.guard is not None:
            self.guard.rollback()

    def close(self) -> None:
        """Roll back and dispose every engine."""
        try:
            self.rollback_database()
        finally:
            self._dispose()

    def __enter__(self) -> 'TestDatabaseContext':
        if self.guard is None or not self.guard.is_active:
            self.refresh_database()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _dispose(self) -> None:
        if self.guard is not None and self.guard.is_active:
            self.guard.rollback()
        if self.manager is not None:
            self.manager.dispose()
        self.manager = None
        self.repository = None
        self.migrator = None
        self.factories = None
        self.guard = None

    def _require_manager(self) -> ConnectionManager:
        if self.manager is None:
            raise RuntimeError("refresh_database() has not been called")
        return self.manager

    def _require_guard(self) -> TransactionGuard:
        if self.guard is None:
            raise RuntimeError("refresh_database() has not been called")
        return self.guard

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def engine(self, name: Optional[str] = None) -> Engine:
        return self._require_manager().engine(name)

    def connection(self, name: Optional[str] = None) -> Connection:
        """
        Connection used for test queries on ``name``.

        This is the transactional connection when ``name`` is wrapped in the
        test transaction. Otherwise a new engine connection is returned and
        the caller is responsible for closing it.
        """
        if self.guard is not None and self.guard.is_active and self.guard.has_connection(name):
            return self.guard.connection(name)
        return self._require_manager().connect(name)

    def session(self, name: Optional[str] = None) -> Session:
        """ORM session bound to the test transaction of ``name``."""
        return self._require_guard().session(name)

    def _run(self, name: Optional[str], operation):
        guard = self.guard
        if guard is not None and guard.is_active and guard.has_connection(name):
            return operation(guard.connection(name))
        with self._require_manager().connect(name) as connection:
            return operation(connection)

    def table(self, name: str, connection: Optional[str] = None) -> List[Dict[str, Any]]:
        """All rows of a table as dictionaries."""
        statement = select(literal_column("*")).select_from(table_clause(name))
        return self._run(
            connection,
            lambda conn: [dict(row._mapping) for row in conn.execute(statement)],
        )

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    def factory(self, model, count: Optional[int] = None,
                name: str = DEFAULT_DEFINITION) -> FactoryBuilder:
        if self.factories is None:
            raise RuntimeError("refresh_database() has not been called")
        return self.factories(model, count, name)

    def prepare_model_data(self, model, data: Union[Mapping[str, Any], Iterable[Mapping[str, Any]]]) -> list:
        """Persist one mapping or a sequence of mappings through the model factory."""
        if isinstance(data, Mapping):
            data = [data]
        builder = self.factory(model)
        return [builder.create(**row) for row in data]

    # ------------------------------------------------------------------
    # Assertions
    # ------------------------------------------------------------------

    def assert_database_has(self, table: str, data: Mapping[str, Any],
                            connection: Optional[str] = None) -> 'TestDatabaseContext':
        self._run(connection, lambda conn: assertions.assert_database_has(conn, table, data))
        return self

    def assert_database_missing(self, table: str, data: Mapping[str, Any],
                                connection: Optional[str] = None) -> 'TestDatabaseContext':
        self._run(connection, lambda conn: assertions.assert_database_missing(conn, table, data))
        return self

    def assert_database_count(self, table: str, expected: int,
                              data: Optional[Mapping[str, Any]] = None,
                              connection: Optional[str] = None) -> 'TestDatabaseContext':
        self._run(
            connection,
            lambda conn: assertions.assert_database_count(conn, table, expected, data),
        )
        return self


def refresh_database(config: ConfigInput,
                     connections_to_transact: Optional[Sequence[Optional[str]]] = None
                     ) -> TestDatabaseContext:
    """
    Build a ``TestDatabaseContext`` and refresh it.

    Args:
        config: Mapping with database_config, migration_path and factory_path
        connections_to_transact: Optional override of the transacted
            connection names

    Returns:
        A context with an active test transaction
    """
    return TestDatabaseContext(config, connections_to_transact).refresh_database()
