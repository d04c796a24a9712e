"""
Connection Registry

Builds one SQLAlchemy engine per configured connection name and resolves
names to engines for the rest of dbunit. A ``ConnectionManager`` belongs to a
single ``TestDatabaseContext``; it is replaced wholesale whenever the context
refreshes the database and is never shared between tests.

SQLAlchemy's event system acts as the event dispatcher: ``connect`` and
``checkout`` listeners are installed per engine for logging and for sqlite
foreign key enforcement. ORM lifecycle events work without further wiring.

For pysqlite the driver's own transaction handling is switched off and a
``begin`` listener emits ``BEGIN``, so SAVEPOINTs work and DDL stays inside
the transaction that issued it.
"""

import threading
from typing import Dict, Iterable, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from .config import ConnectionConfig, TestDatabaseConfig
from .exceptions import ConfigError
from .logging import LogCategory, get_logger, mask_url


class ConnectionManager:
    """
    Named SQLAlchemy engines with a default connection.

    Engines are created lazily on first use. sqlite in-memory databases use a
    ``StaticPool`` so every checkout sees the same database for the lifetime
    of the manager.
    """

    def __init__(self, default: Optional[str] = None):
        self.logger = get_logger('connection')
        self._configs: Dict[str, ConnectionConfig] = {}
        self._engines: Dict[str, Engine] = {}
        self._default = default
        self._lock = threading.Lock()

    def add_connection(self, config: ConnectionConfig) -> None:
        """Register connection parameters under ``config.name``."""
        if config.name in self._engines:
            self._engines.pop(config.name).dispose()
        self._configs[config.name] = config
        if self._default is None:
            self._default = config.name

        self.logger.info(
            "Connection registered",
            category=LogCategory.CONNECTION.value,
            connection=config.name,
            url=mask_url(config.to_url()),
        )

    @property
    def default(self) -> Optional[str]:
        return self._default

    @default.setter
    def default(self, name: str) -> None:
        if name not in self._configs:
            raise ConfigError(f"unknown connection: {name}", key='database_config')
        self._default = name

    def names(self) -> Iterable[str]:
        return list(self._configs)

    def resolve(self, name: Optional[str] = None) -> str:
        """Map ``None`` to the default connection name and check the name exists."""
        resolved = name or self._default
        if resolved is None or resolved not in self._configs:
            raise ConfigError(f"unknown connection: {resolved}", key='database_config')
        return resolved

    def engine(self, name: Optional[str] = None) -> Engine:
        """Get the engine for a connection name, creating it on first use."""
        name = self.resolve(name)
        with self._lock:
            engine = self._engines.get(name)
            if engine is None:
                engine = self._create_engine(self._configs[name])
                self._engines[name] = engine
            return engine

    def connect(self, name: Optional[str] = None) -> Connection:
        """Open a new connection on the named engine."""
        return self.engine(name).connect()

    def _create_engine(self, config: ConnectionConfig) -> Engine:
        options = dict(config.options)
        if config.is_sqlite_memory:
            options.setdefault('poolclass', StaticPool)
            connect_args = dict(options.get('connect_args') or {})
            connect_args.setdefault('check_same_thread', False)
            options['connect_args'] = connect_args

        engine = create_engine(config.to_url(), **options)
        self._setup_event_listeners(engine, config)

        self.logger.debug(
            "Database engine initialized",
            category=LogCategory.CONNECTION.value,
            connection=config.name,
            url=mask_url(engine.url),
            pool=type(engine.pool).__name__,
        )
        return engine

    def _setup_event_listeners(self, engine: Engine, config: ConnectionConfig) -> None:
        """Set up SQLAlchemy event listeners for the engine."""
        logger = self.logger.bind(connection=config.name)
        is_pysqlite = engine.dialect.name == 'sqlite' and engine.dialect.driver == 'pysqlite'

        @event.listens_for(engine, "connect")
        def receive_connect(dbapi_connection, connection_record):
            if is_pysqlite:
                # pysqlite must not issue BEGIN/COMMIT itself, or SAVEPOINT
                # and rollback of the outer transaction break
                dbapi_connection.isolation_level = None
            if config.foreign_key_constraints and engine.dialect.name == 'sqlite':
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()
            logger.debug("New database connection established",
                         category=LogCategory.CONNECTION.value)

        if is_pysqlite:
            @event.listens_for(engine, "begin")
            def receive_begin(connection):
                connection.exec_driver_sql("BEGIN")

        @event.listens_for(engine, "checkout")
        def receive_checkout(dbapi_connection, connection_record, connection_proxy):
            logger.debug("Connection checked out", category=LogCategory.CONNECTION.value)

    def dispose(self) -> None:
        """Dispose every engine created so far."""
        with self._lock:
            engines, self._engines = self._engines, {}
        for name, engine in engines.items():
            engine.dispose()
            self.logger.debug("Database engine disposed",
                              category=LogCategory.CONNECTION.value, connection=name)


def init_connections(config: TestDatabaseConfig) -> ConnectionManager:
    """
    Create a connection manager for a validated configuration.

    Args:
        config: Validated test database configuration

    Returns:
        ConnectionManager with one connection per configured name
    """
    manager = ConnectionManager(default=config.default_connection)
    for connection_config in config.connections.values():
        manager.add_connection(connection_config)
    return manager
