"""
Test Database Configuration

Validates the mapping handed to ``refresh_database`` and turns it into a
``TestDatabaseConfig``. Validation only checks that required keys are present
and that the referenced directories exist; it never opens a database
connection.

Recognised keys:
- database_config: mapping of connection name to connection parameters
- migration_path: a directory or a sequence of directories
- factory_path: directory holding factory definition modules
- connections_to_transact: connection names wrapped in a transaction per test
- migration_table: name of the migration bookkeeping table
- faker_locale / faker_seed: fake data generator settings
- default_connection: name used when no connection name is given
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from sqlalchemy.engine import URL, make_url

from .exceptions import ConfigError

DEFAULT_MIGRATION_TABLE = 'migration'
DEFAULT_FAKER_LOCALE = 'en_US'

# Laravel style driver names mapped onto SQLAlchemy dialects
DRIVER_ALIASES = {
    'sqlite': 'sqlite',
    'mysql': 'mysql+pymysql',
    'mariadb': 'mariadb+pymysql',
    'pgsql': 'postgresql',
    'postgres': 'postgresql',
    'postgresql': 'postgresql',
    'sqlsrv': 'mssql+pyodbc',
}

PathLike = Union[str, os.PathLike]


@dataclass
class ConnectionConfig:
    """Connection parameters for one named connection."""
    name: str
    url: Optional[str] = None
    driver: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    foreign_key_constraints: bool = False

    def __post_init__(self):
        if not self.url and not self.driver:
            raise ConfigError(
                f"invalid connection config: {self.name}",
                key='database_config',
                details={'connection': self.name, 'reason': 'url or driver required'},
            )

    @classmethod
    def from_mapping(cls, name: str, params: Any) -> 'ConnectionConfig':
        if isinstance(params, str):
            return cls(name=name, url=params)
        if not isinstance(params, Mapping):
            raise ConfigError(f"invalid connection config: {name}", key='database_config')

        port = params.get('port')
        if port not in (None, ''):
            try:
                port = int(port)
            except (TypeError, ValueError):
                raise ConfigError(
                    f"invalid port for connection {name}: {port!r}",
                    key='database_config',
                    details={'connection': name},
                ) from None
        else:
            port = None

        return cls(
            name=name,
            url=params.get('url'),
            driver=params.get('driver'),
            host=params.get('host'),
            port=port,
            database=params.get('database'),
            username=params.get('username'),
            password=params.get('password'),
            options=dict(params.get('options') or {}),
            foreign_key_constraints=bool(params.get('foreign_key_constraints', False)),
        )

    def to_url(self) -> URL:
        """Build the SQLAlchemy URL for this connection."""
        if self.url:
            return make_url(self.url)

        drivername = DRIVER_ALIASES.get(self.driver, self.driver)
        database = self.database
        if drivername.startswith('sqlite') and database in (None, '', ':memory:'):
            database = None
        return URL.create(
            drivername,
            username=self.username,
            password=self.password,
            host=self.host,
            port=self.port,
            database=database,
        )

    @property
    def is_sqlite_memory(self) -> bool:
        url = self.to_url()
        return url.get_backend_name() == 'sqlite' and url.database in (None, '', ':memory:')


@dataclass
class TestDatabaseConfig:
    """Validated configuration for one test database environment."""
    connections: Dict[str, ConnectionConfig]
    migration_paths: Tuple[Path, ...]
    factory_path: Path
    connections_to_transact: Tuple[Optional[str], ...] = (None,)
    migration_table: str = DEFAULT_MIGRATION_TABLE
    faker_locale: str = DEFAULT_FAKER_LOCALE
    faker_seed: Optional[int] = None
    default_connection: Optional[str] = None

    __test__ = False

    def __post_init__(self):
        if self.default_connection is None:
            if 'default' in self.connections:
                self.default_connection = 'default'
            elif self.connections:
                self.default_connection = next(iter(self.connections))

    def transacting(self, names: Any) -> 'TestDatabaseConfig':
        """Copy of this config wrapping ``names`` in the test transaction."""
        return replace(self, connections_to_transact=_transacted_names(names, self.connections))


def _transacted_names(value: Any, connections: Mapping[str, ConnectionConfig]) -> Tuple[Optional[str], ...]:
    if value is None:
        value = (None,)
    elif isinstance(value, str):
        value = (value,)
    names = tuple(value) or (None,)
    for name in names:
        if name is not None and name not in connections:
            raise ConfigError(f"unknown connection in connections_to_transact: {name}",
                              key='connections_to_transact')
    return names


def _as_path_sequence(value: Any) -> Tuple[Path, ...]:
    """Coerce a single path or a sequence of paths into a tuple of paths."""
    if isinstance(value, (str, bytes, os.PathLike)):
        value = [value]
    return tuple(Path(os.fsdecode(path)) for path in value)


def _check_migration_paths(paths: Tuple[Path, ...]) -> None:
    for path in paths:
        if not path.is_dir():
            raise ConfigError(f"migration directory not found: {path}", key='migration_path')


def _check_factory_path(path: Path) -> None:
    if not path.exists():
        raise ConfigError(f"factory directory not found: {path}", key='factory_path')


def validate_config(config: Union[Mapping[str, Any], TestDatabaseConfig]) -> TestDatabaseConfig:
    """
    Validate a raw configuration mapping, or re-check the paths and
    transacted names of an already built TestDatabaseConfig.

    Args:
        config: Mapping with database_config, migration_path and factory_path

    Returns:
        TestDatabaseConfig with paths normalized

    Raises:
        ConfigError: If a required key is missing or a directory does not exist
    """
    if isinstance(config, TestDatabaseConfig):
        # Built directly, so paths were never checked
        _check_migration_paths(_as_path_sequence(config.migration_paths))
        _check_factory_path(Path(os.fsdecode(config.factory_path)))
        _transacted_names(config.connections_to_transact, config.connections)
        return config

    if config.get('database_config') is None:
        raise ConfigError("missing database_config", key='database_config')
    if config.get('migration_path') is None:
        raise ConfigError("missing migration_path", key='migration_path')

    migration_paths = _as_path_sequence(config['migration_path'])
    _check_migration_paths(migration_paths)

    if config.get('factory_path') is None:
        raise ConfigError("missing factory_path", key='factory_path')
    factory_path = Path(os.fsdecode(config['factory_path']))
    _check_factory_path(factory_path)

    database_config = config['database_config']
    if not isinstance(database_config, Mapping) or not database_config:
        raise ConfigError("invalid database_config: expected a non-empty mapping",
                          key='database_config')
    connections = {
        str(name): ConnectionConfig.from_mapping(str(name), params)
        for name, params in database_config.items()
    }

    default_connection = config.get('default_connection')
    if default_connection is not None and default_connection not in connections:
        raise ConfigError(f"unknown default_connection: {default_connection}",
                          key='default_connection')

    transact = _transacted_names(config.get('connections_to_transact'), connections)

    seed = config.get('faker_seed')
    return TestDatabaseConfig(
        connections=connections,
        migration_paths=migration_paths,
        factory_path=factory_path,
        connections_to_transact=transact,
        migration_table=config.get('migration_table') or DEFAULT_MIGRATION_TABLE,
        faker_locale=config.get('faker_locale') or DEFAULT_FAKER_LOCALE,
        faker_seed=int(seed) if seed is not None else None,
        default_connection=default_connection,
    )
