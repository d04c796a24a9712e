"""
Migration Runner

Applies schema migrations from one or more directories and records each
applied migration in a bookkeeping table (``migration`` by default) together
with the batch it ran in.

Migration files are ordinary Python modules written like Alembic revision
scripts::

    from alembic import op
    import sqlalchemy as sa

    def upgrade():
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('name', sa.String(255), nullable=False),
        )

    def downgrade():
        op.drop_table('users')

Files are discovered in the order the directories are given, then by
filename within each directory. Files whose name starts with an underscore
are ignored. The migration name is the filename without ``.py``.

Errors raised by a migration body (bad DDL, constraint failures) are not
caught; they propagate to the caller and abort the test setup.
"""

import importlib.util
import time
from collections import OrderedDict
from pathlib import Path
from types import ModuleType
from typing import Dict, Iterable, List, Optional

from alembic.operations import Operations
from alembic.runtime.migration import MigrationContext
from sqlalchemy import Column, Integer, MetaData, String, Table, func, inspect, select
from sqlalchemy.engine import Connection

from .config import DEFAULT_MIGRATION_TABLE
from .connection import ConnectionManager
from .exceptions import MigrationError
from .logging import LogCategory, get_logger


class MigrationRepository:
    """
    Bookkeeping table of applied migrations.

    Columns: ``id`` (autoincrement), ``migration`` (name) and ``batch``.
    Every method accepts an optional open connection so callers can record a
    migration inside the same transaction that applied it.
    """

    def __init__(self, manager: ConnectionManager, table: str = DEFAULT_MIGRATION_TABLE,
                 connection: Optional[str] = None):
        self.manager = manager
        self.table_name = table
        self.connection_name = connection
        self.logger = get_logger('migrations')
        self.table = Table(
            table,
            MetaData(),
            Column('id', Integer, primary_key=True, autoincrement=True),
            Column('migration', String(255), nullable=False),
            Column('batch', Integer, nullable=False),
        )

    @property
    def engine(self):
        return self.manager.engine(self.connection_name)

    def _execute(self, statement, connection: Optional[Connection] = None):
        if connection is None:
            with self.engine.begin() as conn:
                return self._execute(statement, conn)
        result = connection.execute(statement)
        return result.all() if result.returns_rows else None

    def create_repository(self) -> None:
        """Create the bookkeeping table if it does not exist yet."""
        with self.engine.begin() as conn:
            self.table.create(conn, checkfirst=True)
        self.logger.debug("Migration repository ready",
                          category=LogCategory.MIGRATION.value, table=self.table_name)

    def repository_exists(self) -> bool:
        with self.engine.connect() as conn:
            return inspect(conn).has_table(self.table_name)

    def get_ran(self) -> List[str]:
        """Names of applied migrations ordered by batch, then name."""
        statement = select(self.table.c.migration).order_by(
            self.table.c.batch, self.table.c.migration
        )
        return [row.migration for row in self._execute(statement)]

    def get_last(self) -> List[str]:
        """Names in the newest batch, newest first."""
        last_batch = self.get_last_batch_number()
        statement = (
            select(self.table.c.migration)
            .where(self.table.c.batch == last_batch)
            .order_by(self.table.c.migration.desc())
        )
        return [row.migration for row in self._execute(statement)]

    def get_last_batch_number(self) -> int:
        rows = self._execute(select(func.max(self.table.c.batch)))
        return rows[0][0] or 0

    def get_next_batch_number(self) -> int:
        return self.get_last_batch_number() + 1

    def log(self, name: str, batch: int, connection: Optional[Connection] = None) -> None:
        """Record that a migration ran."""
        self._execute(self.table.insert().values(migration=name, batch=batch), connection)

    def delete(self, name: str, connection: Optional[Connection] = None) -> None:
        """Remove a migration record."""
        self._execute(self.table.delete().where(self.table.c.migration == name), connection)


class Migrator:
    """
    Applies and reverts migration files tracked by a ``MigrationRepository``.

    Each migration runs in its own transaction on the repository connection,
    and its bookkeeping row is written in that same transaction.
    """

    def __init__(self, repository: MigrationRepository):
        self.repository = repository
        self.logger = get_logger('migrations')
        self._modules: Dict[Path, ModuleType] = {}

    def get_migration_files(self, paths: Iterable[Path]) -> "OrderedDict[str, Path]":
        """
        Discover migration files.

        Args:
            paths: Directories in the order they should be applied

        Returns:
            Ordered mapping of migration name to file path. A name found in
            more than one directory keeps its first occurrence.
        """
        files: "OrderedDict[str, Path]" = OrderedDict()
        for directory in paths:
            for path in sorted(Path(directory).glob('*.py'), key=lambda p: p.name):
                if path.name.startswith('_'):
                    continue
                files.setdefault(path.stem, path)
        return files

    def pending(self, paths: Iterable[Path]) -> List[str]:
        ran = set(self.repository.get_ran())
        return [name for name in self.get_migration_files(paths) if name not in ran]

    def run(self, paths: Iterable[Path], pretend: bool = False) -> List[str]:
        """
        Apply every pending migration as one new batch.

        Args:
            paths: Migration directories
            pretend: Only report what would run

        Returns:
            Names of the migrations applied (or that would be applied)
        """
        files = self.get_migration_files(paths)
        ran = set(self.repository.get_ran())
        pending = [name for name in files if name not in ran]

        if not pending:
            self.logger.info("Nothing to migrate", category=LogCategory.MIGRATION.value)
            return []

        if pretend:
            for name in pending:
                self.logger.info("Would apply migration",
                                 category=LogCategory.MIGRATION.value, migration=name)
            return pending

        batch = self.repository.get_next_batch_number()
        self.logger.info(
            "Running migrations",
            category=LogCategory.MIGRATION.value,
            pending=len(pending),
            batch=batch,
        )
        for name in pending:
            self._run_up(name, files[name], batch)
        return pending

    def rollback(self, paths: Iterable[Path]) -> List[str]:
        """Revert the newest batch, newest migration first."""
        return self._run_down_all(self.repository.get_last(), paths)

    def reset(self, paths: Iterable[Path]) -> List[str]:
        """Revert every applied migration."""
        return self._run_down_all(list(reversed(self.repository.get_ran())), paths)

    def _run_down_all(self, names: List[str], paths: Iterable[Path]) -> List[str]:
        if not names:
            self.logger.info("Nothing to rollback", category=LogCategory.MIGRATION.value)
            return []

        files = self.get_migration_files(paths)
        for name in names:
            path = files.get(name)
            if path is None:
                raise MigrationError(f"migration not found: {name}", migration=name)
            self._run_down(name, path)
        return names

    def _run_up(self, name: str, path: Path, batch: int) -> None:
        upgrade = self._resolve(name, path, 'upgrade')
        start_time = time.time()

        with self.repository.engine.begin() as connection:
            self._apply(connection, upgrade)
            self.repository.log(name, batch, connection=connection)

        self.logger.info(
            "Migrated",
            category=LogCategory.MIGRATION.value,
            migration=name,
            batch=batch,
            duration_ms=int((time.time() - start_time) * 1000),
        )

    def _run_down(self, name: str, path: Path) -> None:
        downgrade = self._resolve(name, path, 'downgrade')
        start_time = time.time()

        with self.repository.engine.begin() as connection:
            self._apply(connection, downgrade)
            self.repository.delete(name, connection=connection)

        self.logger.info(
            "Rolled back",
            category=LogCategory.MIGRATION.value,
            migration=name,
            duration_ms=int((time.time() - start_time) * 1000),
        )

    @staticmethod
    def _apply(connection: Connection, operation) -> None:
        # Makes ``alembic.op`` usable inside the migration body
        context = MigrationContext.configure(connection)
        with Operations.context(context):
            operation()

    def _resolve(self, name: str, path: Path, attribute: str):
        module = self._load(name, path)
        operation = getattr(module, attribute, None)
        if not callable(operation):
            raise MigrationError(f"migration {name} has no {attribute}() function",
                                 migration=name)
        return operation

    def _load(self, name: str, path: Path) -> ModuleType:
        module = self._modules.get(path)
        if module is not None:
            return module

        spec = importlib.util.spec_from_file_location(f"dbunit_migrations.{name}", path)
        if spec is None or spec.loader is None:
            raise MigrationError(f"cannot load migration {name} from {path}", migration=name)
        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            raise MigrationError(f"cannot load migration {name}: {exc}", migration=name) from exc

        self._modules[path] = module
        return module
