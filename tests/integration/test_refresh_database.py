"""
Integration tests for the refresh/rollback lifecycle.

These run migrations and factories against real sqlite databases, either
through the ``database`` fixture or by driving ``TestDatabaseContext``
directly when a test needs to observe the database after rollback.
"""

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError

from dbunit import (
    ConfigError,
    ConnectionConfig,
    TestDatabaseConfig,
    TestDatabaseContext,
    TransactionError,
    refresh_database,
)
from tests.fixtures import FACTORIES_DIR, MIGRATIONS_DIR, sqlite_memory
from tests.fixtures.models import Post, User


def count_committed(url, table):
    """Count rows through an engine that shares nothing with the context."""
    engine = create_engine(url)
    try:
        with engine.connect() as conn:
            return conn.execute(text(f"SELECT count(*) FROM {table}")).scalar_one()
    finally:
        engine.dispose()


class TestDatabaseFixture:

    def test_users_table_is_empty_after_refresh(self, database):
        assert database.table('users') == []
        database.assert_database_count('users', 0)

    def test_create_then_assert(self, database):
        database.factory(User).create(name='John Yu', email='johnyu@example.com')

        database.assert_database_has('users', {'name': 'John Yu', 'email': 'johnyu@example.com'})
        database.assert_database_missing('users', {'name': 'Jane Doe'})

    def test_previous_test_left_nothing_behind(self, database):
        database.assert_database_missing('users', {'name': 'John Yu'})

    def test_make_does_not_persist(self, database):
        users = database.factory(User, 5).make()

        assert len(users) == 5
        assert len({user.email for user in users}) == 5
        assert all(user.id is None for user in users)
        assert database.table('users') == []

    def test_failed_assertion_is_a_test_failure(self, database):
        with pytest.raises(AssertionError, match=r"\[users\]"):
            database.assert_database_has('users', {'name': 'John Yu'})

    def test_assertions_chain(self, database):
        database.prepare_model_data(User, [
            {'name': 'A', 'email': 'a@example.com'},
            {'name': 'B', 'email': 'b@example.com'},
        ])

        (database
            .assert_database_count('users', 2)
            .assert_database_has('users', {'name': 'A'})
            .assert_database_missing('users', {'name': 'C'}))

    def test_migration_table_records_applied_files(self, database):
        rows = database.table('migration')
        assert [(row['migration'], row['batch']) for row in rows] == [
            ('2024_01_15_100000_create_users_table', 1),
        ]

    def test_session_sees_factory_rows(self, database):
        user = database.factory(User).create()
        assert database.session().get(User, user.id) is user

    def test_failed_flush_keeps_earlier_rows(self, database):
        database.factory(User).create(name='First', email='dup@example.com')
        with pytest.raises(IntegrityError):
            database.factory(User).create(name='Second', email='dup@example.com')
        database.session().rollback()

        assert database.connection().in_transaction()
        database.assert_database_has('users', {'name': 'First'})
        database.assert_database_missing('users', {'name': 'Second'})

    def test_factories_usable_after_failed_flush(self, database):
        database.factory(User).create(email='dup@example.com')
        with pytest.raises(IntegrityError):
            database.factory(User).create(email='dup@example.com')
        database.session().rollback()

        database.factory(User).create(name='After')
        database.assert_database_count('users', 2)


class TestLifecycle:

    def test_rollback_discards_rows(self, file_config, tmp_path):
        url = f"sqlite:///{tmp_path / 'test.db'}"
        context = refresh_database(file_config)
        try:
            context.factory(User).create(name='John Yu', email='johnyu@example.com')
            context.assert_database_has('users', {'name': 'John Yu'})

            context.rollback_database()

            assert context.table('users') == []
            assert count_committed(url, 'users') == 0
        finally:
            context.close()

    def test_session_commit_after_failed_flush_is_rolled_back(self, file_config, tmp_path):
        url = f"sqlite:///{tmp_path / 'test.db'}"
        context = refresh_database(file_config)
        try:
            context.factory(User).create(name='First', email='dup@example.com')
            with pytest.raises(IntegrityError):
                context.factory(User).create(name='Second', email='dup@example.com')
            context.session().rollback()
            context.factory(User).create(name='After')
            context.session().commit()
            context.assert_database_count('users', 2)

            context.rollback_database()
        finally:
            context.close()

        assert count_committed(url, 'users') == 0

    def test_rollback_twice_is_safe(self, memory_config):
        context = refresh_database(memory_config)
        context.rollback_database()
        context.rollback_database()
        context.close()

    def test_second_refresh_migrates_nothing(self, file_config):
        first = refresh_database(file_config)
        assert first.migrated == [
            '2024_01_15_100000_create_users_table',
            '2024_02_01_090000_create_posts_table',
        ]
        first.close()

        second = refresh_database(file_config)
        try:
            assert second.migrated == []
            second.assert_database_count('migration', 2)
        finally:
            second.close()

    def test_each_memory_context_is_isolated(self, memory_config):
        first = refresh_database(memory_config)
        second = refresh_database(memory_config)
        try:
            first.factory(User).create(name='only in first')
            second.assert_database_missing('users', {'name': 'only in first'})
        finally:
            first.close()
            second.close()

    def test_related_factories(self, file_config):
        with TestDatabaseContext(file_config) as context:
            post = context.factory(Post).create()

            context.assert_database_count('posts', 1)
            context.assert_database_has('users', {'id': post.user_id})

        assert context.manager is None
        assert context.guard is None

    def test_seeded_faker_is_reproducible(self, file_config):
        names = []
        for _ in range(2):
            with TestDatabaseContext(file_config) as context:
                names.append(context.factory(User).create().name)
        assert names[0] == names[1]

    def test_begin_while_active(self, memory_config):
        context = refresh_database(memory_config)
        try:
            with pytest.raises(TransactionError):
                context.begin_database_transaction()
        finally:
            context.close()

    def test_begin_again_after_rollback(self, memory_config):
        context = refresh_database(memory_config)
        try:
            context.rollback_database()
            context.begin_database_transaction()
            context.factory(User).create()
            context.assert_database_count('users', 1)
        finally:
            context.close()

    def test_use_before_refresh(self, memory_config):
        context = TestDatabaseContext(memory_config)
        with pytest.raises(RuntimeError, match="refresh_database"):
            context.factory(User)
        context.rollback_database()


class TestFailures:

    def test_config_error_before_any_connection(self, tmp_path):
        context = TestDatabaseContext({
            'database_config': {'default': sqlite_memory()},
            'migration_path': [str(tmp_path / 'missing')],
            'factory_path': str(FACTORIES_DIR),
        })

        with pytest.raises(ConfigError, match="migration directory not found"):
            context.refresh_database()
        assert context.manager is None

    def test_built_config_with_missing_directories(self, tmp_path):
        context = TestDatabaseContext(TestDatabaseConfig(
            connections={'default': ConnectionConfig(name='default', driver='sqlite')},
            migration_paths=(tmp_path / 'nope',),
            factory_path=tmp_path / 'nope_factories',
        ))

        with pytest.raises(ConfigError, match="migration directory not found"):
            context.refresh_database()
        assert context.manager is None

    def test_unknown_transacted_connection(self, memory_config):
        context = TestDatabaseContext(memory_config, connections_to_transact=['reporting'])
        with pytest.raises(ConfigError, match="connections_to_transact: reporting"):
            context.refresh_database()
        assert context.manager is None

    def test_broken_migration_aborts_setup(self, tmp_path, factory_dir):
        migrations = tmp_path / 'broken_migrations'
        migrations.mkdir()
        (migrations / '001_broken.py').write_text(
            "from alembic import op\n\n\ndef upgrade():\n    op.execute('CREATE TABLEZ x (id INTEGER)')\n"
        )
        context = TestDatabaseContext({
            'database_config': {'default': {'url': f"sqlite:///{tmp_path / 'broken.db'}"}},
            'migration_path': [str(MIGRATIONS_DIR), str(migrations)],
            'factory_path': str(factory_dir),
        })

        with pytest.raises(Exception, match="TABLEZ"):
            context.refresh_database()
        assert context.manager is None
        assert context.guard is None
        # migrations before the broken one stay applied
        assert count_committed(f"sqlite:///{tmp_path / 'broken.db'}", 'migration') == 1


class TestSeveralConnections:

    @pytest.fixture
    def dbunit_config(self, memory_config):
        memory_config['database_config']['reporting'] = sqlite_memory()
        return memory_config

    def test_default_connection_only(self, database):
        assert database.guard.names == ['default']
        assert not database.guard.has_connection('reporting')

    @pytest.mark.dbunit(connections=['default', 'reporting'])
    def test_marker_wraps_every_named_connection(self, database):
        assert database.guard.names == ['default', 'reporting']
        assert database.connection('reporting') is database.guard.connection('reporting')

    @pytest.mark.dbunit(connections=['reporting'])
    def test_migrations_still_run_on_default(self, database):
        assert database.guard.names == ['reporting']
        database.assert_database_count('users', 0)
