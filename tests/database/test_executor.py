"""Tests for dbharness.database.executor."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.pool import NullPool

from dbharness.core.errors import ArgumentError, DuplicateKeyError
from dbharness.database.descriptor import ConnectionDescriptor
from dbharness.database.executor import Command, QueryExecutor, SqlAlchemyConnector

DESCRIPTOR = ConnectionDescriptor.parse("Data Source=local;Initial Catalog=T")


def select(sql, *params):
    def prepare(command):
        command.text = sql
        if params:
            command.parameters = params

    return prepare


@pytest.fixture
def executor(sqlite_opener):
    return QueryExecutor(DESCRIPTOR, sqlite_opener)


class TestCommand:
    def test_requires_text(self):
        with pytest.raises(ArgumentError) as exc_info:
            Command().execute(MagicMock())
        assert exc_info.value.argument == "command.text"

    def test_parameters_passed_when_set(self):
        cursor = MagicMock()
        Command("SELECT ?", (1,)).execute(cursor)
        cursor.execute.assert_called_once_with("SELECT ?", (1,))

    def test_no_parameters(self):
        cursor = MagicMock()
        Command("SELECT 1").execute(cursor)
        cursor.execute.assert_called_once_with("SELECT 1")


class TestQueryExecutor:
    def test_requires_descriptor(self):
        with pytest.raises(ArgumentError):
            QueryExecutor(None)

    def test_get_results(self, executor, sqlite_opener):
        names = executor.get_results(
            select("SELECT Name FROM users WHERE Region = ? ORDER BY UserId", "EU"),
            lambda row: row.get("name", str),
        )
        assert names == ["ada", "cleo"]
        assert sqlite_opener.all_closed
        assert all(c.closed for conn in sqlite_opener.opened for c in conn.cursors)

    def test_get_single_result(self, executor):
        name = executor.get_single_result(
            select("SELECT Name FROM users WHERE UserId = ?", 2), lambda row: row.get("Name", str)
        )
        assert name == "brian"

    def test_get_single_result_default(self, executor):
        result = executor.get_single_result(
            select("SELECT Name FROM users WHERE UserId = ?", 99),
            lambda row: row.get("Name", str),
            default="nobody",
        )
        assert result == "nobody"

    def test_get_keyed_results(self, executor):
        users = executor.get_keyed_results(
            select("SELECT UserId, Name FROM users"),
            lambda row: (row.get("UserId", int), row.get("Name", str)),
            lambda user: user[0],
        )
        assert sorted(users) == [1, 2, 3]

    def test_get_keyed_results_duplicate(self, executor, sqlite_opener):
        with pytest.raises(DuplicateKeyError):
            executor.get_keyed_results(
                select("SELECT Region FROM users"),
                lambda row: row.get("Region", str),
                lambda region: region,
            )
        assert sqlite_opener.all_closed

    def test_execute_non_query_commits(self, executor):
        changed = executor.execute_non_query(
            select("UPDATE users SET Region = ? WHERE Region = ?", "APAC", "EU")
        )
        assert changed == 2
        regions = executor.get_results(
            select("SELECT Region FROM users ORDER BY UserId"), lambda row: row.get(0, str)
        )
        assert regions == ["APAC", "US", "APAC"]

    def test_execute_reader(self, executor):
        count = executor.execute_reader(
            select("SELECT COUNT(*) FROM users"), lambda cursor: cursor.fetchone()[0]
        )
        assert count == 3

    def test_execute_reader_with_connection(self, executor, sqlite_opener):
        seen = executor.execute_reader_with_connection(
            select("SELECT 1"), lambda conn, cursor: (conn, cursor.fetchone()[0])
        )
        assert seen == (sqlite_opener.opened[0], 1)

    def test_closes_when_projection_raises(self, executor, sqlite_opener):
        def projection(row):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            executor.get_results(select("SELECT Name FROM users"), projection)
        assert len(sqlite_opener.opened) == 1
        assert sqlite_opener.all_closed
        assert sqlite_opener.opened[0].cursors[0].closed

    def test_closes_when_prepare_raises(self, executor, sqlite_opener):
        def prepare(command):
            raise ValueError("bad prepare")

        with pytest.raises(ValueError):
            executor.execute_non_query(prepare)
        assert sqlite_opener.all_closed

    def test_each_call_opens_its_own_connection(self, executor, sqlite_opener):
        executor.execute_reader(select("SELECT 1"), lambda cursor: None)
        executor.execute_reader(select("SELECT 1"), lambda cursor: None)
        assert len(sqlite_opener.opened) == 2

    @pytest.mark.parametrize(
        "call, argument",
        [
            (lambda e: e.execute_non_query(None), "prepare"),
            (lambda e: e.execute_reader(select("SELECT 1"), None), "function"),
            (lambda e: e.execute_reader_with_connection(None, lambda c, k: None), "prepare"),
            (lambda e: e.get_single_result(select("SELECT 1"), None), "projection"),
            (lambda e: e.get_results(select("SELECT 1"), None), "projection"),
            (lambda e: e.get_keyed_results(select("SELECT 1"), lambda r: r, None), "key_selector"),
        ],
    )
    def test_missing_callbacks(self, executor, sqlite_opener, call, argument):
        with pytest.raises(ArgumentError) as exc_info:
            call(executor)
        assert exc_info.value.argument == argument
        assert sqlite_opener.opened == []

    def test_autocommit_forwarded_to_opener(self):
        opener = MagicMock()
        executor = QueryExecutor(DESCRIPTOR, opener, autocommit=True)
        executor.execute_reader(select("SELECT 1"), lambda cursor: None)
        opener.assert_called_once_with(DESCRIPTOR, autocommit=True)
        opener.return_value.close.assert_called_once()


class TestSqlAlchemyConnector:
    def test_engine_per_descriptor_and_pooling(self):
        connector = SqlAlchemyConnector("ODBC Driver 18 for SQL Server", "/data")
        with patch("dbharness.database.executor.create_engine") as create_engine:
            pooled = connector.engine_for(DESCRIPTOR)
            again = connector.engine_for(DESCRIPTOR)
            connector.engine_for(DESCRIPTOR.with_pooling(False), autocommit=True)

        assert pooled is again
        assert create_engine.call_count == 2
        first_kwargs = create_engine.call_args_list[0].kwargs
        assert "poolclass" not in first_kwargs
        assert first_kwargs["pool_pre_ping"] is True
        second_kwargs = create_engine.call_args_list[1].kwargs
        assert second_kwargs["poolclass"] is NullPool
        assert second_kwargs["isolation_level"] == "AUTOCOMMIT"
        assert "pool_pre_ping" not in second_kwargs

    def test_url_carries_odbc_string(self):
        connector = SqlAlchemyConnector("ODBC Driver 18 for SQL Server")
        with patch("dbharness.database.executor.create_engine") as create_engine:
            connector.engine_for(DESCRIPTOR)
        url = create_engine.call_args.args[0]
        assert url.drivername == "mssql+pyodbc"
        assert url.query["odbc_connect"] == DESCRIPTOR.to_odbc("ODBC Driver 18 for SQL Server")

    def test_call_returns_raw_connection(self):
        connector = SqlAlchemyConnector()
        with patch("dbharness.database.executor.create_engine") as create_engine:
            conn = connector(DESCRIPTOR)
        assert conn is create_engine.return_value.raw_connection.return_value

    def test_dispose(self):
        connector = SqlAlchemyConnector()
        with patch("dbharness.database.executor.create_engine") as create_engine:
            connector.engine_for(DESCRIPTOR)
            connector.dispose()
        create_engine.return_value.dispose.assert_called_once()

    def test_dispose_one_descriptor(self):
        connector = SqlAlchemyConnector()
        master = DESCRIPTOR.with_catalog("master").with_pooling(False)
        with patch("dbharness.database.executor.create_engine", side_effect=lambda *a, **kw: MagicMock()):
            target_engine = connector.engine_for(DESCRIPTOR)
            master_engine = connector.engine_for(master, autocommit=True)

            connector.dispose(DESCRIPTOR)

            target_engine.dispose.assert_called_once()
            master_engine.dispose.assert_not_called()
            assert connector.engine_for(master, autocommit=True) is master_engine
            assert connector.engine_for(DESCRIPTOR) is not target_engine
