"""Query execution with scoped connections.

Every call opens its own connection, creates one cursor, lets the caller
prepare the statement, executes it and materialises the result. Connection
and cursor are closed before the call returns, on success and on error
(including errors raised by the caller's projection).

Execution shapes
----------------
=================================  ===========================================
Method                             Returns
=================================  ===========================================
``execute_non_query``              affected row count (after commit)
``execute_reader``                 whatever ``function(cursor)`` returns
``execute_reader_with_connection`` whatever ``function(conn, cursor)`` returns
``get_single_result``              projection of the first row, or ``default``
``get_results``                    ``list`` of projected rows, in fetch order
``get_keyed_results``              ``dict`` keyed by ``key_selector(value)``
=================================  ===========================================

Usage
-----
::

    executor = QueryExecutor(ConnectionDescriptor.parse(conn_str))

    def prepare(command: Command) -> None:
        command.text = "SELECT Id, Name FROM Customers WHERE Region = ?"
        command.parameters = ("EU",)

    names = executor.get_results(prepare, lambda row: row.get("Name", str))

The default opener is ``SqlAlchemyConnector`` (``mssql+pyodbc``); pass any
callable ``(descriptor, autocommit) -> DB-API connection`` to use another
driver.
"""

from __future__ import annotations

from contextlib import closing, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine
from sqlalchemy.pool import NullPool

from dbharness.core.errors import ArgumentError
from dbharness.core.logging import get_logger
from dbharness.core.protocols import Connection, ConnectionOpener, Cursor
from dbharness.database.descriptor import ConnectionDescriptor
from dbharness.database.reader import RowReader, read_dict, read_list

logger = get_logger(__name__)

T = TypeVar("T")
K = TypeVar("K")


# ── Command ──────────────────────────────────────────────────────────────


@dataclass
class Command:
    """Statement text and parameters, filled in by a prepare callback."""

    text: str | None = None
    parameters: Any = None

    def execute(self, cursor: Cursor) -> None:
        if not self.text:
            raise ArgumentError("command.text", "The prepare callback must set command.text")
        logger.debug("query.execute", statement=self.text[:200])
        if self.parameters is None:
            cursor.execute(self.text)
        else:
            cursor.execute(self.text, self.parameters)


PrepareFn = Callable[[Command], None]


# ── Default connection opener ────────────────────────────────────────────


class SqlAlchemyConnector:
    """Opens raw DB-API connections through SQLAlchemy engines.

    One engine per distinct ODBC string. Descriptors with ``Pooling=False``
    get a ``NullPool`` engine so closing the connection really closes it.
    Pooled engines ping on checkout, so a session killed by a detach is
    replaced by a fresh login instead of being handed back.
    """

    def __init__(
        self,
        odbc_driver: str = "ODBC Driver 18 for SQL Server",
        data_directory: str | Path | None = None,
        *,
        echo: bool = False,
    ) -> None:
        self.odbc_driver = odbc_driver
        self.data_directory = data_directory
        self.echo = echo
        self._engines: dict[tuple[str, bool, bool], Engine] = {}

    def __call__(self, descriptor: ConnectionDescriptor, autocommit: bool = False) -> Connection:
        return self.engine_for(descriptor, autocommit=autocommit).raw_connection()

    def engine_for(self, descriptor: ConnectionDescriptor, *, autocommit: bool = False) -> Engine:
        odbc = descriptor.to_odbc(self.odbc_driver, self.data_directory)
        key = (odbc, descriptor.pooling_enabled, autocommit)
        engine = self._engines.get(key)
        if engine is None:
            kwargs: dict[str, Any] = {}
            if descriptor.pooling_enabled:
                kwargs["pool_pre_ping"] = True
            else:
                kwargs["poolclass"] = NullPool
            if autocommit:
                kwargs["isolation_level"] = "AUTOCOMMIT"
            url = URL.create("mssql+pyodbc", query={"odbc_connect": odbc})
            engine = create_engine(url, echo=self.echo, **kwargs)
            self._engines[key] = engine
            logger.debug(
                "connector.engine_created",
                server=descriptor.data_source,
                catalog=descriptor.catalog,
                pooling=descriptor.pooling_enabled,
            )
        return engine

    def dispose(self, descriptor: ConnectionDescriptor | None = None) -> None:
        """Dispose the engines for ``descriptor``, or every engine when None.

        Disposing closes the pooled connections; the next call for the same
        descriptor builds a new engine and logs in again.
        """
        odbc = None if descriptor is None else descriptor.to_odbc(self.odbc_driver, self.data_directory)
        for key in [key for key in self._engines if odbc is None or key[0] == odbc]:
            self._engines.pop(key).dispose()


# ── QueryExecutor ────────────────────────────────────────────────────────


class QueryExecutor:
    """Runs statements against one target database."""

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        opener: ConnectionOpener | None = None,
        *,
        autocommit: bool = False,
    ) -> None:
        if descriptor is None:
            raise ArgumentError("descriptor")
        self.descriptor = descriptor
        self.autocommit = autocommit
        self._opener = opener or SqlAlchemyConnector()

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        """Open a connection for the duration of the ``with`` block."""
        conn = self._opener(self.descriptor, autocommit=self.autocommit)
        try:
            yield conn
        finally:
            conn.close()

    # ── Execution shapes ─────────────────────────────────────────────

    def execute_non_query(self, prepare: PrepareFn) -> int:
        """Execute a statement and return the affected row count."""
        _require(prepare, "prepare")

        def run(conn: Connection, cursor: Cursor) -> int:
            _prepared(prepare).execute(cursor)
            rows = cursor.rowcount
            conn.commit()
            return rows

        return self._process_command(run)

    def execute_reader(self, prepare: PrepareFn, function: Callable[[Cursor], T]) -> T:
        """Execute a query and hand the open cursor to ``function``."""
        _require(prepare, "prepare")
        _require(function, "function")

        def run(conn: Connection, cursor: Cursor) -> T:
            _prepared(prepare).execute(cursor)
            return function(cursor)

        return self._process_command(run)

    def execute_reader_with_connection(
        self,
        prepare: PrepareFn,
        function: Callable[[Connection, Cursor], T],
    ) -> T:
        """Like ``execute_reader`` but ``function`` also gets the connection."""
        _require(prepare, "prepare")
        _require(function, "function")

        def run(conn: Connection, cursor: Cursor) -> T:
            _prepared(prepare).execute(cursor)
            return function(conn, cursor)

        return self._process_command(run)

    def get_single_result(
        self,
        prepare: PrepareFn,
        projection: Callable[[RowReader], T],
        default: T | None = None,
    ) -> T | None:
        """Project the first row, or return ``default`` when there is none."""
        _require(projection, "projection")

        def first(cursor: Cursor) -> T | None:
            reader = RowReader(cursor)
            if reader.advance():
                return projection(reader)
            return default

        return self.execute_reader(prepare, first)

    def get_results(self, prepare: PrepareFn, projection: Callable[[RowReader], T]) -> list[T]:
        _require(projection, "projection")
        return self.execute_reader(prepare, lambda cursor: read_list(cursor, projection))

    def get_keyed_results(
        self,
        prepare: PrepareFn,
        projection: Callable[[RowReader], T],
        key_selector: Callable[[T], K],
    ) -> dict[K, T]:
        """Project every row into a dict; duplicate keys raise ``DuplicateKeyError``."""
        _require(projection, "projection")
        _require(key_selector, "key_selector")
        return self.execute_reader(
            prepare, lambda cursor: read_dict(cursor, projection, key_selector)
        )

    # ── Internals ────────────────────────────────────────────────────

    def _process_command(self, function: Callable[[Connection, Cursor], T]) -> T:
        _require(function, "function")
        with self.connection() as conn, closing(conn.cursor()) as cursor:
            return function(conn, cursor)


def _require(value: Any, name: str) -> None:
    if value is None:
        raise ArgumentError(name)


def _prepared(prepare: PrepareFn) -> Command:
    command = Command()
    prepare(command)
    return command


__all__ = [
    "Command",
    "QueryExecutor",
    "SqlAlchemyConnector",
]
