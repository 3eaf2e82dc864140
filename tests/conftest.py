"""
Shared pytest fixtures for dbharness tests.

This module provides:
- A file-backed SQLite database and opener for reader/executor tests
- ``FakeServer``: a scripted DB-API stand-in for the SQL Server statements
  the lifecycle issues (DB_ID, sessions, ALTER DATABASE, sp_detach_db)
- Recording deployer / granter collaborators

No SQL Server, sqlpackage or icacls is needed to run the suite.
"""

from __future__ import annotations

import sqlite3
import sys
from pathlib import Path
from typing import Any

import pytest

# Ensure dbharness package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dbharness.core.errors import DeploymentError  # noqa: E402


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark all tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# SQLite fixtures
# =============================================================================


@pytest.fixture
def sqlite_path(tmp_path: Path) -> Path:
    """SQLite file with a small ``users`` table."""
    path = tmp_path / "harness.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE users (
            UserId INTEGER PRIMARY KEY,
            Name TEXT NOT NULL,
            Status TEXT,
            Score REAL,
            Region TEXT
        );
        INSERT INTO users VALUES (1, 'ada', 'ACTIVE', 9.5, 'EU');
        INSERT INTO users VALUES (2, 'brian', 'SUSPENDED', NULL, 'US');
        INSERT INTO users VALUES (3, 'cleo', NULL, 7.25, 'EU');
        """
    )
    conn.commit()
    conn.close()
    return path


class TrackingSqliteOpener:
    """Opens SQLite connections and remembers them so tests can check closure."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.opened: list[TrackingConnection] = []

    def __call__(self, descriptor: Any, autocommit: bool = False) -> TrackingConnection:
        conn = TrackingConnection(sqlite3.connect(self.path))
        self.opened.append(conn)
        return conn

    @property
    def all_closed(self) -> bool:
        return all(conn.closed for conn in self.opened)


class TrackingConnection:
    def __init__(self, inner: sqlite3.Connection) -> None:
        self._inner = inner
        self.closed = False
        self.cursors: list[TrackingCursor] = []

    def cursor(self) -> TrackingCursor:
        cursor = TrackingCursor(self._inner.cursor())
        self.cursors.append(cursor)
        return cursor

    def commit(self) -> None:
        self._inner.commit()

    def rollback(self) -> None:
        self._inner.rollback()

    def close(self) -> None:
        self.closed = True
        self._inner.close()


class TrackingCursor:
    def __init__(self, inner: sqlite3.Cursor) -> None:
        self._inner = inner
        self.closed = False

    @property
    def description(self) -> Any:
        return self._inner.description

    @property
    def rowcount(self) -> int:
        return self._inner.rowcount

    def execute(self, sql: str, params: Any = ()) -> Any:
        return self._inner.execute(sql, params)

    def fetchone(self) -> Any:
        return self._inner.fetchone()

    def close(self) -> None:
        self.closed = True
        self._inner.close()


@pytest.fixture
def sqlite_opener(sqlite_path: Path) -> TrackingSqliteOpener:
    return TrackingSqliteOpener(sqlite_path)


# =============================================================================
# Fake SQL Server
# =============================================================================


class FakeCursor:
    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self.description: list[tuple[Any, ...]] | None = None
        self.rowcount = -1
        self._rows: list[tuple[Any, ...]] = []

    def execute(self, sql: str, params: Any = None) -> None:
        self.server.statements.append((sql, params))
        rows = self.server.respond(sql, params)
        self._rows = list(rows)
        self.description = [("column0",)] if rows else None
        self.rowcount = 0 if rows else 1

    def fetchone(self) -> tuple[Any, ...] | None:
        return self._rows.pop(0) if self._rows else None

    def close(self) -> None:
        pass


class FakeConnection:
    def __init__(self, server: FakeServer) -> None:
        self.server = server

    def cursor(self) -> FakeCursor:
        return FakeCursor(self.server)

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    def close(self) -> None:
        self.server.open_connections -= 1


class FakeServer:
    """Scripted server: answers the statements the lifecycle sends."""

    def __init__(
        self,
        *,
        attached: bool = False,
        sessions: tuple[int, ...] = (),
        fail_on: str | None = None,
    ) -> None:
        self.attached = attached
        self.sessions = sessions
        self.fail_on = fail_on
        self.statements: list[tuple[str, Any]] = []
        self.connections: list[tuple[Any, bool]] = []
        self.open_connections = 0
        self.disposed: list[Any] = []

    def __call__(self, descriptor: Any, autocommit: bool = False) -> FakeConnection:
        self.connections.append((descriptor, autocommit))
        self.open_connections += 1
        # Connecting with an attach file attaches the database
        if descriptor.attach_file is not None:
            self.attached = True
        return FakeConnection(self)

    def dispose(self, descriptor: Any = None) -> None:
        self.disposed.append(descriptor)

    def respond(self, sql: str, params: Any) -> list[tuple[Any, ...]]:
        if self.fail_on is not None and self.fail_on in sql:
            raise RuntimeError(f"server rejected: {sql}")
        if sql.startswith("SELECT DB_ID"):
            return [(7,)] if self.attached else [(None,)]
        if "dm_exec_sessions" in sql:
            return [(session,) for session in self.sessions]
        if "sp_detach_db" in sql:
            self.attached = False
        return []

    def executed(self, fragment: str) -> list[str]:
        return [sql for sql, _ in self.statements if fragment in sql]


@pytest.fixture
def fake_server() -> FakeServer:
    return FakeServer()


# =============================================================================
# Lifecycle collaborators
# =============================================================================


class RecordingGranter:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.grants: list[tuple[str, str, bool]] = []

    def grant(self, path: str, principal: str, full_control: bool = True) -> None:
        if self.fail:
            raise OSError(f"access denied: {path}")
        self.grants.append((path, principal, full_control))


class RecordingDeployer:
    """Schema deployer double; optionally fails the deploy call."""

    def __init__(self, connection_string: str, error: BaseException | None = None) -> None:
        self.connection_string = connection_string
        self.error = error
        self.deployed: list[tuple[Any, str]] = []

    def load(self, path: str) -> Any:
        return {"path": path}

    def deploy(self, package: Any, target_catalog: str, options: Any, on_message: Any, on_progress: Any) -> None:
        on_progress("op-1", "Running", "publishing")
        on_message("Creating tables")
        if self.error is not None:
            on_progress("op-1", "Faulted", str(self.error))
            raise self.error
        self.deployed.append((package, target_catalog))
        on_progress("op-1", "Completed", "published")


class DeployerFactory:
    def __init__(self, error: BaseException | None = None) -> None:
        self.error = error
        self.created: list[RecordingDeployer] = []

    def __call__(self, connection_string: str) -> RecordingDeployer:
        deployer = RecordingDeployer(connection_string, self.error)
        self.created.append(deployer)
        return deployer


@pytest.fixture
def granter() -> RecordingGranter:
    return RecordingGranter()


@pytest.fixture
def deployer_factory() -> DeployerFactory:
    return DeployerFactory()


@pytest.fixture
def failing_deployer_factory() -> DeployerFactory:
    return DeployerFactory(error=DeploymentError("publish failed: invalid object name"))


@pytest.fixture
def make_server() -> type[FakeServer]:
    """The ``FakeServer`` class, for tests that need a scripted variant."""
    return FakeServer


@pytest.fixture
def make_deployer_factory() -> type[DeployerFactory]:
    return DeployerFactory


@pytest.fixture
def make_granter() -> type[RecordingGranter]:
    return RecordingGranter
