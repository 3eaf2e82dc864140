"""
Canonical protocol definitions for dbharness.

Every collaborator the harness talks to is described here by shape only:
the DB-API connection and cursor it drives, the schema deployer it hands a
package to, the permission granter that opens up the data files, and the
observer that receives deployer notifications. Any object with the right
methods works; tests pass plain ``sqlite3`` objects and mocks.

Architecture:
    ::

        protocols.py
        ├── Cursor              : DB-API cursor (description, execute, fetchone)
        ├── Connection          : DB-API connection (cursor, commit, close)
        ├── ConnectionOpener    : ConnectionDescriptor -> Connection
        ├── PooledConnectionOpener : ConnectionOpener that can drop pooled connections
        ├── SchemaDeployer      : load(path) / deploy(handle, catalog, ...)
        ├── DeployerFactory     : deploy-time connection string -> SchemaDeployer
        ├── PermissionGranter   : grant(path, principal, full_control)
        └── DeploymentObserver  : on_message / on_progress

Tags:
    protocol, connection, cursor, deployer, permissions, dbharness
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from dbharness.database.deployer import DeployOptions, PackageHandle
    from dbharness.database.descriptor import ConnectionDescriptor


# ---------------------------------------------------------------------------
# Database Connection Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class Cursor(Protocol):
    """Minimal DB-API 2.0 cursor used by the reader and executor."""

    @property
    def description(self) -> Sequence[Sequence[Any]] | None:
        """Column metadata; the first item of each entry is the column name."""
        ...

    @property
    def rowcount(self) -> int:
        ...

    def execute(self, sql: str, params: Any = ...) -> Any:
        ...

    def fetchone(self) -> Sequence[Any] | None:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class Connection(Protocol):
    """Minimal DB-API 2.0 connection."""

    def cursor(self) -> Cursor:
        ...

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...

    def close(self) -> None:
        ...


class ConnectionOpener(Protocol):
    """Opens a new DB-API connection for a descriptor."""

    def __call__(self, descriptor: ConnectionDescriptor, autocommit: bool = False) -> Connection:
        ...


@runtime_checkable
class PooledConnectionOpener(ConnectionOpener, Protocol):
    """Opener that keeps connections pooled between calls.

    ``dispose(descriptor)`` closes the pooled connections for one descriptor
    (all of them when ``descriptor`` is None). Sessions killed on the server
    must not be handed out again.
    """

    def dispose(self, descriptor: ConnectionDescriptor | None = None) -> None:
        ...


# ---------------------------------------------------------------------------
# Lifecycle collaborators
# ---------------------------------------------------------------------------


class DeploymentObserver(Protocol):
    """Receives notifications raised by a schema deployer."""

    def on_message(self, message: str) -> None:
        ...

    def on_progress(self, operation_id: str, status: str, message: str) -> None:
        ...


@runtime_checkable
class SchemaDeployer(Protocol):
    """
    Deploys a schema package to a target catalog.

    The package format and the deploy engine are opaque to the harness;
    ``load`` only has to return something ``deploy`` accepts back.
    """

    def load(self, path: str) -> PackageHandle:
        ...

    def deploy(
        self,
        package: PackageHandle,
        target_catalog: str,
        options: DeployOptions,
        on_message: Any,
        on_progress: Any,
    ) -> None:
        ...


class DeployerFactory(Protocol):
    """Builds a deployer bound to a deploy-time connection string."""

    def __call__(self, connection_string: str) -> SchemaDeployer:
        ...


@runtime_checkable
class PermissionGranter(Protocol):
    """Grants a principal access to a file."""

    def grant(self, path: str, principal: str, full_control: bool = True) -> None:
        ...


__all__ = [
    "Connection",
    "ConnectionOpener",
    "Cursor",
    "DeployerFactory",
    "DeploymentObserver",
    "PermissionGranter",
    "PooledConnectionOpener",
    "SchemaDeployer",
]
