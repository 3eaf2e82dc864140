"""
Database lifecycle: grant access, attach and deploy, then always detach.

A harness database is a data file that lives next to the test binaries. To
use it the file has to be opened up to the database engine's service
account, attached by connecting to it, published from a schema package, and
finally detached so the file can be reused, copied or deleted. The last step
must happen even when the publish fails.

Manifesto:
    - **Always detach:** ``provision_and_deploy`` wraps the deploy in a scoped
      release; detach runs on every exit path.
    - **Never mask the first failure:** a detach failure raised while
      cleaning up after a failed deploy is attached to the ``DeploymentError``
      (``suppressed``), not raised in its place.
    - **Fail before touching anything:** a permission failure aborts before
      the state leaves ``DETACHED``.
    - **No ambient state:** the descriptor and collaborators are passed in.

Architecture:
    ::

        ┌──────────┐ grant  ┌──────────┐ connect ┌──────────┐
        │ DETACHED │───────►│ATTACHING │────────►│ ATTACHED │
        └──────────┘        └──────────┘         └──────────┘
             ▲                    │ error              │ deploy (ok | error)
             │                    ▼                    ▼
             │  sp_detach_db ┌───────────┐◄────────────┘
             └───────────────│ DETACHING │
                             └───────────┘
                                  │ detach error
                                  ▼
                               ATTACHED

    Detach (against ``master``, attach-free, no pooling, autocommit):

    1. ``SELECT DB_ID(?)``; NULL means nothing to do
    2. ``KILL`` every other session bound to the catalog
    3. ``ALTER DATABASE … SET SINGLE_USER WITH ROLLBACK IMMEDIATE``
    4. ``EXEC sp_detach_db``

Guardrails:
    ❌ DON'T: run two lifecycles against the same catalog concurrently
    ✅ DO: hold a lock per catalog around provision/detach if callers race

Tags:
    lifecycle, state-machine, attach, detach, deploy, cleanup, dbharness
"""

from __future__ import annotations

from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from dbharness.core.errors import (
    ConfigurationError,
    DeploymentError,
    DetachError,
    LifecycleError,
    PermissionGrantError,
)
from dbharness.core.logging import LogContext, get_logger
from dbharness.core.protocols import (
    ConnectionOpener,
    DeployerFactory,
    DeploymentObserver,
    PermissionGranter,
    PooledConnectionOpener,
)
from dbharness.core.settings import HarnessSettings, default_data_directory
from dbharness.database.deployer import DeployOptions, LoggingDeploymentObserver, sqlpackage_factory
from dbharness.database.descriptor import ConnectionDescriptor, companion_log_path
from dbharness.database.executor import Command, QueryExecutor, SqlAlchemyConnector
from dbharness.database.permissions import IcaclsPermissionGranter, current_principal

logger = get_logger(__name__)

DEFAULT_SERVICE_ACCOUNT = "NT Service\\MSSQL$SQLEXPRESS"


class LifecycleState(str, Enum):
    """Attachment state of the target catalog."""

    DETACHED = "detached"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    DETACHING = "detaching"


def _quote_identifier(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


def _statement(text: str, parameters: Any = None) -> Callable[[Command], None]:
    def prepare(command: Command) -> None:
        command.text = text
        command.parameters = parameters

    return prepare


class DatabaseLifecycleManager:
    """Provisions, deploys and detaches one target database.

    Parameters
    ----------
    descriptor
        Target connection: data source, catalog and attach file.
    data_directory
        Replacement for ``|DataDirectory|`` in the attach path.
    service_account
        Principal the database engine runs as; granted access to the files.
    opener
        ``(descriptor, autocommit) -> DB-API connection``. If it also has
        ``dispose(descriptor)``, the target's pooled connections are dropped
        after every detach.
    deployer_factory
        ``deploy-time connection string -> SchemaDeployer``.
    granter
        Object with ``grant(path, principal, full_control)``.
    observer
        Receives deployer messages and progress.
    options
        Publish options handed to the deployer.
    principal
        Invoking principal; defaults to the current user.
    """

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        *,
        data_directory: str | Path | None = None,
        service_account: str = DEFAULT_SERVICE_ACCOUNT,
        opener: ConnectionOpener | None = None,
        deployer_factory: DeployerFactory | None = None,
        granter: PermissionGranter | None = None,
        observer: DeploymentObserver | None = None,
        options: DeployOptions | None = None,
        principal: str | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.data_directory = Path(data_directory) if data_directory is not None else default_data_directory()
        self.service_account = service_account
        self.options = options or DeployOptions()
        self.principal = principal
        self.state = LifecycleState.DETACHED

        self._opener = opener or SqlAlchemyConnector(data_directory=self.data_directory)
        self._deployer_factory = deployer_factory or sqlpackage_factory()
        self._granter = granter or IcaclsPermissionGranter()
        self._observer = observer or LoggingDeploymentObserver(descriptor.catalog)
        self._executor = QueryExecutor(descriptor, self._opener)
        self._master = QueryExecutor(
            descriptor.without_attach_file().with_pooling(False).with_catalog("master"),
            self._opener,
            autocommit=True,
        )

    @classmethod
    def from_settings(cls, settings: HarnessSettings, **overrides: Any) -> DatabaseLifecycleManager:
        """Build a manager (and its default collaborators) from settings."""
        descriptor = ConnectionDescriptor.parse(settings.require_connection_string())
        values: dict[str, Any] = {
            "data_directory": settings.data_directory,
            "service_account": settings.service_account,
            "opener": SqlAlchemyConnector(settings.odbc_driver, settings.data_directory),
            "deployer_factory": sqlpackage_factory(settings.sqlpackage_path, settings.command_timeout),
            "granter": IcaclsPermissionGranter(settings.icacls_path, settings.command_timeout),
        }
        values.update(overrides)
        return cls(descriptor, **values)

    # ── Properties ───────────────────────────────────────────────────

    @property
    def executor(self) -> QueryExecutor:
        """Executor bound to the target database."""
        return self._executor

    @property
    def catalog(self) -> str:
        if not self.descriptor.catalog:
            raise ConfigurationError("Connection string does not specify an Initial Catalog.")
        return self.descriptor.catalog

    @property
    def data_file_path(self) -> str:
        return self.descriptor.attach_file_path(self.data_directory)

    @property
    def log_file_path(self) -> str:
        return companion_log_path(self.data_file_path)

    # ── Operations ───────────────────────────────────────────────────

    def provision_and_deploy(self, package_path: str | Path) -> None:
        """Grant access, attach, deploy ``package_path``, then detach.

        Raises:
            PermissionGrantError: access could not be granted; nothing else ran.
            DeploymentError: the deploy failed, including errors raised by the
                deployer factory (detach was still attempted; a detach
                failure is in ``suppressed``).
            DetachError: the deploy succeeded but detaching failed.
        """
        catalog = self.catalog
        with LogContext(catalog=catalog):
            logger.info("lifecycle.provision_started", package=str(package_path))
            self.grant_file_access_for_attach()
            with self._detach_on_exit():
                self.deploy(package_path)
            logger.info("lifecycle.provision_completed", package=str(package_path))

    def grant_file_access_for_attach(self) -> None:
        """Give the invoking principal and the service account full control
        of the data file and its log file."""
        if self.state is not LifecycleState.DETACHED:
            raise LifecycleError(f"Cannot grant file access while {self.state.value}")

        principals = [self.principal or current_principal(), self.service_account]
        for path in (self.data_file_path, self.log_file_path):
            for principal in principals:
                try:
                    self._granter.grant(path, principal, True)
                except PermissionGrantError:
                    raise
                except Exception as exc:
                    raise PermissionGrantError(
                        f"Failed to grant {principal} access to {path}: {exc}",
                        cause=exc,
                    ).with_context(path=path) from exc

    def deploy(self, package_path: str | Path) -> None:
        """Attach by connecting, then publish the package to the catalog."""
        catalog = self.catalog
        self._transition(LifecycleState.ATTACHING)
        try:
            # Opening a connection with AttachDbFilename attaches the file
            with self._executor.connection():
                self._transition(LifecycleState.ATTACHED)
                deployer = self._deployer_factory(self.descriptor.for_deployment().to_connection_string())
                package = deployer.load(str(package_path))
                deployer.deploy(
                    package,
                    catalog,
                    self.options,
                    self._observer.on_message,
                    self._observer.on_progress,
                )
        except DeploymentError:
            raise
        except Exception as exc:
            raise DeploymentError(
                f"Deploying {package_path} to {catalog} failed: {exc}",
                cause=exc,
            ).with_context(catalog=catalog, path=str(package_path)) from exc
        logger.info("lifecycle.deployed", catalog=catalog, package=str(package_path))

    def detach(self) -> None:
        """Detach the catalog, killing its sessions first. No-op if it is not attached.

        Raises:
            DetachError: the catalog may still be attached.
        """
        self._transition(LifecycleState.DETACHING)
        try:
            self._detach_catalog()
        except DetachError:
            self._transition(LifecycleState.ATTACHED)
            raise
        self._transition(LifecycleState.DETACHED)
        # Pooled sessions on the catalog were killed; the next attach needs a new login
        if isinstance(self._opener, PooledConnectionOpener):
            self._opener.dispose(self.descriptor)

    # ── Internals ────────────────────────────────────────────────────

    @contextmanager
    def _detach_on_exit(self) -> Iterator[None]:
        primary: BaseException | None = None
        try:
            yield
        except BaseException as exc:
            primary = exc
            raise
        finally:
            self._release(primary)

    def _release(self, primary: BaseException | None) -> None:
        try:
            self.detach()
        except DetachError as cleanup_error:
            if primary is None:
                raise
            logger.error(
                "lifecycle.cleanup_failed",
                error=cleanup_error,
                primary_error=str(primary),
            )
            if isinstance(primary, LifecycleError):
                primary.add_suppressed(cleanup_error)
            else:
                primary.add_note(f"Detach during cleanup also failed: {cleanup_error}")

    def _detach_catalog(self) -> None:
        catalog = self.catalog
        try:
            database_id = self._master.get_single_result(
                _statement("SELECT DB_ID(?)", (catalog,)),
                lambda row: row.get(0, Optional[int]),
            )
            if database_id is None:
                logger.info("detach.skipped", catalog=catalog, reason="not attached")
                return

            sessions = self._master.get_results(
                _statement(
                    "SELECT session_id FROM sys.dm_exec_sessions "
                    "WHERE database_id = DB_ID(?) AND session_id <> @@SPID",
                    (catalog,),
                ),
                lambda row: row.get(0, int),
            )
            for session_id in sessions:
                self._master.execute_non_query(_statement(f"KILL {int(session_id)}"))
            logger.debug("detach.sessions_killed", catalog=catalog, count=len(sessions))

            self._master.execute_non_query(
                _statement(
                    f"ALTER DATABASE {_quote_identifier(catalog)} "
                    "SET SINGLE_USER WITH ROLLBACK IMMEDIATE"
                )
            )
            self._master.execute_non_query(
                _statement("EXEC master.dbo.sp_detach_db @dbname = ?, @skipchecks = ?", (catalog, "false"))
            )
        except DetachError:
            raise
        except Exception as exc:
            raise DetachError(f"Detaching {catalog} failed: {exc}", cause=exc).with_context(
                catalog=catalog
            ) from exc
        logger.info("detach.completed", catalog=catalog)

    def _transition(self, state: LifecycleState) -> None:
        logger.debug("lifecycle.transition", source=self.state.value, target=state.value)
        self.state = state


__all__ = [
    "DEFAULT_SERVICE_ACCOUNT",
    "DatabaseLifecycleManager",
    "LifecycleState",
]
