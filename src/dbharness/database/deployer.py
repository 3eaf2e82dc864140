"""Schema package deployment via the ``sqlpackage`` CLI.

The harness never looks inside a schema package. It loads a handle, then
asks a ``SchemaDeployer`` to publish it to a catalog, forwarding the
deployer's messages and progress to an observer. ``SqlPackageDeployer`` is
the stock implementation: it shells out to ``sqlpackage /Action:Publish``
(no .NET interop, no extra Python dependency).

Key Concepts:
    PackageHandle: What ``load()`` returns: the resolved package path.
    DeployOptions: Pydantic model of publish options.
    SqlPackageDeployer: Subprocess wrapper around ``sqlpackage``.
    LoggingDeploymentObserver: Default observer; writes structlog events.

Architecture Decisions:
    - subprocess, not a binding: ``sqlpackage`` is the supported way to
      publish a dacpac outside .NET.
    - The deployer is bound to one connection string at construction,
      like the engine it fronts; the lifecycle builds it from the
      deploy-time (attach-free, non-pooled) descriptor.
    - Output is forwarded line by line as messages once the tool exits;
      progress is reported as Running → Completed | Faulted.

Tags:
    deploy, dacpac, sqlpackage, subprocess, schema
"""

from __future__ import annotations

import shutil
import subprocess
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from pydantic import BaseModel, Field

from dbharness.core.errors import DeploymentError
from dbharness.core.logging import get_logger
from dbharness.database.descriptor import ConnectionDescriptor

logger = get_logger(__name__)

MessageCallback = Callable[[str], None]
ProgressCallback = Callable[[str, str, str], None]


@dataclass(frozen=True)
class PackageHandle:
    """A loaded schema package."""

    path: str
    name: str


class DeployOptions(BaseModel):
    """Publish options handed to the deployer."""

    create_new_database: bool = Field(
        default=False,
        description="Drop and recreate the target instead of upgrading it in place",
    )
    block_on_possible_data_loss: bool = Field(
        default=True,
        description="Abort the publish if it could lose data",
    )
    properties: dict[str, str] = Field(
        default_factory=dict,
        description="Additional publish properties passed as /p:Name=Value",
    )


class LoggingDeploymentObserver:
    """Forwards deployer notifications to the structured log."""

    def __init__(self, catalog: str | None = None) -> None:
        self._log = logger.bind(catalog=catalog) if catalog else logger

    def on_message(self, message: str) -> None:
        self._log.debug("deploy.message", message=message)

    def on_progress(self, operation_id: str, status: str, message: str) -> None:
        self._log.info("deploy.progress", operation_id=operation_id, status=status, message=message)


class SqlPackageDeployer:
    """Publishes schema packages with the ``sqlpackage`` command-line tool.

    Parameters
    ----------
    connection_string
        SqlClient connection string of the target server. Its catalog is
        replaced by the ``target_catalog`` given to ``deploy``.
    executable
        ``sqlpackage`` binary name or path.
    timeout
        Seconds allowed for a single publish.
    """

    def __init__(
        self,
        connection_string: str,
        executable: str = "sqlpackage",
        timeout: int = 600,
    ) -> None:
        self.descriptor = ConnectionDescriptor.parse(connection_string)
        self.executable = executable
        self.timeout = timeout

    def load(self, path: str) -> PackageHandle:
        package = Path(path)
        if not package.is_file():
            raise DeploymentError(f"Schema package not found: {path}").with_context(path=str(path))
        resolved = package.resolve()
        return PackageHandle(path=str(resolved), name=resolved.stem)

    def deploy(
        self,
        package: PackageHandle,
        target_catalog: str,
        options: DeployOptions,
        on_message: MessageCallback,
        on_progress: ProgressCallback,
    ) -> None:
        operation_id = uuid.uuid4().hex[:12]
        cmd = self._build_command(package, target_catalog, options)

        on_progress(operation_id, "Running", f"Publishing {package.name} to {target_catalog}")
        logger.debug("sqlpackage.exec", operation_id=operation_id, package=package.path, catalog=target_catalog)

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            on_progress(operation_id, "Faulted", f"Timed out after {self.timeout}s")
            raise DeploymentError(
                f"sqlpackage timed out after {self.timeout}s publishing {package.name}",
                cause=exc,
            ).with_context(catalog=target_catalog, path=package.path) from exc

        for line in (result.stdout + result.stderr).splitlines():
            if line.strip():
                on_message(line.rstrip())

        if result.returncode != 0:
            on_progress(operation_id, "Faulted", f"sqlpackage exited with {result.returncode}")
            raise DeploymentError(
                f"sqlpackage failed (exit {result.returncode}) publishing {package.name}: "
                f"{result.stderr.strip() or result.stdout.strip()[-500:]}"
            ).with_context(catalog=target_catalog, path=package.path)

        on_progress(operation_id, "Completed", f"Published {package.name} to {target_catalog}")

    def _build_command(self, package: PackageHandle, target_catalog: str, options: DeployOptions) -> list[str]:
        executable = shutil.which(self.executable)
        if executable is None:
            raise DeploymentError(
                f"{self.executable!r} not found on PATH. Install it with:\n"
                "  dotnet tool install -g microsoft.sqlpackage"
            )
        target = self.descriptor.with_catalog(target_catalog)
        cmd = [
            executable,
            "/Action:Publish",
            f"/SourceFile:{package.path}",
            f"/TargetConnectionString:{target.to_connection_string()}",
            f"/p:CreateNewDatabase={options.create_new_database}",
            f"/p:BlockOnPossibleDataLoss={options.block_on_possible_data_loss}",
        ]
        cmd.extend(f"/p:{name}={value}" for name, value in options.properties.items())
        return cmd


def sqlpackage_factory(executable: str = "sqlpackage", timeout: int = 600) -> Callable[[str], SqlPackageDeployer]:
    """Deployer factory for ``DatabaseLifecycleManager``."""

    def create(connection_string: str) -> SqlPackageDeployer:
        return SqlPackageDeployer(connection_string, executable=executable, timeout=timeout)

    return create


__all__ = [
    "DeployOptions",
    "LoggingDeploymentObserver",
    "PackageHandle",
    "SqlPackageDeployer",
    "sqlpackage_factory",
]
