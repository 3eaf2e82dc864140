"""Harness settings.

One ``HarnessSettings`` instance is built at startup (from keyword
arguments, ``DBHARNESS_*`` environment variables or a ``.env`` file) and
handed explicitly to whatever needs it. There is no process-wide connection
string: an empty one is only reported when something first tries to use it.

Examples:
    >>> settings = HarnessSettings(
    ...     connection_string="Data Source=(LocalDB)\\MSSQLLocalDB;"
    ...     "AttachDbFilename=|DataDirectory|Northwind.mdf;"
    ...     "Initial Catalog=Northwind;Integrated Security=True",
    ... )
    >>> settings.command_timeout
    600

Tags:
    settings, configuration, pydantic, environment, dbharness
"""

from __future__ import annotations

import sys
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from dbharness.core.errors import ConfigurationError
from dbharness.core.logging import configure_logging


def default_data_directory() -> Path:
    """Directory of the running program, substituted for ``|DataDirectory|``."""
    if sys.argv and sys.argv[0]:
        return Path(sys.argv[0]).resolve().parent
    return Path.cwd()


class HarnessSettings(BaseSettings):
    """Settings for provisioning and querying a harness database.

    Fields
    ──────
    connection_string : SqlClient-style ``key=value;`` connection string
    data_directory    : Replacement for ``|DataDirectory|`` in attach paths
    service_account   : Principal the database engine runs as
    odbc_driver       : ODBC driver name used by the default connector
    sqlpackage_path   : ``sqlpackage`` executable used by the default deployer
    icacls_path       : ``icacls`` executable used by the default granter
    command_timeout   : Seconds allowed for each external tool invocation
    log_level         : Structlog log level
    json_logs         : Force JSON (True) / console (False) output, None = auto
    """

    model_config = SettingsConfigDict(
        env_prefix="DBHARNESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Target database ─────────────────────────────────────────
    connection_string: str = ""
    data_directory: Path = Field(
        default_factory=default_data_directory,
        description="Directory substituted for |DataDirectory| in attach paths",
    )
    service_account: str = "NT Service\\MSSQL$SQLEXPRESS"

    # ── External tools ──────────────────────────────────────────
    odbc_driver: str = "ODBC Driver 18 for SQL Server"
    sqlpackage_path: str = "sqlpackage"
    icacls_path: str = "icacls"
    command_timeout: int = Field(default=600, gt=0)

    # ── Observability ───────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None

    def require_connection_string(self) -> str:
        """Return the connection string, or fail if it was never set."""
        if not self.connection_string.strip():
            raise ConfigurationError(
                "You must set up the connection string first "
                "(HarnessSettings.connection_string or DBHARNESS_CONNECTION_STRING)."
            )
        return self.connection_string

    def configure_logging(self) -> None:
        """Apply ``log_level`` / ``json_logs`` to structlog."""
        configure_logging(level=self.log_level, json_format=self.json_logs)
