"""
dbharness - Ephemeral SQL Server databases for integration tests.

Provisions a database from a schema package (``.dacpac``), runs typed
queries against it and detaches it again, cleaning up even when the
deployment fails.

- dbharness.core: errors, logging, settings, protocols
- dbharness.database: connection descriptors, row coercion, query
  execution, lifecycle management
"""

__version__ = "0.1.0"

from dbharness.core.errors import (  # noqa: F401
    ArgumentError,
    ColumnNotFoundError,
    ConfigurationError,
    DeploymentError,
    DetachError,
    DuplicateKeyError,
    HarnessError,
    InvalidCastError,
    ParseError,
    PermissionGrantError,
)
from dbharness.core.settings import HarnessSettings  # noqa: F401
from dbharness.database import (  # noqa: F401
    Command,
    ConnectionDescriptor,
    DatabaseLifecycleManager,
    LifecycleState,
    QueryExecutor,
    RowReader,
)
