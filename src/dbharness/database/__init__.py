"""Target database access: descriptors, typed rows, queries, lifecycle.

Architecture::

    descriptor.py   ConnectionDescriptor (parse / derive / serialise)
    coercion.py     Coercion variants + resolve_coercion()
    reader.py       RowReader, read_list / read_dict / read_dict_by_row
    executor.py     Command, QueryExecutor, SqlAlchemyConnector
    deployer.py     SqlPackageDeployer, DeployOptions, LoggingDeploymentObserver
    permissions.py  IcaclsPermissionGranter
    lifecycle.py    DatabaseLifecycleManager, LifecycleState
"""

from dbharness.database.coercion import resolve_coercion
from dbharness.database.deployer import (
    DeployOptions,
    LoggingDeploymentObserver,
    PackageHandle,
    SqlPackageDeployer,
)
from dbharness.database.descriptor import ConnectionDescriptor
from dbharness.database.executor import Command, QueryExecutor, SqlAlchemyConnector
from dbharness.database.lifecycle import DatabaseLifecycleManager, LifecycleState
from dbharness.database.permissions import IcaclsPermissionGranter
from dbharness.database.reader import RowReader, read_dict, read_dict_by_row, read_list

__all__ = [
    "Command",
    "ConnectionDescriptor",
    "DatabaseLifecycleManager",
    "DeployOptions",
    "IcaclsPermissionGranter",
    "LifecycleState",
    "LoggingDeploymentObserver",
    "PackageHandle",
    "QueryExecutor",
    "RowReader",
    "SqlAlchemyConnector",
    "SqlPackageDeployer",
    "read_dict",
    "read_dict_by_row",
    "read_list",
    "resolve_coercion",
]
