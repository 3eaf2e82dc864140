"""File access grants for attaching a data file.

The database engine runs under its own service account, so before a data
file (and its log) can be attached both the invoking user and that account
need full control of it. ``IcaclsPermissionGranter`` does this with the
Windows ``icacls`` tool.
"""

from __future__ import annotations

import getpass
import shutil
import subprocess

from dbharness.core.errors import PermissionGrantError
from dbharness.core.logging import get_logger

logger = get_logger(__name__)


def current_principal() -> str:
    """Name of the user running this process."""
    return getpass.getuser()


class IcaclsPermissionGranter:
    """Grants file access with ``icacls <path> /grant <principal>:(F)``."""

    def __init__(self, executable: str = "icacls", timeout: int = 60) -> None:
        self.executable = executable
        self.timeout = timeout

    def grant(self, path: str, principal: str, full_control: bool = True) -> None:
        executable = shutil.which(self.executable)
        if executable is None:
            raise PermissionGrantError(
                f"{self.executable!r} not found on PATH; cannot grant access to {path}"
            ).with_context(path=path)

        rights = "(F)" if full_control else "(M)"
        cmd = [executable, path, "/grant", f"{principal}:{rights}"]
        logger.debug("permissions.exec", cmd=" ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            raise PermissionGrantError(
                f"icacls timed out after {self.timeout}s granting {principal} access to {path}",
                cause=exc,
            ).with_context(path=path) from exc

        if result.returncode != 0:
            raise PermissionGrantError(
                f"icacls failed (exit {result.returncode}) granting {principal} access to {path}: "
                f"{(result.stderr or result.stdout).strip()}"
            ).with_context(path=path, principal=principal)

        logger.info("permissions.granted", path=path, principal=principal, full_control=full_control)
