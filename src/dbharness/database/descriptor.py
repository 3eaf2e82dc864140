"""Connection descriptors: a structured view of a SqlClient connection string.

A ``ConnectionDescriptor`` is parsed once per target database and never
mutated; every variation the lifecycle needs (the deploy-time string with
pooling off and no attach file, the ``master`` string used to detach) is
derived as a new instance.

Recognised keys
---------------
=======================  =====================================================
Field                    Accepted keys (case-insensitive)
=======================  =====================================================
``data_source``          Data Source, Server, Address, Addr, Network Address
``attach_file``          AttachDbFilename, Initial File Name, Extended Properties
``catalog``              Initial Catalog, Database
``integrated_security``  Integrated Security, Trusted_Connection
``pooling``              Pooling
=======================  =====================================================

Every other key is kept verbatim in ``options`` and written back on
serialisation.

Usage
-----
::

    descriptor = ConnectionDescriptor.parse(
        r"Data Source=(LocalDB)\\MSSQLLocalDB;"
        r"AttachDbFilename=|DataDirectory|\\Northwind.mdf;"
        r"Initial Catalog=Northwind;Integrated Security=True"
    )
    descriptor.catalog                      # 'Northwind'
    descriptor.attach_file_path(data_dir)   # '/opt/app/Northwind.mdf'
    descriptor.for_deployment().to_connection_string()
    # 'Data Source=(LocalDB)\\MSSQLLocalDB;Initial Catalog=Northwind;'
    # 'Integrated Security=True;Pooling=False'
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from pathlib import Path

from dbharness.core.errors import ConfigurationError

DATA_DIRECTORY_TOKEN = "|DataDirectory|"

_DATA_SOURCE = "Data Source"
_ATTACH_FILE = "AttachDbFilename"
_CATALOG = "Initial Catalog"
_INTEGRATED_SECURITY = "Integrated Security"
_POOLING = "Pooling"

_SYNONYMS: dict[str, str] = {
    "data source": _DATA_SOURCE,
    "server": _DATA_SOURCE,
    "address": _DATA_SOURCE,
    "addr": _DATA_SOURCE,
    "network address": _DATA_SOURCE,
    "attachdbfilename": _ATTACH_FILE,
    "initial file name": _ATTACH_FILE,
    "extended properties": _ATTACH_FILE,
    "initial catalog": _CATALOG,
    "database": _CATALOG,
    "integrated security": _INTEGRATED_SECURITY,
    "trusted_connection": _INTEGRATED_SECURITY,
    "pooling": _POOLING,
}

# SqlClient option names that ODBC spells differently
_ODBC_KEYS: dict[str, str] = {
    "user id": "UID",
    "uid": "UID",
    "user": "UID",
    "password": "PWD",
    "pwd": "PWD",
}

_TRUE = frozenset({"true", "yes", "sspi"})
_FALSE = frozenset({"false", "no"})


def _normalize_key(key: str) -> str:
    return " ".join(key.split()).lower()


def _parse_bool(key: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(f"Invalid value for {key!r} in connection string: {value!r}")


def _quote(value: str) -> str:
    """Quote a value the way SqlConnectionStringBuilder does, when needed."""
    needs_quotes = (
        ";" in value
        or value != value.strip()
        or value.startswith(("'", '"'))
    )
    if not needs_quotes:
        return value
    if '"' in value and "'" not in value:
        return f"'{value}'"
    return '"' + value.replace('"', '""') + '"'


def _odbc_quote(value: str) -> str:
    if ";" in value or "{" in value or "}" in value or value != value.strip():
        return "{" + value.replace("}", "}}") + "}"
    return value


def _tokenize(text: str) -> list[tuple[str, str]]:
    """Split ``key=value;...`` into pairs, honouring quoted values."""
    pairs: list[tuple[str, str]] = []
    pos, length = 0, len(text)

    while pos < length:
        # Skip separators and whitespace between pairs
        while pos < length and (text[pos] == ";" or text[pos].isspace()):
            pos += 1
        if pos >= length:
            break

        eq = text.find("=", pos)
        if eq < 0:
            raise ConfigurationError(
                f"Format of the connection string is invalid near {text[pos:]!r}"
            )
        key = text[pos:eq].strip()
        if not key or ";" in key:
            raise ConfigurationError(
                f"Format of the connection string is invalid near {text[pos:eq]!r}"
            )
        pos = eq + 1

        while pos < length and text[pos].isspace() and text[pos] != ";":
            pos += 1

        if pos < length and text[pos] in ("'", '"'):
            quote = text[pos]
            pos += 1
            chars: list[str] = []
            while True:
                if pos >= length:
                    raise ConfigurationError(f"Unterminated quoted value for {key!r}")
                if text[pos] == quote:
                    if pos + 1 < length and text[pos + 1] == quote:
                        chars.append(quote)
                        pos += 2
                        continue
                    pos += 1
                    break
                chars.append(text[pos])
                pos += 1
            value = "".join(chars)
            while pos < length and text[pos].isspace():
                pos += 1
            if pos < length and text[pos] != ";":
                raise ConfigurationError(f"Unexpected characters after quoted value for {key!r}")
        else:
            end = text.find(";", pos)
            if end < 0:
                end = length
            value = text[pos:end].strip()
            pos = end

        pairs.append((key, value))

    return pairs


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Immutable structured view of a connection string."""

    data_source: str | None = None
    """Server or network address, e.g. ``(LocalDB)\\MSSQLLocalDB``."""

    catalog: str | None = None
    """Logical database name (``Initial Catalog``)."""

    attach_file: str | None = None
    """Data file to attach; may contain ``|DataDirectory|``."""

    integrated_security: bool | None = None
    """Windows authentication flag; ``None`` when the key is absent."""

    pooling: bool | None = None
    """Connection pooling flag; ``None`` when absent (pooling on)."""

    options: tuple[tuple[str, str], ...] = field(default_factory=tuple)
    """Every other ``key=value`` pair, in original order."""

    # ── Parsing / serialisation ──────────────────────────────────────

    @classmethod
    def parse(cls, connection_string: str | None) -> ConnectionDescriptor:
        """Parse a ``key=value;...`` connection string.

        Raises ``ConfigurationError`` when the string is empty or malformed.
        """
        if connection_string is None or not connection_string.strip():
            raise ConfigurationError("You must set up the connection string first.")

        known: dict[str, str] = {}
        options: dict[str, tuple[str, str]] = {}

        for key, value in _tokenize(connection_string):
            normalized = _normalize_key(key)
            canonical = _SYNONYMS.get(normalized)
            if canonical is not None:
                known[canonical] = value
            else:
                # Last occurrence wins, as in SqlClient
                options.pop(normalized, None)
                options[normalized] = (key, value)

        integrated = known.get(_INTEGRATED_SECURITY)
        pooling = known.get(_POOLING)
        return cls(
            data_source=known.get(_DATA_SOURCE) or None,
            catalog=known.get(_CATALOG) or None,
            attach_file=known.get(_ATTACH_FILE) or None,
            integrated_security=(
                _parse_bool(_INTEGRATED_SECURITY, integrated) if integrated is not None else None
            ),
            pooling=_parse_bool(_POOLING, pooling) if pooling is not None else None,
            options=tuple(options.values()),
        )

    def to_connection_string(self) -> str:
        """Serialise back to ``key=value;...`` using canonical key names."""
        parts: list[tuple[str, str]] = []
        if self.data_source is not None:
            parts.append((_DATA_SOURCE, self.data_source))
        if self.attach_file is not None:
            parts.append((_ATTACH_FILE, self.attach_file))
        if self.catalog is not None:
            parts.append((_CATALOG, self.catalog))
        if self.integrated_security is not None:
            parts.append((_INTEGRATED_SECURITY, str(self.integrated_security)))
        parts.extend(self.options)
        if self.pooling is not None:
            parts.append((_POOLING, str(self.pooling)))
        return ";".join(f"{key}={_quote(value)}" for key, value in parts)

    def to_odbc(self, driver: str, data_directory: str | Path | None = None) -> str:
        """Render an ODBC connection string for pyodbc.

        ``data_directory`` resolves ``|DataDirectory|`` in the attach path.
        """
        parts: list[tuple[str, str]] = [("DRIVER", "{" + driver + "}")]
        if self.data_source is not None:
            parts.append(("SERVER", _odbc_quote(self.data_source)))
        if self.catalog is not None:
            parts.append(("DATABASE", _odbc_quote(self.catalog)))
        if self.integrated_security:
            parts.append(("Trusted_Connection", "yes"))
        if self.attach_file is not None:
            path = self.attach_file_path(data_directory) if data_directory is not None else self.attach_file
            parts.append(("AttachDbFileName", _odbc_quote(path)))
        for key, value in self.options:
            parts.append((_ODBC_KEYS.get(_normalize_key(key), key), _odbc_quote(value)))
        return ";".join(f"{key}={value}" for key, value in parts) + ";"

    def __str__(self) -> str:
        return self.to_connection_string()

    # ── Derivations ──────────────────────────────────────────────────

    @property
    def pooling_enabled(self) -> bool:
        return self.pooling is not False

    def option(self, key: str) -> str | None:
        """Look up a pass-through option by key (case-insensitive)."""
        normalized = _normalize_key(key)
        for name, value in self.options:
            if _normalize_key(name) == normalized:
                return value
        return None

    def with_catalog(self, catalog: str) -> ConnectionDescriptor:
        return replace(self, catalog=catalog)

    def with_pooling(self, enabled: bool) -> ConnectionDescriptor:
        return replace(self, pooling=enabled)

    def without_attach_file(self) -> ConnectionDescriptor:
        return replace(self, attach_file=None)

    def for_deployment(self) -> ConnectionDescriptor:
        """Attach-free, non-pooled variant handed to the schema deployer.

        The deployer needs exclusive control of the data file, so it must
        not re-attach it or keep pooled connections open.
        """
        return replace(self, attach_file=None, pooling=False)

    # ── Data file paths ──────────────────────────────────────────────

    def attach_file_path(self, data_directory: str | Path) -> str:
        """Attach file path with ``|DataDirectory|`` resolved."""
        if self.attach_file is None:
            raise ConfigurationError(
                "Connection string does not specify an attach file (AttachDbFilename)."
            )
        match = re.match(re.escape(DATA_DIRECTORY_TOKEN), self.attach_file, re.IGNORECASE)
        if match is None:
            return self.attach_file
        remainder = self.attach_file[match.end():].strip("\\/")
        parts = [part for part in re.split(r"[\\/]+", remainder) if part]
        return str(Path(data_directory).joinpath(*parts))

    def log_file_path(self, data_directory: str | Path) -> str:
        """Path of the transaction log that accompanies the data file."""
        return companion_log_path(self.attach_file_path(data_directory))


def companion_log_path(data_file: str) -> str:
    """``Northwind.mdf`` -> ``Northwind_log.ldf``."""
    if data_file.lower().endswith(".mdf"):
        return data_file[:-4] + "_log.ldf"
    return data_file + "_log.ldf"


__all__ = [
    "ConnectionDescriptor",
    "DATA_DIRECTORY_TOKEN",
    "companion_log_path",
]
