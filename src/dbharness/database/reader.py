"""Typed row access over a DB-API cursor.

``RowReader`` holds the current row of an open cursor and hands out cell
values by ordinal or by (case-insensitive) column name, coerced to the type
the caller asks for. ``read_list`` / ``read_dict`` / ``read_dict_by_row``
drain a cursor through a projection.

::

    with closing(connection.cursor()) as cursor:
        cursor.execute("SELECT UserId, Name, Status FROM Users")
        users = read_list(cursor, lambda row: User(
            id=row.get("userid", int),
            name=row.get("Name", str, default=""),
            status=row.get("STATUS", Status),
        ))

Column names are resolved through an ordinal cache built from
``cursor.description`` the first time a name is used, then reused for the
rest of the cursor. When two columns fold to the same name the first one
wins.
"""

from __future__ import annotations

from typing import Any, Callable, Sequence, TypeVar

from dbharness.core.errors import (
    ArgumentError,
    ColumnNotFoundError,
    DuplicateKeyError,
    HarnessError,
    InvalidCastError,
)
from dbharness.core.logging import get_logger
from dbharness.core.protocols import Cursor
from dbharness.database.coercion import Coercion, resolve_coercion

logger = get_logger(__name__)

T = TypeVar("T")
K = TypeVar("K")

ColumnKey = int | str


def build_ordinal_cache(description: Sequence[Sequence[Any]] | None) -> dict[str, int]:
    """Map case-folded column names to ordinals; first occurrence wins."""
    ordinals: dict[str, int] = {}
    for ordinal, column in enumerate(description or ()):
        name = str(column[0])
        key = name.casefold()
        if key in ordinals:
            logger.debug("reader.duplicate_column", column=name, ordinal=ordinal, kept=ordinals[key])
            continue
        ordinals[key] = ordinal
    return ordinals


class RowReader:
    """Typed accessor over the current row of a cursor."""

    def __init__(self, cursor: Cursor) -> None:
        if cursor is None:
            raise ArgumentError("cursor")
        self._cursor = cursor
        self._row: Sequence[Any] | None = None
        self._ordinals: dict[str, int] | None = None

    def underlying_cursor(self) -> Cursor:
        """The wrapped DB-API cursor."""
        return self._cursor

    def advance(self) -> bool:
        """Fetch the next row. Returns ``False`` once the cursor is exhausted."""
        self._row = self._cursor.fetchone()
        return self._row is not None

    @property
    def row(self) -> Sequence[Any]:
        if self._row is None:
            raise HarnessError("No current row; call advance() first.")
        return self._row

    @property
    def field_count(self) -> int:
        return len(self._cursor.description or ())

    def get_name(self, ordinal: int) -> str:
        description = self._cursor.description or ()
        if not 0 <= ordinal < len(description):
            raise ColumnNotFoundError(f"No column at ordinal {ordinal}").with_context(ordinal=ordinal)
        return str(description[ordinal][0])

    def ordinal(self, name: str) -> int:
        """Resolve a column name (case-insensitive) to its ordinal."""
        if self._ordinals is None:
            self._ordinals = build_ordinal_cache(self._cursor.description)
        try:
            return self._ordinals[name.casefold()]
        except KeyError:
            raise ColumnNotFoundError(f"Column {name!r} was not found").with_context(column=name) from None

    # ── Raw access ───────────────────────────────────────────────────

    def get_value(self, column: ColumnKey) -> Any:
        """Raw cell value; ``None`` for SQL NULL."""
        ordinal = self._resolve(column)
        row = self.row
        if not 0 <= ordinal < len(row):
            raise ColumnNotFoundError(f"No column at ordinal {ordinal}").with_context(ordinal=ordinal)
        return row[ordinal]

    def is_null(self, column: ColumnKey) -> bool:
        return self.get_value(column) is None

    def get_int32(self, column: ColumnKey) -> int:
        value = self._strict(column, int, "int")
        if not -(2**31) <= value < 2**31:
            raise InvalidCastError(f"Value {value} does not fit in a 32-bit integer")
        return value

    def get_int64(self, column: ColumnKey) -> int:
        return self._strict(column, int, "int")

    def get_string(self, column: ColumnKey) -> str:
        return self._strict(column, str, "str")

    # ── Coerced access ───────────────────────────────────────────────

    def get(self, column: ColumnKey, target: Any, default: Any = None) -> Any:
        """Cell value coerced to ``target``, or ``default`` for SQL NULL."""
        value, found = self.try_get(column, target)
        return value if found else default

    def try_get(self, column: ColumnKey, target: Any) -> tuple[Any, bool]:
        """``(value, True)``, or ``(None, False)`` when the cell is SQL NULL."""
        coercion = resolve_coercion(target)
        raw = self.get_value(column)
        if raw is None:
            return None, False
        return self._convert(coercion, raw, column), True

    # ── Internals ────────────────────────────────────────────────────

    def _resolve(self, column: ColumnKey) -> int:
        if isinstance(column, str):
            return self.ordinal(column)
        return column

    def _convert(self, coercion: Coercion, raw: Any, column: ColumnKey) -> Any:
        try:
            return coercion.convert(raw)
        except HarnessError as exc:
            key = "column" if isinstance(column, str) else "ordinal"
            raise exc.with_context(**{key: column})

    def _strict(self, column: ColumnKey, kind: type, name: str) -> Any:
        raw = self.get_value(column)
        if not isinstance(raw, kind) or isinstance(raw, bool):
            raise InvalidCastError(
                f"Cannot read SQL value of type {type(raw).__name__} as {name}"
            ).with_context(**{"column" if isinstance(column, str) else "ordinal": column})
        return raw


# ── Materialisers ────────────────────────────────────────────────────────


def read_list(cursor: Cursor, projection: Callable[[RowReader], T]) -> list[T]:
    """Project every remaining row, preserving fetch order."""
    if projection is None:
        raise ArgumentError("projection")
    if cursor is None:
        raise ArgumentError("cursor")

    reader = RowReader(cursor)
    results: list[T] = []
    while reader.advance():
        results.append(projection(reader))
    return results


def read_dict(
    cursor: Cursor,
    projection: Callable[[RowReader], T],
    key_selector: Callable[[T], K],
) -> dict[K, T]:
    """Project every remaining row and key it by ``key_selector(value)``.

    Raises:
        DuplicateKeyError: when two rows produce the same key.
    """
    if projection is None:
        raise ArgumentError("projection")
    if cursor is None:
        raise ArgumentError("cursor")
    if key_selector is None:
        raise ArgumentError("key_selector")

    reader = RowReader(cursor)
    results: dict[K, T] = {}
    while reader.advance():
        value = projection(reader)
        _add_unique(results, key_selector(value), value)
    return results


def read_dict_by_row(
    cursor: Cursor,
    projection: Callable[[RowReader], T],
    row_key: Callable[[RowReader], K],
) -> dict[K, T]:
    """Like ``read_dict`` but the key is read from the row itself."""
    if projection is None:
        raise ArgumentError("projection")
    if cursor is None:
        raise ArgumentError("cursor")
    if row_key is None:
        raise ArgumentError("row_key")

    reader = RowReader(cursor)
    results: dict[K, T] = {}
    while reader.advance():
        value = projection(reader)
        _add_unique(results, row_key(reader), value)
    return results


def _add_unique(results: dict[Any, Any], key: Any, value: Any) -> None:
    if key in results:
        raise DuplicateKeyError(key)
    results[key] = value


__all__ = [
    "RowReader",
    "build_ordinal_cache",
    "read_dict",
    "read_dict_by_row",
    "read_list",
]
