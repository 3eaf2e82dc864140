"""
Row value coercion: untyped cell values to the type the caller asked for.

DB-API drivers hand back whatever Python type the driver picked for a column
(``int``, ``Decimal``, ``str``, ``datetime``...). Test code wants exactly the
type it names: an ``int`` primary key, a ``Status`` enum stored as text, an
``Optional[Decimal]`` price. This module turns a requested target into one of
a closed set of coercion variants, then applies it to the raw value.

Manifesto:
    - **Resolve the target first:** the variant is picked from the target
      before any cell is read, so an unsupported target fails for every
      value, NULL included.
    - **Closed set of variants:** text, integer, other primitive, nullable
      wrapper, enumeration. Nothing else is a valid target.
    - **Invariant conversions:** no locale, no thousands separators, ``.``
      as decimal point, ISO-8601 for temporal text.

Architecture:
    ::

        resolve_coercion(target)
            │
            ├── str               → TextCoercion
            ├── int               → IntegerCoercion
            ├── Enum subclass     → EnumCoercion(enum)
            ├── Optional[X]       → NullableCoercion(resolve_coercion(X))
            ├── float, Decimal, bool, datetime, date, time, UUID
            │                     → PrimitiveCoercion(target)
            └── anything else     → InvalidCastError

        coercion.convert(raw)     (raw is never None here; NULL is the
                                   reader's business)

Examples:
    >>> resolve_coercion(int).convert(Decimal("42"))
    42
    >>> resolve_coercion(Optional[float]).convert("2.50")
    2.5
    >>> class Color(Enum):
    ...     RED = 1
    >>> resolve_coercion(Color).convert("RED")
    <Color.RED: 1>

Tags:
    coercion, type-conversion, enum, nullable, invariant, dbharness
"""

from __future__ import annotations

import math
import re
import types
import typing
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable
from uuid import UUID

from dbharness.core.errors import InvalidCastError, ParseError

_INTEGER_TEXT = re.compile(r"[+-]?\d+")
_NUMBER_TEXT = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_FLOAT_SPECIALS = {"nan": math.nan, "infinity": math.inf, "+infinity": math.inf, "-infinity": -math.inf}


def _type_name(value: Any) -> str:
    return type(value).__name__


def _cannot_cast(raw: Any, target: str) -> InvalidCastError:
    return InvalidCastError(f"Cannot cast SQL value of type {_type_name(raw)} to {target}")


def _cannot_parse(text: str, target: str) -> ParseError:
    return ParseError(f"Text {text!r} is not a valid {target}")


# ── Invariant converters ─────────────────────────────────────────────────


def _to_int(raw: Any) -> int:
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        if not math.isfinite(raw):
            raise _cannot_cast(raw, "int")
        return round(raw)  # half-to-even
    if isinstance(raw, Decimal):
        try:
            return int(raw.to_integral_value(rounding=ROUND_HALF_EVEN))
        except (InvalidOperation, ValueError, OverflowError) as exc:
            raise _cannot_cast(raw, "int") from exc
    if isinstance(raw, str):
        text = raw.strip()
        if not _INTEGER_TEXT.fullmatch(text):
            raise _cannot_parse(raw, "int")
        return int(text)
    raise _cannot_cast(raw, "int")


def _to_float(raw: Any) -> float:
    if isinstance(raw, (bool, int, float, Decimal)):
        return float(raw)
    if isinstance(raw, str):
        text = raw.strip()
        special = _FLOAT_SPECIALS.get(text.lower())
        if special is not None:
            return special
        if not _NUMBER_TEXT.fullmatch(text):
            raise _cannot_parse(raw, "float")
        return float(text)
    raise _cannot_cast(raw, "float")


def _to_decimal(raw: Any) -> Decimal:
    if isinstance(raw, (bool, int)):
        return Decimal(int(raw))
    if isinstance(raw, float):
        if not math.isfinite(raw):
            raise _cannot_cast(raw, "Decimal")
        return Decimal(str(raw))
    if isinstance(raw, str):
        text = raw.strip()
        if not _NUMBER_TEXT.fullmatch(text):
            raise _cannot_parse(raw, "Decimal")
        return Decimal(text)
    raise _cannot_cast(raw, "Decimal")


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, (int, float, Decimal)):
        return raw != 0
    if isinstance(raw, str):
        text = raw.strip().lower()
        if text == "true":
            return True
        if text == "false":
            return False
        raise _cannot_parse(raw, "bool")
    raise _cannot_cast(raw, "bool")


def _to_datetime(raw: Any) -> datetime:
    if isinstance(raw, date):
        return datetime.combine(raw, time())
    if isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw.strip())
        except ValueError as exc:
            raise _cannot_parse(raw, "datetime") from exc
    raise _cannot_cast(raw, "datetime")


def _to_date(raw: Any) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, str):
        text = raw.strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(text).date()
        except ValueError as exc:
            raise _cannot_parse(raw, "date") from exc
    raise _cannot_cast(raw, "date")


def _to_time(raw: Any) -> time:
    if isinstance(raw, datetime):
        return raw.time()
    if isinstance(raw, timedelta) and timedelta(0) <= raw < timedelta(days=1):
        return (datetime.min + raw).time()
    if isinstance(raw, str):
        try:
            return time.fromisoformat(raw.strip())
        except ValueError as exc:
            raise _cannot_parse(raw, "time") from exc
    raise _cannot_cast(raw, "time")


def _to_uuid(raw: Any) -> UUID:
    if isinstance(raw, str):
        try:
            return UUID(raw.strip())
        except ValueError as exc:
            raise _cannot_parse(raw, "UUID") from exc
    if isinstance(raw, (bytes, bytearray)) and len(raw) == 16:
        return UUID(bytes=bytes(raw))
    raise _cannot_cast(raw, "UUID")


_CONVERTERS: dict[type, Callable[[Any], Any]] = {
    float: _to_float,
    Decimal: _to_decimal,
    bool: _to_bool,
    datetime: _to_datetime,
    date: _to_date,
    time: _to_time,
    UUID: _to_uuid,
}


def _is_already(raw: Any, target: type) -> bool:
    """Whether ``raw`` can be returned as-is for ``target``."""
    if target is int:
        return isinstance(raw, int) and not isinstance(raw, bool)
    if target is date:
        return isinstance(raw, date) and not isinstance(raw, datetime)
    return isinstance(raw, target)


def _format_text(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, (bytes, bytearray, memoryview)):
        raise _cannot_cast(raw, "str")
    if isinstance(raw, Enum):
        return raw.name
    if isinstance(raw, (datetime, date, time)):
        return raw.isoformat()
    return str(raw)


# ── Coercion variants ────────────────────────────────────────────────────


class Coercion:
    """Base of the closed set of coercion variants."""

    nullable: bool = False

    def convert(self, raw: Any) -> Any:
        raise NotImplementedError


@dataclass(frozen=True)
class TextCoercion(Coercion):
    """``str`` target. Non-text raw values are formatted invariantly."""

    def convert(self, raw: Any) -> str:
        return _format_text(raw)


@dataclass(frozen=True)
class IntegerCoercion(Coercion):
    """``int`` target. Integers pass straight through."""

    def convert(self, raw: Any) -> int:
        if isinstance(raw, int) and not isinstance(raw, bool):
            return raw
        return _to_int(raw)


@dataclass(frozen=True)
class PrimitiveCoercion(Coercion):
    target: type

    def convert(self, raw: Any) -> Any:
        if _is_already(raw, self.target):
            return raw
        return _CONVERTERS[self.target](raw)


@dataclass(frozen=True)
class EnumCoercion(Coercion):
    """Enumeration target: member name from text, member value from numbers."""

    enum_type: type[Enum]

    def convert(self, raw: Any) -> Enum:
        if isinstance(raw, self.enum_type):
            return raw
        if isinstance(raw, str):
            try:
                return self.enum_type[raw]
            except KeyError:
                raise ParseError(
                    f"Requested value {raw!r} was not found in {self.enum_type.__name__}"
                ) from None
        value = raw if isinstance(raw, int) and not isinstance(raw, bool) else _to_int(raw)
        try:
            return self.enum_type(value)
        except ValueError:
            raise InvalidCastError(
                f"{value!r} is not a valid {self.enum_type.__name__}"
            ) from None


@dataclass(frozen=True)
class NullableCoercion(Coercion):
    """``Optional[X]``: NULL is a legitimate value, everything else converts as ``X``."""

    inner: Coercion
    nullable = True

    def convert(self, raw: Any) -> Any:
        return self.inner.convert(raw)


TEXT = TextCoercion()
INTEGER = IntegerCoercion()

_UNION_TYPES: tuple[Any, ...] = (typing.Union, types.UnionType)


def resolve_coercion(target: Any) -> Coercion:
    """Pick the coercion variant for a requested target.

    ``target`` may already be a ``Coercion`` (an explicit tag), a supported
    type, an ``Enum`` subclass, or ``Optional[...]`` of one of those.

    Raises:
        InvalidCastError: for any other target.
    """
    if isinstance(target, Coercion):
        return target
    if target is str:
        return TEXT
    if isinstance(target, type):
        if issubclass(target, Enum):
            return EnumCoercion(target)
        if target is int:
            return INTEGER
        if target in _CONVERTERS:
            return PrimitiveCoercion(target)

    if typing.get_origin(target) in _UNION_TYPES:
        args = [arg for arg in typing.get_args(target) if arg is not type(None)]
        if len(args) == 1 and len(args) < len(typing.get_args(target)):
            return NullableCoercion(resolve_coercion(args[0]))

    name = getattr(target, "__name__", None) or repr(target)
    raise InvalidCastError(f"Cannot cast SQL value to {name}")


__all__ = [
    "Coercion",
    "EnumCoercion",
    "INTEGER",
    "IntegerCoercion",
    "NullableCoercion",
    "PrimitiveCoercion",
    "TEXT",
    "TextCoercion",
    "resolve_coercion",
]
