"""
Structured error types for dbharness.

Every failure the harness surfaces is a ``HarnessError`` carrying a category,
a retry hint, structured context and an optional chained cause. Callers can
catch the whole family with one ``except HarnessError`` or pick out the
specific kinds below.

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       HarnessError                               │
        │  (category, retryable, context, cause)                           │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ConfigurationError   ArgumentError      ColumnNotFoundError     │
        │  (CONFIG)             (VALIDATION)       DuplicateKeyError       │
        │                                                                  │
        │  CoercionError        LifecycleError                             │
        │  (PARSE)              (DATABASE, suppressed=[...])               │
        │       │                    │                                     │
        │  InvalidCastError     PermissionGrantError                       │
        │  ParseError           DeploymentError                            │
        │                       DetachError                                │
        └─────────────────────────────────────────────────────────────────┘

    Several kinds also derive from the matching builtin (``TypeError``,
    ``ValueError``, ``KeyError``) so generic handlers keep working.

Examples:
    >>> error = ParseError("No member 'Purple' in Color").with_context(column="color")
    >>> error.to_dict()["context"]
    {'column': 'color'}

    A cleanup failure attached to the primary failure:

    >>> primary = DeploymentError("publish failed")
    >>> primary.add_suppressed(DetachError("database in use"))
    >>> [type(e).__name__ for e in primary.suppressed]
    ['DetachError']

Tags:
    error-handling, exception-hierarchy, error-context, dbharness
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories for classification and log routing."""

    DATABASE = "DATABASE"         # Attach, detach, query failures
    PARSE = "PARSE"               # Value coercion, connection string parsing
    VALIDATION = "VALIDATION"     # Bad arguments, unknown columns, duplicates
    CONFIG = "CONFIG"             # Missing or invalid settings
    AUTH = "AUTH"                 # File permissions
    INTERNAL = "INTERNAL"         # Bugs, unexpected state


@dataclass
class ErrorContext:
    """Where an error happened: the catalog, the cell, the file.

    Unknown keys passed to ``HarnessError.with_context`` land in ``metadata``.
    """

    catalog: str | None = None
    column: str | None = None
    ordinal: int | None = None
    path: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def update(self, **values: Any) -> None:
        known = {f.name for f in fields(self)} - {"metadata"}
        for key, value in values.items():
            if key in known:
                setattr(self, key, value)
            else:
                self.metadata[key] = value

    def to_dict(self) -> dict[str, Any]:
        """Set fields only, with metadata merged in."""
        values = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "metadata" and getattr(self, f.name) is not None
        }
        return {**values, **self.metadata}


class HarnessError(Exception):
    """
    Base exception for all dbharness errors.

    Subclasses pick their ``default_category``; raising sites pass a message,
    plus ``cause=`` when wrapping a driver or subprocess failure.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category if category is not None else self.default_category
        self.retryable = self.default_retryable if retryable is None else retryable
        self.context = context if context is not None else ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **values: Any) -> HarnessError:
        """Attach context and return ``self``, so it chains onto ``raise``.

            raise ColumnNotFoundError("Unknown column").with_context(column="UserId")
        """
        self.context.update(**values)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Loggable form; ``context`` and ``cause`` only when present."""
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if context := self.context.to_dict():
            result["context"] = context
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        context = self.context.to_dict()
        suffix = f", context={context!r}" if context else ""
        return f"{type(self).__name__}({self.message!r}, category={self.category.value}{suffix})"


# =============================================================================
# CONFIGURATION / ARGUMENT ERRORS
# =============================================================================


class ConfigurationError(HarnessError):
    """
    Configuration error.

    Raised when the connection string has not been set before first use or
    cannot be interpreted. Never retryable.
    """

    default_category = ErrorCategory.CONFIG


class ArgumentError(HarnessError, ValueError):
    """A required callback or key argument was not supplied."""

    default_category = ErrorCategory.VALIDATION

    def __init__(self, argument: str, message: str | None = None):
        self.argument = argument
        super().__init__(message or f"Argument {argument!r} is required")


# =============================================================================
# ROW ACCESS ERRORS
# =============================================================================


class CoercionError(HarnessError):
    """A cell value could not be converted to the requested type."""

    default_category = ErrorCategory.PARSE


class InvalidCastError(CoercionError, TypeError):
    """The requested target type is unsupported, or the raw value cannot become it."""


class ParseError(CoercionError, ValueError):
    """Text could not be parsed into the requested type (including enum names)."""


class ColumnNotFoundError(HarnessError, KeyError):
    """No column with the given name (or ordinal) exists in the current cursor."""

    default_category = ErrorCategory.VALIDATION

    # KeyError.__str__ would repr() the message
    __str__ = HarnessError.__str__


class DuplicateKeyError(HarnessError, KeyError):
    """Two rows projected to the same key while building a keyed result."""

    default_category = ErrorCategory.VALIDATION

    __str__ = HarnessError.__str__

    def __init__(self, key: Any, message: str | None = None):
        self.key = key
        super().__init__(message or f"An item with the same key has already been added: {key!r}")


# =============================================================================
# LIFECYCLE ERRORS
# =============================================================================


class LifecycleError(HarnessError):
    """
    Failure while attaching, deploying or detaching a database.

    ``suppressed`` collects secondary failures raised while cleaning up after
    this one, so a detach failure never hides the deployment failure that
    triggered the cleanup.
    """

    default_category = ErrorCategory.DATABASE

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.suppressed: list[BaseException] = []

    def add_suppressed(self, error: BaseException) -> None:
        self.suppressed.append(error)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.suppressed:
            result["suppressed"] = [
                e.to_dict() if isinstance(e, HarnessError) else {"error_type": type(e).__name__, "message": str(e)}
                for e in self.suppressed
            ]
        return result


class PermissionGrantError(LifecycleError):
    """Granting file access for attach failed. Fatal: nothing was deployed."""

    default_category = ErrorCategory.AUTH


class DeploymentError(LifecycleError):
    """The schema deployer reported a failure."""


class DetachError(LifecycleError):
    """Detaching the database failed; it may still be attached."""


__all__ = [
    "ArgumentError",
    "CoercionError",
    "ColumnNotFoundError",
    "ConfigurationError",
    "DeploymentError",
    "DetachError",
    "DuplicateKeyError",
    "ErrorCategory",
    "ErrorContext",
    "HarnessError",
    "InvalidCastError",
    "LifecycleError",
    "ParseError",
    "PermissionGrantError",
]
