"""Exception hierarchy for the engrams engine.

Every error raised on purpose by the engine derives from
:class:`EngramsError`.  Each concrete class also inherits from the closest
built-in exception so callers that only know about ``ValueError`` or
``LookupError`` keep working.
"""

from __future__ import annotations


class EngramsError(Exception):
    """Base class for all engine errors."""


class ValidationError(EngramsError, ValueError):
    """Caller input failed validation.

    Parameters
    ----------
    message:
        Human-readable description.
    field:
        Name of the offending input field, when known.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(EngramsError, LookupError):
    """A record id (or other identifier) does not resolve."""

    def __init__(self, memory_id: str, scope: str | None = None, what: str = "Memory") -> None:
        where = f" in scope {scope!r}" if scope else ""
        super().__init__(f"{what} {memory_id!r} not found{where}")
        self.memory_id = memory_id
        self.scope = scope


class StoreUnavailable(EngramsError, RuntimeError):
    """A scope partition could not be read or written."""

    def __init__(self, scope: str, message: str = "") -> None:
        detail = f": {message}" if message else ""
        super().__init__(f"Store for scope {scope!r} is unavailable{detail}")
        self.scope = scope


class ComputationError(EngramsError, ArithmeticError):
    """A numeric computation received parameters it cannot work with."""


class StaleRecordError(EngramsError, RuntimeError):
    """A write was based on a copy whose status no longer matches the row.

    Raised instead of overwriting a record that another caller has moved
    on in the meantime, and for any rewrite of a forgotten record.
    """

    def __init__(self, memory_id: str, expected: str | None, actual: str) -> None:
        wanted = f"expected {expected!r}, " if expected else ""
        super().__init__(
            f"Memory {memory_id!r} changed underneath the write: {wanted}stored {actual!r}"
        )
        self.memory_id = memory_id
        self.expected = expected
        self.actual = actual
