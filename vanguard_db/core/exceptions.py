"""
Typed errors raised by the data-access layer.

Every error carries the database code, entity type and operation name when
they are known, so a failure surfacing at an API boundary can be traced back to
the repository call that produced it.
"""
from __future__ import annotations

from typing import Optional


class VanguardDbError(Exception):
    """Base class for all data-access errors."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        entity_type: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> None:
        self.code = code
        self.entity_type = entity_type
        self.operation = operation
        super().__init__(message)


class ConfigurationError(VanguardDbError):
    """Unknown database code or malformed connection configuration."""


class UnsupportedDialectError(ConfigurationError):
    """The configured dbType does not resolve to a known dialect."""

    def __init__(self, db_type: str, *, code: Optional[str] = None) -> None:
        super().__init__(
            f"Unsupported dbType {db_type!r} for database code {code!r}",
            code=code,
            operation="resolve_dialect",
        )
        self.db_type = db_type


class WriteFailed(VanguardDbError):
    """An insert completed without affecting any row."""


class InvalidFieldSelector(VanguardDbError):
    """An update ignore-selector does not resolve to a simple mapped column."""

    def __init__(self, selector: object, *, entity_type: Optional[str] = None) -> None:
        super().__init__(
            f"Cannot resolve field selector {selector!r} on {entity_type}",
            entity_type=entity_type,
            operation="update",
        )
        self.selector = selector


class NoActiveTransaction(VanguardDbError):
    """commit() or rollback() was called outside an active unit of work."""


class MappingNotRegistered(VanguardDbError):
    """No projection is registered for the requested (source, target) pair."""

    def __init__(self, source: type, target: type) -> None:
        super().__init__(
            f"No mapping registered from {source.__name__} to {target.__name__}",
            entity_type=source.__name__,
            operation="map",
        )
        self.source = source
        self.target = target


class StoreFailure(VanguardDbError):
    """
    A lower-level error raised by the backing client.

    The driver/SQLAlchemy exception is kept as ``original`` and chained as
    ``__cause__``.
    """

    def __init__(
        self,
        original: BaseException,
        *,
        code: Optional[str] = None,
        entity_type: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"{operation or 'operation'} on {entity_type or 'statement'} "
            f"[{code}] failed: {original}",
            code=code,
            entity_type=entity_type,
            operation=operation,
        )
        self.original = original


class OperationCancelled(VanguardDbError):
    """The per-call timeout elapsed before the store round-trip finished."""
