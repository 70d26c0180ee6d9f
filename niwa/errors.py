"""
Error taxonomy for niwa.

Every failure raised by the core derives from NiwaError so callers can catch
one type at the boundary.  sqlite3 errors never escape a component: the
Database handle translates them into ConflictError, NotFoundError or
StorageError.

Public API:
    NiwaError, NotFoundError, ConflictError, InvalidInputError,
    StorageError, GenerationError
"""

from __future__ import annotations


class NiwaError(Exception):
    """Base class for all niwa errors."""

    pass


class NotFoundError(NiwaError):
    """A referenced expertise, relation, mapping or garden path is absent."""

    pass


class ConflictError(NiwaError):
    """A uniqueness rule would be violated (id, version, edge, pattern)."""

    pass


class InvalidInputError(NiwaError, ValueError):
    """Malformed id, scope, relation type, pattern or query."""

    pass


class StorageError(NiwaError):
    """The underlying database failed (I/O, lock timeout, corruption)."""

    pass


class GenerationError(NiwaError):
    """The generation collaborator failed, timed out or returned garbage."""

    pass
