"""Error taxonomy for library operations."""

from __future__ import annotations


class LibraryError(Exception):
    """Base exception for tag/article/highlight operations."""

    kind = "error"


class NotFoundError(LibraryError):
    """Referenced entity does not exist for the requesting user."""

    kind = "not_found"


class ForbiddenError(LibraryError):
    """Entity exists but is owned by a different user."""

    kind = "forbidden"


class ValidationError(LibraryError):
    """Input rejected: empty/duplicate tag name, bad offsets, bad status."""

    kind = "validation"


class ConflictError(LibraryError):
    """Concurrent mutation could not be serialized."""

    kind = "conflict"
