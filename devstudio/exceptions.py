"""Storage-layer exceptions.

Input validation failures are reported by pydantic's ``ValidationError`` and
are not wrapped here.
"""

from __future__ import annotations


class StorageError(Exception):
    """Base class for storage failures."""


class IntegrityViolationError(StorageError):
    """A write broke a foreign-key or uniqueness constraint."""

    def __init__(self, message: str, *, table: str | None = None):
        super().__init__(message)
        self.table = table
