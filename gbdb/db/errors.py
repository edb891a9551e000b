# gbdb/db/errors.py
"""
Exception types raised by the data-access layer.
"""

from typing import Optional


class GBDBError(Exception):
    """Base class for all gbdb errors."""


class InvalidIdentifier(GBDBError, ValueError):
    """A table or column name failed sanitization or is unknown to the catalog."""


class NotFound(InvalidIdentifier):
    """A referenced table or column does not exist."""


class InvalidValue(GBDBError, ValueError):
    """A literal value failed sanitization or cannot be stored."""


class SchemaMismatch(GBDBError, ValueError):
    """Identifier keys do not match the natural key of the target table."""


class ParseError(GBDBError, ValueError):
    """A value expected to be numeric could not be parsed."""

    def __init__(self, message: str, row: Optional[int] = None):
        super().__init__(message)
        self.row = row


class IngestionError(GBDBError, RuntimeError):
    """A set-based upload failed; the transaction was rolled back."""
