"""Errors raised by the sync layer and the views built on it."""

from typing import Any, Optional


class SyncError(Exception):
    """Base class for sync layer errors."""


class InvalidRecord(SyncError):
    """A fetched payload failed validation at the decoding boundary."""

    def __init__(self, table: str, key: str, detail: str):
        super().__init__(f"Invalid {table} record {key}: {detail}")
        self.table = table
        self.key = key


class InvalidTransition(SyncError):
    """A status change the workflow does not allow."""


class WriteFailed(SyncError):
    """
    A user-initiated write failed after its optimistic local update.

    Attributes:
        placeholder: The optimistic record that stood in for the write,
            so callers can restore the user's input
    """

    def __init__(self, message: str, placeholder: Optional[Any] = None):
        super().__init__(message)
        self.placeholder = placeholder
