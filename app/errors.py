"""
Error hierarchy for the share engine.

Deny outcomes (not found, expired, exhausted, ...) are returned as values by
the access path. Only invalid input and storage failures are raised.
"""


class ShareError(Exception):
    """Base error for share operations."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidShareError(ShareError):
    """Malformed creation parameters, rejected before anything is stored."""


class TransientError(ShareError):
    """Storage or blob I/O failure. Safe for the caller to retry."""
