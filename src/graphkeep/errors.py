"""
Error taxonomy shared by every graphkeep service.

Transient failures are retried by the next natural trigger. Revoked
file permission and invalid credentials change state. Misuse of the
coordinator is logged rather than raised, except on direct user actions.
"""

from __future__ import annotations

from typing import Optional


class GraphkeepError(Exception):
    """Base class for all graphkeep errors."""


class TransientIOError(GraphkeepError):
    """Raised for network hiccups and other retryable I/O failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PermissionRevoked(GraphkeepError):
    """Raised when a file capability has lost its write permission."""

    def __init__(self, message: str, file_name: Optional[str] = None):
        super().__init__(message)
        self.file_name = file_name


class CredentialInvalid(GraphkeepError):
    """Raised when the provider definitively rejects a credential."""


class CoordinatorMisuse(GraphkeepError):
    """Raised when the save coordinator is used before initialize()."""
