"""
Error types for the Google Drive Backup Tool.
Every failure ends the current backup run; none of them are retried.
"""

from typing import Optional


class BackupError(Exception):
    """Base class for all backup workflow failures."""


class UserCancelled(BackupError):
    """The user declined or abandoned the consent screen."""


class ProviderError(BackupError):
    """The identity provider returned nothing usable."""


class AuthFailed(BackupError):
    """The token endpoint rejected the identity assertion."""


class InvalidAccount(BackupError):
    """The account cannot be bound to the requested scope."""


class RemoteError(BackupError):
    """Drive request failed on the wire or on the server."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    def __str__(self):
        message = super().__str__()
        if self.status is not None:
            return f"{message} (HTTP {self.status})"
        return message


class SourceReadError(BackupError, OSError):
    """The local byte source could not be read."""
