"""Exception types raised by the service layer.

Every error carries a message that can be shown to the user as-is and an
HTTP-style status code used by the API layer.
"""

from __future__ import annotations


class KaratappError(Exception):
    """Base class for all service errors."""

    status_code: int = 500

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AuthError(KaratappError):
    """Authentication failed or the auth backend rejected the request."""

    status_code = 400


class NotAuthenticatedError(AuthError):
    status_code = 401

    def __init__(self, message: str = "User not authenticated"):
        super().__init__(message)


class PermissionDeniedError(KaratappError):
    status_code = 403


class NotFoundError(KaratappError):
    status_code = 404


class InvalidInputError(KaratappError):
    status_code = 400


class ConflictError(KaratappError):
    status_code = 409


class UserMutedError(PermissionDeniedError):
    """The acting user is muted and may not post."""


class StorageError(KaratappError):
    """An object storage operation failed."""

    status_code = 502
