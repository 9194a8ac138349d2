"""Error taxonomy for remote operations."""
from typing import Optional


class PushlinkError(Exception):
    """Base class for failures talking to the push service."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(PushlinkError):
    """The access token is missing, invalid or revoked."""


class FetchError(PushlinkError):
    """Transient network or service failure."""


class RegistrationError(PushlinkError):
    """Device registration was rejected or could not be completed."""
