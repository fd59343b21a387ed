"""Error taxonomy shared by the server, the HTTP client and listen sessions.

Messages double as stable codes (``str(err)``) so callers can branch on them
the same way the streaming client reports token problems.
"""
from typing import Optional


class ValidationError(ValueError):
    """A required field is missing or malformed. Never retried automatically."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    @classmethod
    def missing(cls, field: str) -> 'ValidationError':
        return cls(f"Missing field: {field}", field=field)


class UpstreamAuthError(RuntimeError):
    """The streaming service credential is missing, revoked or could not be refreshed."""


class GeolocationUnavailable(RuntimeError):
    """Location could not be determined (denied, unsupported or timed out)."""


class NetworkFailure(RuntimeError):
    """A request to the listens server failed; safe to retry on the next tick."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status
