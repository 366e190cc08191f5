"""
Error taxonomy shared by every Road Patrol service.

Every exception carries a human-readable ``message`` that call sites can show
to the user as-is.
"""
from typing import Optional


UNIQUE_VIOLATION = "23505"


class RoadPatrolError(Exception):
    """Base class for all client errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BackendError(RoadPatrolError):
    """Error object returned by the hosted backend ({code, message})."""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code

    @property
    def is_unique_violation(self) -> bool:
        return self.code == UNIQUE_VIOLATION

    def __repr__(self) -> str:
        return f"BackendError(code={self.code!r}, status={self.status_code}, message={self.message!r})"


class NetworkError(RoadPatrolError):
    """Transport failed before the backend answered."""
    pass


class RequestTimeoutError(NetworkError):
    """Request exceeded its time budget."""

    def __init__(self, message: str = "Request timeout"):
        super().__init__(message)


class ValidationError(RoadPatrolError):
    """Input rejected locally, never sent to the backend."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class AlreadyVotedError(RoadPatrolError):
    """Second vote from the same device on the same report."""

    def __init__(self, message: str = "You have already voted on this issue"):
        super().__init__(message)


class AuthRequiredError(RoadPatrolError):
    """Action needs a signed-in user."""

    def __init__(self, message: str = "Please sign in to continue"):
        super().__init__(message)


class NotAuthorizedError(RoadPatrolError):
    """Row missing or owned by someone else."""

    def __init__(self, message: str = "Not authorized to change this item"):
        super().__init__(message)


class StorageError(RoadPatrolError):
    """Raised when storage operation fails."""
    pass


class GeolocationError(RoadPatrolError):
    """Location could not be acquired. ``kind`` tells the caller which prompt to show."""

    PERMISSION_DENIED = "permission_denied"
    POSITION_UNAVAILABLE = "position_unavailable"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"
    UNSUPPORTED = "unsupported"

    MESSAGES = {
        PERMISSION_DENIED: "Location permission denied. Please enable location access.",
        POSITION_UNAVAILABLE: "Location information unavailable.",
        TIMEOUT: "Location request timed out.",
        UNKNOWN: "An unknown error occurred while getting location.",
        UNSUPPORTED: "Geolocation is not supported on this device",
    }

    def __init__(self, kind: str, message: Optional[str] = None):
        super().__init__(message or self.MESSAGES.get(kind, self.MESSAGES[self.UNKNOWN]))
        self.kind = kind
