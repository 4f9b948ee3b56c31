"""Error taxonomy shared by the IST analysis and reporting components.

Every error carries a stable ``code`` (mirrored in HTTP error payloads) and
the HTTP status the API layer answers with.
"""

from __future__ import annotations

__all__ = [
    "IstError",
    "Unauthenticated",
    "InvalidArgument",
    "UpstreamUnavailable",
    "ClassifierError",
    "StorageError",
    "StorageUnavailableError",
    "MalformedEventDataError",
    "ConfigurationError",
]


class IstError(Exception):
    """Base class for IST errors."""

    code = "internal"
    status_code = 500

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or self.__class__.__doc__ or self.code

    def to_payload(self) -> dict[str, str]:
        return {"detail": self.message, "code": self.code}


class Unauthenticated(IstError):
    """Caller identity is missing."""

    code = "unauthenticated"
    status_code = 401


class InvalidArgument(IstError):
    """A required request field is missing or empty."""

    code = "invalid-argument"
    status_code = 400


class UpstreamUnavailable(IstError):
    """The classifier is temporarily overloaded or unreachable."""

    code = "unavailable"
    status_code = 503


class ClassifierError(IstError):
    """The classifier failed in a non-transient way."""

    code = "classifier-error"
    status_code = 502


class StorageError(IstError):
    """Reading from or writing to the event store failed."""

    code = "storage-error"
    status_code = 500


class StorageUnavailableError(StorageError):
    """The event store backend cannot be reached."""

    code = "storage-unavailable"
    status_code = 503


class MalformedEventDataError(StorageError):
    """Stored event data could not be decoded."""

    code = "malformed-source-data"
    status_code = 500


class ConfigurationError(IstError):
    """The service configuration names an unknown or invalid option."""

    code = "configuration-error"
    status_code = 500
