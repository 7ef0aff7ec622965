#  HDR Backend - Custom Exceptions
#
#  Typed exception hierarchy so routes can map business errors to HTTP
#  status codes without pattern-matching on message strings.
#
#  Depends on: (none)
#  Used by:    services/*, routes/*, app.py

class HDRBackendError(Exception):
    """Base exception for all HDR backend business logic errors."""


class ValidationError(HDRBackendError):
    """Caller input is malformed."""


class NotFoundError(HDRBackendError):
    """Resource (order, bracket, image) does not exist or is not owned by the caller."""


class ProviderError(HDRBackendError):
    """The enhancement provider returned a non-2xx response."""

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is None:
            return base
        return f"{base} (status {self.status_code}): {self.body}"


class ProviderUnavailableError(ProviderError):
    """A provider call still failed after the retry budget was spent."""

    def __str__(self) -> str:
        # The wrapped error's text already carries status and body
        return Exception.__str__(self)


class ObjectStoreError(HDRBackendError):
    """Blob write, list or delete failed."""


class PersistenceError(HDRBackendError):
    """A database call failed."""


class BroadcastError(HDRBackendError):
    """Publishing to a realtime topic failed. Logged, never surfaced to callers."""


class UploadFailedError(HDRBackendError):
    """Every file in a multipart upload failed."""

    def __init__(self, message: str, errors: list[dict]):
        super().__init__(message)
        self.errors = errors
