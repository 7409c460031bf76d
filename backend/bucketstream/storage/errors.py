"""
Error taxonomy for storage operations.

Every terminal outcome a caller can observe is one of these classes.
"""
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from bucketstream.storage.models import DeleteOutcome


class StorageError(RuntimeError):
    """Base class for all storage pipeline errors."""


class ConfigurationError(StorageError):
    """Raised when the client is constructed with unusable settings."""


class AuthFailure(StorageError):
    """Credential acquisition failed. Never retried by the pipeline."""

    def __init__(self, cause: BaseException):
        super().__init__(f"Failed to obtain credentials: {cause}")
        self.cause = cause


class NotFound(StorageError):
    """The remote service answered 404."""

    def __init__(self, message: str = "Resource Not Found"):
        super().__init__(message)
        self.status_code = 404


class UpstreamError(StorageError):
    """The remote service answered with a non-404 4xx/5xx status."""

    def __init__(self, status_code: int, message: Optional[str] = None):
        super().__init__(message or f"Encountered error while reading resource (HTTP {status_code})")
        self.status_code = status_code


class TransportError(StorageError):
    """Connection-level failure (reset, timeout, protocol error)."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class RequestAborted(TransportError):
    """The channel was aborted by its owner before it completed."""

    def __init__(self):
        super().__init__("Request aborted")


class MalformedResponse(StorageError):
    """A response body could not be decoded as the expected JSON document."""


class UploadSessionError(StorageError):
    """The resumable upload session could not be created or continued."""


class PartialFailure(StorageError):
    """A forced bulk delete finished with per-object failures."""

    def __init__(self, errors: List["DeleteOutcome"]):
        super().__init__(f"{len(errors)} object(s) could not be deleted")
        self.errors = errors


def error_for_status(status_code: int, message: Optional[str] = None) -> StorageError:
    """
    Map an HTTP error status to the matching storage error.

    Args:
        status_code: HTTP status (>= 400)
        message: Optional message override

    Returns:
        NotFound for 404, UpstreamError otherwise
    """
    if status_code == 404:
        return NotFound(message) if message else NotFound()
    return UpstreamError(status_code, message)
