"""
Value objects passed through the storage pipeline.

All of them are immutable: an operation receives its own ObjectRef /
RequestDescriptor and derives new values instead of mutating shared ones.
"""
import enum
import time
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import httpx

from bucketstream.storage.errors import PartialFailure, StorageError

READ_METHODS = frozenset({"GET", "DELETE", "HEAD"})


def _freeze(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True, slots=True)
class ObjectRef:
    """Bucket + key of one stored object."""

    bucket: str
    key: str

    def __post_init__(self) -> None:
        if not self.bucket:
            raise ValueError("A bucket name is needed to use Google Cloud Storage.")
        if not self.key:
            raise ValueError("A file name must be specified.")

    def __str__(self) -> str:
        return f"{self.bucket}/{self.key}"


@dataclass(frozen=True, slots=True)
class RequestDescriptor:
    """Everything needed to issue one HTTP request."""

    uri: str
    method: str = "GET"
    query: Mapping[str, Any] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "query", _freeze(self.query))
        object.__setattr__(self, "headers", _freeze(self.headers))

    @property
    def is_read(self) -> bool:
        """GET/DELETE-class requests stream a response body downstream."""
        return self.method in READ_METHODS

    def with_headers(self, headers: Mapping[str, str]) -> "RequestDescriptor":
        """Return a copy with `headers` merged over the existing ones."""
        merged = {
            name: value for name, value in self.headers.items()
            if name.lower() not in {new.lower() for new in headers}
        }
        merged.update(headers)
        return replace(self, headers=merged)


@dataclass(frozen=True, slots=True)
class Credential:
    """Bearer token plus its absolute expiry (epoch seconds)."""

    token: str
    expires_at: Optional[float] = None

    def expired(self, skew: float = 0.0) -> bool:
        if self.expires_at is None:
            return False
        return time.time() + skew >= self.expires_at

    def __repr__(self) -> str:
        return f"Credential(token='***', expires_at={self.expires_at!r})"


@dataclass(frozen=True, slots=True)
class ResponseMeta:
    """Status code and headers (lower-cased names) of one response."""

    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        headers = {name.lower(): value for name, value in dict(self.headers).items()}
        object.__setattr__(self, "headers", _freeze(headers))

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> "ResponseMeta":
        return cls(status_code=response.status_code, headers=dict(response.headers.items()))

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400


@dataclass(frozen=True, slots=True)
class UploadOptions:
    """Caller options for one upload."""

    gzip: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)
    offset: Optional[int] = None
    uri: Optional[str] = None  # Existing session to resume
    predefined_acl: Optional[str] = None
    private: bool = False
    public: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", _freeze(self.metadata))
        if self.offset is not None and self.offset < 0:
            raise ValueError("offset must be >= 0")
        if self.offset and not self.uri:
            raise ValueError("offset requires the uri of the session being resumed")

    def session_metadata(self) -> Dict[str, Any]:
        """Object metadata sent when the session is created."""
        metadata = dict(self.metadata)
        if self.gzip:
            metadata["contentEncoding"] = "gzip"
        return metadata

    def resolved_acl(self) -> Optional[str]:
        """private/public flags map onto predefinedAcl values."""
        if self.predefined_acl:
            return self.predefined_acl
        if self.private:
            return "private"
        if self.public:
            return "publicRead"
        return None


@dataclass(frozen=True, slots=True)
class ListPage:
    """One page of a bucket listing."""

    names: List[str]
    next_query: Optional[Dict[str, Any]]
    raw: Dict[str, Any]


@dataclass(frozen=True, slots=True)
class DeleteOutcome:
    """Result of deleting one key."""

    key: str
    error: Optional[BaseException] = None
    attempted: bool = True

    @property
    def ok(self) -> bool:
        return self.attempted and self.error is None


class BulkDeleteStatus(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class BulkDeleteResult:
    """Aggregated result of delete_matching()."""

    status: BulkDeleteStatus
    outcomes: List[DeleteOutcome] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def errors(self) -> List[DeleteOutcome]:
        return [outcome for outcome in self.outcomes if outcome.error is not None]

    @property
    def succeeded(self) -> List[str]:
        return [outcome.key for outcome in self.outcomes if outcome.ok]

    def raise_for_status(self) -> None:
        """
        Raise the error this result stands for.

        Raises:
            PartialFailure: status is partial_failure
            StorageError: status is fatal (the listing or first delete error)
        """
        if self.status is BulkDeleteStatus.PARTIAL_FAILURE:
            raise PartialFailure(self.errors)
        if self.status is BulkDeleteStatus.FATAL:
            if self.error is not None:
                raise self.error
            raise StorageError("Bulk delete failed")
