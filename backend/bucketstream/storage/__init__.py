"""
Object storage pipeline: credentials, request channels, read/write
streams and bulk deletes.
"""
from bucketstream.storage.bulk_delete import MAX_PARALLEL_DELETES, BulkDeleteCoordinator
from bucketstream.storage.client import (
    BucketHandle,
    ObjectHandle,
    StorageClient,
    get_storage_client,
)
from bucketstream.storage.errors import (
    AuthFailure,
    ConfigurationError,
    MalformedResponse,
    NotFound,
    PartialFailure,
    RequestAborted,
    StorageError,
    TransportError,
    UploadSessionError,
    UpstreamError,
)
from bucketstream.storage.models import (
    BulkDeleteResult,
    BulkDeleteStatus,
    DeleteOutcome,
    ListPage,
    ObjectRef,
)
from bucketstream.storage.readable import ReadableObjectStream
from bucketstream.storage.writable import WritableObjectStream

__all__ = [
    "MAX_PARALLEL_DELETES",
    "AuthFailure",
    "BucketHandle",
    "BulkDeleteCoordinator",
    "BulkDeleteResult",
    "BulkDeleteStatus",
    "ConfigurationError",
    "DeleteOutcome",
    "ListPage",
    "MalformedResponse",
    "NotFound",
    "ObjectHandle",
    "ObjectRef",
    "PartialFailure",
    "ReadableObjectStream",
    "RequestAborted",
    "StorageClient",
    "StorageError",
    "TransportError",
    "UploadSessionError",
    "UpstreamError",
    "WritableObjectStream",
    "get_storage_client",
]
