"""
bucketstream - authenticated streaming client for cloud object storage.

Turns "read object" / "write object" operations into credential-bearing,
retrying, back-pressured byte streams over httpx.
"""
from bucketstream.version import __version__

from bucketstream.storage import (
    BucketHandle,
    ObjectHandle,
    ObjectRef,
    StorageClient,
)

__all__ = [
    "__version__",
    "BucketHandle",
    "ObjectHandle",
    "ObjectRef",
    "StorageClient",
]
