"""
Storage client facade.

Wires settings, the shared httpx client, the credential gate and the
request channel together, and hands out immutable bucket/object handles.
"""
import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Union
from urllib.parse import quote

import aiofiles
import httpx

from bucketstream.config import Settings
from bucketstream.config import settings as default_settings
from bucketstream.storage.bucket_ops import BucketOperations
from bucketstream.storage.bulk_delete import BulkDeleteCoordinator
from bucketstream.storage.channel import RequestChannel
from bucketstream.storage.credentials import (
    CredentialGate,
    MetadataServerTokenSource,
    StaticTokenSource,
    TokenSource,
)
from bucketstream.storage.errors import ConfigurationError
from bucketstream.storage.models import (
    BulkDeleteResult,
    ListPage,
    ObjectRef,
    RequestDescriptor,
    UploadOptions,
)
from bucketstream.storage.readable import ReadableObjectStream
from bucketstream.storage.upload_session import (
    ResumableUploadSession,
    UploadListener,
    UploadSession,
    UploadSessionFactory,
    UploadSessionParams,
)
from bucketstream.storage.writable import WritableObjectStream
from bucketstream.utils.storage_metrics import track_storage_operation

logger = logging.getLogger(__name__)


class StorageClient:
    """
    Entry point for object storage access.

    Usage:
        async with StorageClient() as client:
            data = await client.bucket("my-bucket").object("logs/2024.gz").download()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        token_source: Optional[TokenSource] = None,
        upload_session_factory: Optional[UploadSessionFactory] = None,
    ):
        """
        Args:
            settings: Client settings (module-level settings when omitted)
            http_client: Shared httpx client; one is created (and owned) when omitted
            token_source: Where bearer tokens come from; defaults to the static
                STORAGE_ACCESS_TOKEN or the metadata server
            upload_session_factory: Builds UploadSessions for writable streams

        Raises:
            ConfigurationError: project_id_required is set without a project_id
        """
        self.settings = settings or default_settings
        if self.settings.project_id_required and not self.settings.project_id:
            raise ConfigurationError("project_id is required but STORAGE_PROJECT_ID is not set")

        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=self.settings.request_timeout)

        if token_source is None:
            if self.settings.access_token:
                token_source = StaticTokenSource(self.settings.access_token)
            else:
                token_source = MetadataServerTokenSource(self._http_client)

        self.gate = CredentialGate(
            token_source,
            self.settings.scopes,
            user_agent=self.settings.user_agent,
        )
        self.channels = RequestChannel(self._http_client, self.gate)
        self.bucket_ops = BucketOperations(self.channels, self.settings.bucket_base_url)
        self.bulk_deletes = BulkDeleteCoordinator(self.bucket_ops)
        self.upload_session_factory = upload_session_factory or self._resumable_session

    async def __aenter__(self) -> "StorageClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def bucket(self, name: Optional[str] = None) -> "BucketHandle":
        """
        Handle on a bucket; `name` defaults to STORAGE_BUCKET.

        Raises:
            ValueError: No name given and no default bucket configured
        """
        name = name or self.settings.bucket
        if not name:
            raise ValueError("A bucket name is needed to use Google Cloud Storage.")
        return BucketHandle(client=self, name=name)

    def tmp_bucket(self) -> "BucketHandle":
        if not self.settings.tmp_bucket:
            raise ValueError("No temporary bucket configured (STORAGE_TMP_BUCKET)")
        return BucketHandle(client=self, name=self.settings.tmp_bucket)

    def object(self, ref: ObjectRef) -> "ObjectHandle":
        return ObjectHandle(client=self, ref=ref)

    def download_descriptor(self, ref: ObjectRef) -> RequestDescriptor:
        return RequestDescriptor(
            uri=f"{self.settings.download_base_url}/{quote(ref.bucket, safe='')}/{quote(ref.key, safe='')}",
            method="GET",
            headers={"Accept-Encoding": "gzip"},
        )

    def _resumable_session(
        self,
        params: UploadSessionParams,
        listener: UploadListener
    ) -> UploadSession:
        return ResumableUploadSession(
            self.channels,
            params,
            listener,
            upload_base_url=self.settings.upload_base_url,
            chunk_size=self.settings.upload_chunk_size,
        )


@dataclass(frozen=True)
class BucketHandle:
    """Immutable handle on one bucket."""

    client: StorageClient
    name: str

    def object(self, key: str) -> "ObjectHandle":
        return ObjectHandle(client=self.client, ref=ObjectRef(bucket=self.name, key=key))

    @track_storage_operation("list")
    async def list_objects(self, query: Optional[Mapping[str, Any]] = None) -> ListPage:
        return await self.client.bucket_ops.list_page(self.name, query)

    def iter_pages(self, query: Optional[Mapping[str, Any]] = None) -> AsyncIterator[ListPage]:
        return self.client.bucket_ops.iter_pages(self.name, query)

    @track_storage_operation("delete")
    async def delete_object(self, key: str) -> None:
        await self.client.bucket_ops.delete(ObjectRef(bucket=self.name, key=key))

    @track_storage_operation("delete_matching")
    async def delete_matching(
        self,
        query: Optional[Mapping[str, Any]] = None,
        force: bool = False
    ) -> BulkDeleteResult:
        return await self.client.bulk_deletes.delete_matching(self.name, query, force=force)


@dataclass(frozen=True)
class ObjectHandle:
    """Immutable handle on one object."""

    client: StorageClient
    ref: ObjectRef

    @property
    def bucket(self) -> BucketHandle:
        return BucketHandle(client=self.client, name=self.ref.bucket)

    @property
    def key(self) -> str:
        return self.ref.key

    def open_read(self) -> ReadableObjectStream:
        """Lazy download stream; nothing is sent until the first pull."""
        return ReadableObjectStream(
            self.client.channels,
            self.ref,
            self.client.download_descriptor(self.ref),
        )

    @track_storage_operation("download")
    async def download(self, destination: Optional[Union[str, os.PathLike]] = None) -> Optional[bytes]:
        """
        Download the object.

        Args:
            destination: File path to write to; when omitted the bytes are returned

        Returns:
            Object bytes, or None when written to `destination`
        """
        stream = self.open_read()
        if destination is None:
            return await stream.read()

        async with stream:
            async with aiofiles.open(destination, "wb") as fh:
                async for chunk in stream:
                    await fh.write(chunk)
        logger.info(f"Downloaded {self.ref} to {destination} ({stream.bytes_read} bytes)")
        return None

    def open_write(
        self,
        gzip: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
        offset: Optional[int] = None,
        uri: Optional[str] = None,
        predefined_acl: Optional[str] = None,
        private: bool = False,
        public: bool = False,
    ) -> WritableObjectStream:
        """Lazy upload stream; the session starts on the first write or close."""
        options = UploadOptions(
            gzip=gzip,
            metadata=metadata or {},
            offset=offset,
            uri=uri,
            predefined_acl=predefined_acl,
            private=private,
            public=public,
        )
        return WritableObjectStream(self.ref, options, self.client.upload_session_factory)

    @track_storage_operation("delete")
    async def delete(self) -> None:
        await self.client.bucket_ops.delete(self.ref)


# Singleton instance
_storage_client: Optional[StorageClient] = None


def get_storage_client() -> StorageClient:
    """
    Get the singleton storage client built from the module-level settings.

    Returns:
        StorageClient instance
    """
    global _storage_client
    if _storage_client is None:
        _storage_client = StorageClient()
    return _storage_client
