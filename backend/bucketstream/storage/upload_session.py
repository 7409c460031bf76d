"""
Resumable upload sessions.

The write stream only depends on the UploadSession protocol. The default
implementation speaks the JSON API resumable protocol:

1. POST {upload_base}/b/{bucket}/o?uploadType=resumable&name=<key> with the
   object metadata; the session URI comes back in the Location header
2. PUT bounded chunks to the session URI with Content-Range
   - intermediate chunks: "bytes a-b/*", answered with 308 + Range
   - final chunk: "bytes a-b/<total>", answered with 200/201 + metadata
3. A caller that kept `uri` and `offset` can resume by passing them back;
   the first `offset` bytes it writes are skipped
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol
from urllib.parse import quote

from bucketstream.config import UPLOAD_CHUNK_GRANULARITY
from bucketstream.storage.channel import DuplexChannel, RequestChannel
from bucketstream.storage.errors import (
    MalformedResponse,
    RequestAborted,
    UploadSessionError,
)
from bucketstream.storage.models import ObjectRef, RequestDescriptor, ResponseMeta

logger = logging.getLogger(__name__)

RESUME_INCOMPLETE = 308

_RANGE_RE = re.compile(r"bytes=0-(\d+)")


@dataclass(frozen=True)
class UploadSessionParams:
    """What an upload session is created with."""

    ref: ObjectRef
    metadata: Dict[str, Any] = field(default_factory=dict)
    offset: Optional[int] = None
    uri: Optional[str] = None
    predefined_acl: Optional[str] = None


class UploadListener(Protocol):
    """Receives the session lifecycle events."""

    def on_response(self, meta: ResponseMeta) -> None:
        ...

    def on_metadata(self, metadata: Dict[str, Any]) -> None:
        ...

    def on_finish(self) -> None:
        ...


class UploadSession(Protocol):
    """External collaborator that moves bytes into one stored object."""

    uri: Optional[str]
    offset: int

    async def start(self) -> None:
        ...

    async def write(self, data: bytes) -> None:
        ...

    async def finish(self) -> None:
        ...

    async def abort(self) -> None:
        ...


UploadSessionFactory = Callable[[UploadSessionParams, UploadListener], UploadSession]


class ResumableUploadSession:
    """
    Default UploadSession over authenticated request channels.

    Holds at most `chunk_size` bytes (plus one incoming write) in memory.
    """

    def __init__(
        self,
        channels: RequestChannel,
        params: UploadSessionParams,
        listener: UploadListener,
        upload_base_url: str,
        chunk_size: int = 8 * 1024 * 1024,
    ):
        if chunk_size <= 0 or chunk_size % UPLOAD_CHUNK_GRANULARITY != 0:
            raise ValueError(f"chunk_size must be a positive multiple of {UPLOAD_CHUNK_GRANULARITY}")

        self.params = params
        self.uri: Optional[str] = params.uri
        self.offset = params.offset or 0  # Bytes the service has committed

        self._channels = channels
        self._listener = listener
        self._upload_base_url = upload_base_url.rstrip("/")
        self._chunk_size = chunk_size
        self._buffer = bytearray()
        self._skip = self.offset if params.uri else 0
        self._active: Optional[DuplexChannel] = None
        self._aborted = False

    async def start(self) -> None:
        """
        Create the session, unless resuming an existing URI.

        Raises:
            UploadSessionError: The service refused to create the session
            AuthFailure / TransportError: From the underlying channel
        """
        if self.uri:
            logger.debug(f"Resuming upload session at offset {self.offset}")
            return

        ref = self.params.ref
        query = {"uploadType": "resumable", "name": ref.key}
        if self.params.predefined_acl:
            query["predefinedAcl"] = self.params.predefined_acl

        descriptor = RequestDescriptor(
            uri=f"{self._upload_base_url}/b/{quote(ref.bucket, safe='')}/o",
            method="POST",
            query=query,
            headers={"Content-Type": "application/json; charset=UTF-8"},
            body=json.dumps(self.params.metadata).encode("utf-8"),
        )
        meta, _ = await self._call(descriptor)
        if meta.is_error:
            raise UploadSessionError(
                f"Could not create upload session for {ref} (HTTP {meta.status_code})"
            )

        location = meta.headers.get("location")
        if not location:
            raise UploadSessionError(f"Upload session for {ref} returned no session URI")
        self.uri = location
        logger.debug(f"Created upload session for {ref}")

    async def write(self, data: bytes) -> None:
        if self._skip:
            # Bytes the service already has from a previous attempt
            dropped = min(self._skip, len(data))
            data = data[dropped:]
            self._skip -= dropped

        self._buffer += data
        while len(self._buffer) > self._chunk_size:
            chunk = bytes(self._buffer[:self._chunk_size])
            del self._buffer[:self._chunk_size]
            await self._put_chunk(chunk)

    async def finish(self) -> None:
        """Send the remaining bytes as the final chunk."""
        chunk = bytes(self._buffer)
        self._buffer.clear()
        await self._put_chunk(chunk, final=True)

    async def abort(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        if self._active is not None:
            await self._active.abort()

    async def _put_chunk(self, chunk: bytes, final: bool = False) -> None:
        if self._aborted:
            raise RequestAborted()
        if not self.uri:
            raise UploadSessionError("Upload session has not been started")

        start = self.offset
        total = str(start + len(chunk)) if final else "*"
        if chunk:
            content_range = f"bytes {start}-{start + len(chunk) - 1}/{total}"
        else:
            content_range = f"bytes */{total}"

        descriptor = RequestDescriptor(
            uri=self.uri,
            method="PUT",
            headers={"Content-Range": content_range},
            body=chunk,
        )
        meta, body = await self._call(descriptor)

        if final and meta.status_code in (200, 201):
            self.offset = start + len(chunk)
            self._listener.on_response(meta)
            self._listener.on_metadata(self._decode_metadata(body))
            self._listener.on_finish()
            return

        if not final and meta.status_code == RESUME_INCOMPLETE:
            committed = self._committed_offset(meta, fallback=start + len(chunk))
            if committed < start + len(chunk):
                # Service kept only part of the chunk; resend the rest next time
                self._buffer[:0] = chunk[committed - start:]
            self.offset = committed
            return

        raise UploadSessionError(
            f"Upload of {self.params.ref} failed at offset {start} (HTTP {meta.status_code})"
        )

    async def _call(self, descriptor: RequestDescriptor):
        channel = self._channels.open(descriptor)
        self._active = channel
        try:
            meta = await channel.response()
            await channel.wait()
        finally:
            self._active = None
        return meta, channel.body or b""

    def _committed_offset(self, meta: ResponseMeta, fallback: int) -> int:
        """Offset the service reports via Range; `fallback` when it sends none."""
        header = meta.headers.get("range")
        match = _RANGE_RE.match(header) if header else None
        if not match:
            return fallback

        committed = int(match.group(1)) + 1
        if committed < self.offset:
            raise UploadSessionError(
                f"Service rewound {self.params.ref} to offset {committed}, "
                f"below already released offset {self.offset}"
            )
        return committed

    @staticmethod
    def _decode_metadata(body: bytes) -> Dict[str, Any]:
        if not body:
            return {}
        try:
            metadata = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedResponse(f"Upload finished with an unreadable metadata body: {e}") from e
        if not isinstance(metadata, dict):
            raise MalformedResponse("Upload finished with a non-object metadata body")
        return metadata
