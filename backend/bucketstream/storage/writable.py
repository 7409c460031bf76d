"""
Deferred, optionally compressed object upload stream.

Nothing is sent until the first write() (or close() of an empty upload).
Starting creates an UploadSession and wires its events back onto the
stream; consumer bytes pass through the compression stage before reaching
the session. Failures are fatal: resumption is left to the caller, who can
reopen with `uri=stream.session_uri, offset=stream.offset`.
"""
import enum
import logging
import time
from typing import Any, Dict, Optional

from bucketstream.storage.compression import CompressionStage, select_stage
from bucketstream.storage.errors import RequestAborted, UploadSessionError
from bucketstream.storage.models import ObjectRef, ResponseMeta, UploadOptions
from bucketstream.storage.upload_session import (
    UploadSession,
    UploadSessionFactory,
    UploadSessionParams,
)
from bucketstream.utils.logging import log_request_failure, log_upload_completed
from bucketstream.utils.metrics import storage_bytes_transferred_total

logger = logging.getLogger(__name__)


class WriteState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    UPLOADING = "uploading"
    FINISHING = "finishing"
    COMPLETE = "complete"
    FAILED = "failed"


class WritableObjectStream:
    """
    Upload of one object from consumer-written bytes.

    Usage:
        async with handle.open_write(gzip=True, metadata={"contentType": "text/plain"}) as stream:
            await stream.write(b"hello")
        print(stream.metadata)
    """

    def __init__(
        self,
        ref: ObjectRef,
        options: UploadOptions,
        session_factory: UploadSessionFactory,
    ):
        self.ref = ref
        self.options = options
        self.state = WriteState.IDLE
        self.response: Optional[ResponseMeta] = None
        self.metadata: Optional[Dict[str, Any]] = None
        self.bytes_written = 0  # As written by the consumer
        self.bytes_sent = 0  # After compression

        self._session_factory = session_factory
        self._stage: CompressionStage = select_stage(options.gzip)
        self._session: Optional[UploadSession] = None
        self._finished = False
        self._error: Optional[BaseException] = None
        self._aborted = False
        self._started_at: Optional[float] = None

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def session_uri(self) -> Optional[str]:
        """URI of the upload session, for caller-driven resumption."""
        return self._session.uri if self._session is not None else self.options.uri

    @property
    def offset(self) -> int:
        """Bytes the service has committed so far."""
        if self._session is not None:
            return self._session.offset
        return self.options.offset or 0

    # Session events

    def on_response(self, meta: ResponseMeta) -> None:
        self.response = meta

    def on_metadata(self, metadata: Dict[str, Any]) -> None:
        self.metadata = metadata

    def on_finish(self) -> None:
        self._finished = True

    # Consumer API

    async def write(self, data: bytes) -> None:
        """
        Feed bytes into the upload.

        Raises:
            RuntimeError: write() after close()
            StorageError: Session creation or transfer failed (fatal)
        """
        self._check_open()
        if self.state is WriteState.IDLE:
            await self._start()

        self.bytes_written += len(data)
        encoded = self._stage.compress(bytes(data))
        if encoded:
            await self._send(encoded)

    async def close(self) -> Optional[Dict[str, Any]]:
        """
        Flush the compression stage and finish the session.

        Returns:
            Object metadata reported by the service
        """
        if self.state is WriteState.COMPLETE:
            return self.metadata
        self._check_open()
        if self.state is WriteState.IDLE:
            await self._start()

        self.state = WriteState.FINISHING
        tail = self._stage.flush()
        if tail:
            await self._send(tail)

        try:
            await self._session.finish()
        except Exception as e:
            await self._session.abort()
            raise self._fail(e)

        if not self._finished:
            raise self._fail(UploadSessionError(f"Upload session for {self.ref} ended without finishing"))

        self.state = WriteState.COMPLETE
        log_upload_completed(
            logger,
            bucket=self.ref.bucket,
            key=self.ref.key,
            bytes_sent=self.bytes_sent,
            duration_ms=(time.time() - self._started_at) * 1000,
        )
        return self.metadata

    async def abort(self) -> None:
        """Cancel the upload. Idempotent."""
        if self._aborted:
            return
        self._aborted = True

        if self.state not in (WriteState.COMPLETE, WriteState.FAILED):
            self.state = WriteState.FAILED
            self._error = RequestAborted()
        if self._session is not None:
            await self._session.abort()

    async def __aenter__(self) -> "WritableObjectStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            await self.abort()
        else:
            await self.close()

    # Internals

    def _check_open(self) -> None:
        if self.state is WriteState.FAILED:
            raise self._error
        if self.state in (WriteState.FINISHING, WriteState.COMPLETE):
            raise RuntimeError("write() after close()")

    def _fail(self, error: BaseException) -> BaseException:
        if self.state is WriteState.FAILED and self._error is not None:
            return self._error
        self.state = WriteState.FAILED
        self._error = error
        log_request_failure(
            logger,
            operation="write",
            error=str(error),
            bucket=self.ref.bucket,
            key=self.ref.key,
            status_code=getattr(error, "status_code", None),
        )
        return error

    async def _start(self) -> None:
        self.state = WriteState.STARTING
        self._started_at = time.time()
        params = UploadSessionParams(
            ref=self.ref,
            metadata=self.options.session_metadata(),
            offset=self.options.offset,
            uri=self.options.uri,
            predefined_acl=self.options.resolved_acl(),
        )

        try:
            session = self._session_factory(params, self)
            self._session = session
            await session.start()
        except Exception as e:
            if self._session is not None:
                await self._session.abort()
            raise self._fail(e)

        if self.state is WriteState.FAILED:
            # Aborted while the session was being created
            await session.abort()
            raise self._error
        self.state = WriteState.UPLOADING

    async def _send(self, data: bytes) -> None:
        try:
            await self._session.write(data)
        except Exception as e:
            await self._session.abort()
            raise self._fail(e)
        self.bytes_sent += len(data)
        storage_bytes_transferred_total.labels(direction="upload").inc(len(data))
