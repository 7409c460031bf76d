"""
Lazy, retrying object download stream.

Flow:
1. Stream is created in IDLE; nothing touches the network yet
2. First pull (async iteration / read()) opens an authenticated GET
3. 404 fails with NotFound, other >= 400 responses are retried on a fresh
   channel (at most MAX_RETRIES times), < 400 starts STREAMING
4. Once body bytes flow, any transport error is terminal: the consumer may
   already hold part of the body, and a restarted attempt would splice a
   second copy onto it
"""
import enum
import logging
from collections.abc import MutableMapping
from typing import Any, AsyncIterator, List, Optional, Protocol, runtime_checkable

from bucketstream.storage.channel import DuplexChannel, RequestChannel
from bucketstream.storage.errors import (
    AuthFailure,
    NotFound,
    RequestAborted,
    TransportError,
    UpstreamError,
)
from bucketstream.storage.models import ObjectRef, RequestDescriptor, ResponseMeta
from bucketstream.utils.logging import log_request_failure, log_request_retry
from bucketstream.utils.metrics import (
    storage_bytes_transferred_total,
    storage_request_retries_total,
)

logger = logging.getLogger(__name__)

# Retries after the first attempt (3 attempts in total)
MAX_RETRIES = 2


class ReadState(str, enum.Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    RETRYING = "retrying"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ReadState.COMPLETE, ReadState.FAILED})


@runtime_checkable
class ResponseSink(Protocol):
    """
    Downstream consumer that wants the upstream status and headers.

    An optional `headers_sent` attribute set to True makes it ignored.
    """

    def set_status(self, status_code: int) -> None:
        ...

    def set_header(self, name: str, value: str) -> None:
        ...


def propagate_response(meta: ResponseMeta, sink: Any) -> None:
    """
    Copy status and headers onto an HTTP-response-shaped destination.

    Supports ResponseSink implementations and plain objects exposing a
    mutable `headers` mapping plus a `status_code` attribute. Destinations
    that already sent their headers, or have neither shape, are left alone.
    """
    if getattr(sink, "headers_sent", False):
        return

    if isinstance(sink, ResponseSink):
        for name, value in meta.headers.items():
            sink.set_header(name, value)
        sink.set_status(meta.status_code)
    elif isinstance(getattr(sink, "headers", None), MutableMapping):
        sink.headers.update(meta.headers)
        sink.status_code = meta.status_code


class ReadableObjectStream:
    """
    Download of one object as an async byte iterator.

    Usage:
        stream = handle.open_read()
        stream.attach(http_response)  # optional, receives status + headers
        async for chunk in stream:
            ...
    """

    def __init__(
        self,
        channels: RequestChannel,
        ref: ObjectRef,
        descriptor: RequestDescriptor,
        max_retries: int = MAX_RETRIES,
    ):
        self.ref = ref
        self.state = ReadState.IDLE
        self.response: Optional[ResponseMeta] = None  # Accepted (< 400) response
        self.last_response: Optional[ResponseMeta] = None  # Response of the latest attempt
        self.attempts = 0
        self.retries = 0
        self.bytes_read = 0

        self._channels = channels
        self._descriptor = descriptor
        self._max_retries = max_retries
        self._channel: Optional[DuplexChannel] = None
        self._sinks: List[Any] = []
        self._error: Optional[BaseException] = None
        self._iterator: Optional[AsyncIterator[bytes]] = None
        self._aborted = False

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def attach(self, sink: Any) -> Any:
        """
        Register a destination for the upstream status and headers.

        If the response has already been accepted the destination receives
        it immediately, before any further bytes are produced.

        Returns:
            The sink, for chaining
        """
        if self.response is not None:
            propagate_response(self.response, sink)
        else:
            self._sinks.append(sink)
        return sink

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._iterator is None or self.state in TERMINAL_STATES:
            # A finished stream answers every new pull with its outcome
            self._iterator = self._stream()
        return self._iterator

    async def __aenter__(self) -> "ReadableObjectStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self.state not in TERMINAL_STATES:
            await self.abort()

    async def read(self) -> bytes:
        """Buffer the whole object in memory."""
        chunks = []
        async for chunk in self:
            chunks.append(chunk)
        return b"".join(chunks)

    async def abort(self) -> None:
        """Stop the download and release the live attempt. Idempotent."""
        if self._aborted:
            return
        self._aborted = True

        if self.state not in TERMINAL_STATES:
            self.state = ReadState.FAILED
            self._error = RequestAborted()
        if self._channel is not None:
            await self._channel.abort()

    # Internals

    def _fail(self, error: BaseException) -> BaseException:
        if self.state is ReadState.FAILED and self._error is not None:
            return self._error
        self.state = ReadState.FAILED
        self._error = error
        log_request_failure(
            logger,
            operation="read",
            error=str(error),
            bucket=self.ref.bucket,
            key=self.ref.key,
            status_code=getattr(error, "status_code", None),
            attempts=self.attempts,
        )
        return error

    async def _stream(self) -> AsyncIterator[bytes]:
        if self.state is ReadState.FAILED and self._error is not None:
            raise self._error
        if self.state is not ReadState.IDLE:
            raise RuntimeError("A ReadableObjectStream can only be consumed once")

        channel = await self._connect()
        self.state = ReadState.STREAMING

        try:
            async for chunk in channel.iter_bytes():
                self.bytes_read += len(chunk)
                storage_bytes_transferred_total.labels(direction="download").inc(len(chunk))
                yield chunk
        except Exception as e:
            raise self._fail(e)
        finally:
            if self.state is ReadState.STREAMING and not channel.done:
                # Consumer stopped pulling before the end of the body
                await self.abort()

        if self.state is ReadState.FAILED:
            raise self._error
        self.state = ReadState.COMPLETE

    async def _connect(self) -> DuplexChannel:
        """Run attempts until one is accepted or the budget is spent."""
        while True:
            if self._aborted:
                raise self._error

            self.state = ReadState.AUTHENTICATING
            self.attempts += 1
            channel = self._channels.open(self._descriptor, attempt=self.attempts)
            self._channel = channel

            try:
                await channel.wait_authorized()
                self.state = ReadState.REQUESTING
                meta = await channel.response()
            except AuthFailure as e:
                raise self._fail(e)
            except RequestAborted as e:
                raise self._fail(e)
            except TransportError as e:
                # Nothing reached the consumer yet, so the attempt can be replaced
                await channel.abort()
                if self.retries < self._max_retries:
                    self._retry(error=str(e))
                    continue
                raise self._fail(e)
            except Exception as e:
                raise self._fail(e)
            except BaseException:
                # Cancelled while waiting on the attempt
                await self.abort()
                raise

            self.last_response = meta
            if meta.status_code == 404:
                await channel.abort()
                raise self._fail(NotFound())
            if meta.status_code >= 400:
                # Abandon the error body without delivering it downstream
                await channel.abort()
                if self.retries < self._max_retries:
                    self._retry(status_code=meta.status_code)
                    continue
                raise self._fail(UpstreamError(meta.status_code))

            self.response = meta
            sinks, self._sinks = self._sinks, []
            for sink in sinks:
                propagate_response(meta, sink)
            return channel

    def _retry(
        self,
        status_code: Optional[int] = None,
        error: Optional[str] = None
    ) -> None:
        self.retries += 1
        self.state = ReadState.RETRYING
        storage_request_retries_total.labels(operation="read").inc()
        log_request_retry(
            logger,
            bucket=self.ref.bucket,
            key=self.ref.key,
            attempt=self.attempts + 1,
            status_code=status_code,
            error=error,
        )
