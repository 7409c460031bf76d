"""
Authenticated request channels.

RequestChannel.open() turns a RequestDescriptor into a DuplexChannel: the
request is authorized and sent from a background task while the caller
pulls the response body (GET/DELETE) or pushes the request body
(POST/PUT/PATCH).

Lifecycle of a channel:

    PENDING -> RESPONDED -> COMPLETE
        \\          \\
         -> FAILED   -> FAILED

At most one response is produced, followed by exactly one terminal state.
No body bytes are yielded once the channel has failed.
"""
import asyncio
import enum
import logging
from typing import AsyncIterator, Optional, Tuple

import httpx

from bucketstream.storage.credentials import CredentialGate
from bucketstream.storage.errors import (
    AuthFailure,
    RequestAborted,
    StorageError,
    TransportError,
)
from bucketstream.storage.models import RequestDescriptor, ResponseMeta
from bucketstream.utils.logging import log_request_attempt
from bucketstream.utils.metrics import storage_requests_total

logger = logging.getLogger(__name__)

# Chunks a writer may queue ahead of the transport before write() blocks
DEFAULT_WRITE_QUEUE_SIZE = 4

_END_OF_BODY = None


class ChannelState(str, enum.Enum):
    PENDING = "pending"
    RESPONDED = "responded"
    COMPLETE = "complete"
    FAILED = "failed"


class DuplexChannel:
    """
    One in-flight authenticated HTTP request.

    Read-class channels (GET, DELETE, HEAD) expose the response body through
    iter_bytes()/read()/drain(). Write-class channels (POST, PUT, PATCH)
    accept the request body through write()/close(), unless the descriptor
    already carries a fixed body.
    """

    def __init__(
        self,
        descriptor: RequestDescriptor,
        http_client: httpx.AsyncClient,
        gate: CredentialGate,
        write_queue_size: int = DEFAULT_WRITE_QUEUE_SIZE,
        attempt: int = 1,
    ):
        self.descriptor = descriptor
        self.readable = descriptor.is_read
        self.writable = not self.readable
        self.state = ChannelState.PENDING
        self.body: Optional[bytes] = None  # Response body of write-class requests
        self.bytes_sent = 0

        self._http_client = http_client
        self._gate = gate
        self._attempt = attempt
        self._task: Optional[asyncio.Task] = None
        self._http_response: Optional[httpx.Response] = None
        self._response_meta: Optional[ResponseMeta] = None
        self._error: Optional[BaseException] = None
        self._settled = asyncio.Event()  # response received or failed before one
        self._authorized = asyncio.Event()  # credential attached or failed before that
        self._done = asyncio.Event()  # terminal state reached
        self._aborted = False
        self._body_started = False
        self._closing = descriptor.body is not None
        self._queue: Optional[asyncio.Queue] = (
            asyncio.Queue(maxsize=write_queue_size)
            if self.writable and descriptor.body is None else None
        )

    # Lifecycle

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def response_meta(self) -> Optional[ResponseMeta]:
        return self._response_meta

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def _fail(self, error: BaseException) -> None:
        if self._done.is_set():
            return
        self._error = error
        self.state = ChannelState.FAILED
        self._authorized.set()
        self._settled.set()
        self._done.set()

    def _complete(self) -> None:
        if self._done.is_set():
            return
        self.state = ChannelState.COMPLETE
        self._done.set()

    async def _run(self) -> None:
        descriptor = self.descriptor
        log_request_attempt(logger, descriptor.method, descriptor.uri, self._attempt)

        try:
            authorized = await self._gate.authorize(descriptor)
            self._authorized.set()
            request = self._http_client.build_request(
                authorized.method,
                authorized.uri,
                params=dict(authorized.query) or None,
                headers=dict(authorized.headers),
                content=self._request_content(authorized),
            )
            response = await self._http_client.send(request, stream=True)
        except AuthFailure as e:
            self._fail(e)
            return
        except httpx.HTTPError as e:
            self._fail(TransportError(f"{descriptor.method} {descriptor.uri} failed: {e}", cause=e))
            return
        except Exception as e:
            self._fail(e)
            return

        self._http_response = response
        if self._done.is_set():
            # Aborted while the request was being sent
            await response.aclose()
            return

        self._response_meta = ResponseMeta.from_httpx(response)
        self.state = ChannelState.RESPONDED
        storage_requests_total.labels(
            method=descriptor.method,
            status=response.status_code
        ).inc()
        self._settled.set()

        if self.writable:
            try:
                self.body = await response.aread()
            except httpx.HTTPError as e:
                self._fail(TransportError(f"Reading response of {descriptor.uri} failed: {e}", cause=e))
                return
            finally:
                await response.aclose()
            self._complete()

    def _request_content(self, descriptor: RequestDescriptor):
        if descriptor.body is not None:
            return descriptor.body
        if self._queue is not None:
            return self._body_chunks()
        return None

    async def _body_chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is _END_OF_BODY:
                return
            self.bytes_sent += len(chunk)
            yield chunk

    async def wait_authorized(self) -> None:
        """
        Wait until the credential has been attached to the request.

        Raises:
            StorageError: The terminal error, if the channel failed first
        """
        await self._authorized.wait()
        if self._error is not None and self._response_meta is None:
            raise self._error

    # Response side

    async def response(self) -> ResponseMeta:
        """
        Wait for the response status and headers.

        Raises:
            StorageError: The terminal error, if the channel failed first
        """
        await self._settled.wait()
        if self._response_meta is not None:
            return self._response_meta
        raise self._error

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """
        Pull the response body chunk by chunk.

        The transport is only read when the consumer asks for the next chunk.

        Raises:
            TransportError: Connection failed mid-body
        """
        if not self.readable:
            raise TypeError(f"{self.descriptor.method} channels have no readable body")
        await self.response()
        if self._body_started:
            raise RuntimeError("Response body already consumed")
        self._body_started = True

        response = self._http_response
        try:
            async for chunk in response.aiter_bytes():
                if self.state is ChannelState.FAILED:
                    break
                if chunk:
                    yield chunk
        except Exception as e:
            if self.state is not ChannelState.FAILED:
                if not isinstance(e, httpx.HTTPError):
                    self._fail(e)
                    raise
                self._fail(TransportError(f"Reading {self.descriptor.uri} failed: {e}", cause=e))
            raise self._error from e
        finally:
            await response.aclose()

        if self.state is ChannelState.FAILED:
            raise self._error
        self._complete()

    async def read(self) -> bytes:
        """Read the whole response body into memory."""
        chunks = []
        async for chunk in self.iter_bytes():
            chunks.append(chunk)
        return b"".join(chunks)

    async def drain(self) -> ResponseMeta:
        """Discard the response body and wait for completion."""
        meta = await self.response()
        if self.readable and not self._body_started:
            async for _ in self.iter_bytes():
                pass
        await self.wait()
        return meta

    async def wait(self) -> ResponseMeta:
        """
        Wait for the terminal state.

        Read-class channels only complete once their body has been consumed.

        Raises:
            StorageError: The terminal error
        """
        await self._done.wait()
        if self._error is not None:
            raise self._error
        return self._response_meta

    # Request side

    async def write(self, data: bytes) -> None:
        """
        Queue body bytes for the transport.

        Blocks while the queue is full, so a slow upstream slows the writer
        down instead of growing an in-memory buffer.
        """
        if self._queue is None:
            raise TypeError(f"{self.descriptor.method} channel does not accept body writes")
        if self._closing:
            raise RuntimeError("write() after close()")
        if data:
            await self._enqueue(bytes(data))

    async def close(self) -> ResponseMeta:
        """End the request body and wait for the response to complete."""
        if not self.writable:
            raise TypeError(f"{self.descriptor.method} channels have no writable body")
        if not self._closing:
            self._closing = True
            await self._enqueue(_END_OF_BODY)
        return await self.wait()

    async def _enqueue(self, item: Optional[bytes]) -> None:
        if self._error is not None:
            raise self._error

        put = asyncio.ensure_future(self._queue.put(item))
        finished = asyncio.ensure_future(self._done.wait())
        try:
            await asyncio.wait({put, finished}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            finished.cancel()
            if not put.done():
                put.cancel()

        if self._error is not None:
            raise self._error
        if put.cancelled():
            raise TransportError("Request finished before its body was fully sent")

    # Cancellation

    async def abort(self) -> None:
        """
        Release the underlying request.

        Idempotent: safe before, during or after completion. A channel that
        had not reached a terminal state fails with RequestAborted; one that
        had keeps its outcome.
        """
        if self._aborted:
            return
        self._aborted = True

        self._fail(RequestAborted())
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self._http_response is not None:
            await self._http_response.aclose()


class RequestChannel:
    """Opens authenticated DuplexChannels over one shared httpx client."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        gate: CredentialGate,
        write_queue_size: int = DEFAULT_WRITE_QUEUE_SIZE,
    ):
        self._http_client = http_client
        self._gate = gate
        self._write_queue_size = write_queue_size

    @property
    def gate(self) -> CredentialGate:
        return self._gate

    def open(self, descriptor: RequestDescriptor, attempt: int = 1) -> DuplexChannel:
        """
        Start one authenticated request.

        Must be called from a running event loop. Authorization failures and
        transport errors surface through the returned channel.
        """
        channel = DuplexChannel(
            descriptor,
            self._http_client,
            self._gate,
            write_queue_size=self._write_queue_size,
            attempt=attempt,
        )
        channel.start()
        return channel

    async def fetch(self, descriptor: RequestDescriptor) -> Tuple[ResponseMeta, bytes]:
        """
        Issue a request and buffer its (small) response body.

        Used for JSON API calls such as listing; object bodies go through
        the streaming classes instead.
        """
        channel = self.open(descriptor)
        try:
            meta = await channel.response()
            if channel.readable:
                body = await channel.read()
            else:
                await channel.wait()
                body = channel.body or b""
        except StorageError:
            await channel.abort()
            raise
        return meta, body
