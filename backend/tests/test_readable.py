"""
Tests for the retrying object download stream.
"""
import asyncio

import httpx
import pytest
from prometheus_client import REGISTRY

from bucketstream.storage.errors import (
    AuthFailure,
    NotFound,
    RequestAborted,
    TransportError,
    UpstreamError,
)
from bucketstream.storage.readable import ReadState

from helpers import TEST_TOKEN, BrokenTokenSource


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered in fixed chunks, optionally failing midway."""

    def __init__(self, chunks, error=None):
        self.chunks = chunks
        self.error = error

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error


class FakeHttpResponse:
    """HTTP-response-shaped destination (headers mapping + status_code)."""

    def __init__(self):
        self.headers = {}
        self.status_code = None


class RecordingSink:
    """ResponseSink implementation."""

    def __init__(self, headers_sent=False):
        self.status = None
        self.headers = []
        self.headers_sent = headers_sent

    def set_status(self, status_code):
        self.status = status_code

    def set_header(self, name, value):
        self.headers.append((name, value))


def sequence(*responses):
    """Handler answering with the given responses in order."""
    pending = list(responses)

    def handler(request):
        response = pending.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    return handler


def retries_counted() -> float:
    return REGISTRY.get_sample_value("storage_request_retries_total", {"operation": "read"}) or 0.0


class TestReadableObjectStream:
    """Tests for ReadableObjectStream."""

    @pytest.mark.asyncio
    async def test_download_hello(self, make_client):
        """Test a plain download with the expected request shape."""
        client, recorder = make_client(lambda request: httpx.Response(
            200, content=b"hello", headers={"Content-Type": "application/gzip"}
        ))

        data = await client.bucket().object("logs/2024.gz").download()

        assert data == b"hello"
        request = recorder.requests[0]
        assert request.method == "GET"
        assert request.url.host == "storage.googleapis.com"
        assert request.url.raw_path == b"/test-bucket/logs%2F2024.gz"
        assert request.headers["Accept-Encoding"] == "gzip"
        assert request.headers["Authorization"] == f"Bearer {TEST_TOKEN}"

    @pytest.mark.asyncio
    async def test_lazy_start(self, make_client):
        """Test nothing is sent before the first pull."""
        client, recorder = make_client(lambda request: httpx.Response(200, content=b"x"))

        stream = client.bucket().object("a.txt").open_read()

        assert stream.state is ReadState.IDLE
        assert recorder.requests == []
        assert await stream.read() == b"x"
        assert stream.state is ReadState.COMPLETE

    @pytest.mark.asyncio
    async def test_server_errors_retried_then_fail(self, make_client):
        """Test 500/502/503 exhaust the retry budget after three attempts."""
        client, recorder = make_client(sequence(
            httpx.Response(500),
            httpx.Response(502),
            httpx.Response(503),
            httpx.Response(200, content=b"never"),
        ))
        before = retries_counted()

        stream = client.bucket().object("a.txt").open_read()
        with pytest.raises(UpstreamError) as exc_info:
            await stream.read()

        assert exc_info.value.status_code == 503
        assert recorder.count("GET") == 3
        assert stream.attempts == 3
        assert stream.retries == 2
        assert stream.state is ReadState.FAILED
        assert retries_counted() - before == 2

    @pytest.mark.asyncio
    async def test_retry_then_success(self, make_client):
        """Test a failed attempt is discarded and the next one streams."""
        client, recorder = make_client(sequence(
            httpx.Response(503, content=b"error page"),
            httpx.Response(200, content=b"body"),
        ))

        stream = client.bucket().object("a.txt").open_read()
        data = await stream.read()

        assert data == b"body"
        assert recorder.count("GET") == 2
        assert stream.response.status_code == 200

    @pytest.mark.asyncio
    async def test_not_found_not_retried(self, make_client):
        """Test 404 fails immediately after one request."""
        client, recorder = make_client(lambda request: httpx.Response(404))

        stream = client.bucket().object("missing.txt").open_read()
        with pytest.raises(NotFound):
            await stream.read()

        assert recorder.count("GET") == 1
        assert stream.last_response.status_code == 404
        assert stream.response is None

    @pytest.mark.asyncio
    async def test_failed_stream_read_twice(self, make_client):
        """Test a failed stream raises its error again on a second read."""
        client, recorder = make_client(lambda request: httpx.Response(404))

        stream = client.bucket().object("missing.txt").open_read()
        with pytest.raises(NotFound):
            await stream.read()
        with pytest.raises(NotFound) as exc_info:
            await stream.read()

        assert exc_info.value is stream.error
        assert recorder.count("GET") == 1

    @pytest.mark.asyncio
    async def test_completed_stream_read_twice(self, make_client):
        """Test a completed stream refuses to be consumed again."""
        client, recorder = make_client(lambda request: httpx.Response(200, content=b"hello"))

        stream = client.bucket().object("a.txt").open_read()
        assert await stream.read() == b"hello"
        with pytest.raises(RuntimeError):
            await stream.read()

        assert stream.state is ReadState.COMPLETE
        assert recorder.count("GET") == 1

    @pytest.mark.asyncio
    async def test_auth_failure_not_retried(self, make_client):
        """Test credential failures surface without any request."""
        client, recorder = make_client(
            lambda request: httpx.Response(200),
            token_source=BrokenTokenSource(),
        )

        stream = client.bucket().object("a.txt").open_read()
        with pytest.raises(AuthFailure):
            await stream.read()

        assert recorder.requests == []
        assert stream.attempts == 1

    @pytest.mark.asyncio
    async def test_connect_errors_share_retry_budget(self, make_client):
        """Test connection failures before a response are retried."""
        client, recorder = make_client(sequence(
            httpx.ConnectError("refused"),
            httpx.ConnectError("refused"),
            httpx.Response(200, content=b"ok"),
        ))

        data = await client.bucket().object("a.txt").download()

        assert data == b"ok"
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_connect_errors_exhaust_budget(self, make_client):
        """Test repeated connection failures end in TransportError."""
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client, recorder = make_client(handler)

        with pytest.raises(TransportError):
            await client.bucket().object("a.txt").download()
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_mid_stream_transport_error(self, make_client):
        """Test a failure after bytes were delivered is terminal and not retried."""
        client, recorder = make_client(lambda request: httpx.Response(
            200, stream=ChunkedStream([b"partial"], error=httpx.ReadError("connection reset"))
        ))

        stream = client.bucket().object("a.txt").open_read()
        received = []
        with pytest.raises(TransportError) as exc_info:
            async for chunk in stream:
                received.append(chunk)

        assert received == [b"partial"]
        assert isinstance(exc_info.value.cause, httpx.ReadError)
        assert len(recorder.requests) == 1
        assert stream.state is ReadState.FAILED

    @pytest.mark.asyncio
    async def test_attach_before_response(self, make_client):
        """Test sinks attached early receive status and headers on acceptance."""
        client, _ = make_client(lambda request: httpx.Response(
            200, content=b"data", headers={"Content-Type": "text/plain", "ETag": "abc"}
        ))

        stream = client.bucket().object("a.txt").open_read()
        destination = stream.attach(FakeHttpResponse())
        sink = stream.attach(RecordingSink())

        assert destination.status_code is None
        await stream.read()

        assert destination.status_code == 200
        assert destination.headers["content-type"] == "text/plain"
        assert destination.headers["etag"] == "abc"
        assert sink.status == 200
        assert ("etag", "abc") in sink.headers

    @pytest.mark.asyncio
    async def test_attach_after_response(self, make_client):
        """Test sinks attached after acceptance receive the response immediately."""
        client, _ = make_client(lambda request: httpx.Response(
            200, stream=ChunkedStream([b"one", b"two"]), headers={"ETag": "abc"}
        ))

        stream = client.bucket().object("a.txt").open_read()
        iterator = stream.__aiter__()
        first = await iterator.__anext__()

        late = stream.attach(FakeHttpResponse())

        assert first == b"one"
        assert late.status_code == 200
        assert late.headers["etag"] == "abc"
        assert [chunk async for chunk in iterator] == [b"two"]

    @pytest.mark.asyncio
    async def test_sink_with_headers_sent_ignored(self, make_client):
        """Test destinations that already sent headers are left alone."""
        client, _ = make_client(lambda request: httpx.Response(200, content=b"x"))

        stream = client.bucket().object("a.txt").open_read()
        sink = stream.attach(RecordingSink(headers_sent=True))
        await stream.read()

        assert sink.status is None
        assert sink.headers == []

    @pytest.mark.asyncio
    async def test_error_response_not_propagated(self, make_client):
        """Test rejected attempts never reach attached sinks."""
        client, _ = make_client(lambda request: httpx.Response(500, headers={"X-Error": "1"}))

        stream = client.bucket().object("a.txt").open_read()
        destination = stream.attach(FakeHttpResponse())
        with pytest.raises(UpstreamError):
            await stream.read()

        assert destination.status_code is None
        assert destination.headers == {}

    @pytest.mark.asyncio
    async def test_double_abort(self, make_client):
        """Test abort() is idempotent and blocks further reads."""
        client, recorder = make_client(lambda request: httpx.Response(200, content=b"x"))

        stream = client.bucket().object("a.txt").open_read()
        await stream.abort()
        await stream.abort()

        assert stream.state is ReadState.FAILED
        assert isinstance(stream.error, RequestAborted)
        with pytest.raises(RequestAborted):
            await stream.read()
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_context_manager_aborts_unfinished_stream(self, make_client):
        """Test leaving the context early releases the download."""
        client, _ = make_client(lambda request: httpx.Response(
            200, stream=ChunkedStream([b"one", b"two", b"three"])
        ))

        stream = client.bucket().object("a.txt").open_read()
        async with stream:
            async for chunk in stream:
                assert chunk == b"one"
                break

        assert stream.state is ReadState.FAILED
        assert isinstance(stream.error, RequestAborted)
        assert stream.bytes_read == 3

    @pytest.mark.asyncio
    async def test_cancelled_while_waiting_for_response(self, make_client):
        """Test cancelling a pending read releases the in-flight request."""
        cancelled = []

        async def handler(request):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise
            return httpx.Response(200)

        client, _ = make_client(handler)

        stream = client.bucket().object("slow.txt").open_read()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(stream.read(), 0.05)
        await asyncio.sleep(0.01)

        assert cancelled == [True]
        assert stream.state is ReadState.FAILED
        assert isinstance(stream.error, RequestAborted)
