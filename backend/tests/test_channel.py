"""
Tests for authenticated request channels.
"""
import asyncio
import json

import httpx
import pytest

from bucketstream.storage.channel import ChannelState
from bucketstream.storage.errors import AuthFailure, RequestAborted, TransportError
from bucketstream.storage.models import RequestDescriptor

from helpers import TEST_TOKEN, BrokenTokenSource


class TestDuplexChannel:
    """Tests for DuplexChannel lifecycle."""

    @pytest.mark.asyncio
    async def test_get_streams_body(self, make_channels):
        """Test a read channel yields the body and completes."""
        channels, recorder = make_channels(lambda request: httpx.Response(200, content=b"payload"))

        channel = channels.open(RequestDescriptor(uri="https://example.test/obj"))
        meta = await channel.response()
        body = await channel.read()

        assert meta.status_code == 200
        assert body == b"payload"
        assert channel.state is ChannelState.COMPLETE
        assert recorder.requests[0].headers["Authorization"] == f"Bearer {TEST_TOKEN}"
        assert recorder.requests[0].headers["User-Agent"] == "bucketstream-tests"

    @pytest.mark.asyncio
    async def test_query_and_headers_sent(self, make_channels):
        """Test the descriptor query and headers reach the transport."""
        channels, recorder = make_channels(lambda request: httpx.Response(200, json={}))

        await channels.fetch(RequestDescriptor(
            uri="https://example.test/b/bkt/o",
            query={"prefix": "logs/"},
            headers={"Accept-Encoding": "gzip"},
        ))

        request = recorder.requests[0]
        assert request.url.params["prefix"] == "logs/"
        assert request.headers["Accept-Encoding"] == "gzip"

    @pytest.mark.asyncio
    async def test_error_status_is_a_response(self, make_channels):
        """Test HTTP error statuses are delivered as responses, not raised."""
        channels, _ = make_channels(lambda request: httpx.Response(503, content=b"busy"))

        meta, body = await channels.fetch(RequestDescriptor(uri="https://example.test/obj"))

        assert meta.status_code == 503
        assert meta.is_error
        assert body == b"busy"

    @pytest.mark.asyncio
    async def test_auth_failure_before_send(self, make_channels):
        """Test credential failures surface and nothing is sent."""
        channels, recorder = make_channels(
            lambda request: httpx.Response(200),
            token_source=BrokenTokenSource(),
        )

        channel = channels.open(RequestDescriptor(uri="https://example.test/obj"))

        with pytest.raises(AuthFailure):
            await channel.wait_authorized()
        with pytest.raises(AuthFailure):
            await channel.response()
        assert channel.state is ChannelState.FAILED
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_transport_error(self, make_channels):
        """Test connection errors become TransportError."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        channels, _ = make_channels(handler)
        channel = channels.open(RequestDescriptor(uri="https://example.test/obj"))

        with pytest.raises(TransportError) as exc_info:
            await channel.response()
        assert isinstance(exc_info.value.cause, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_abort_is_idempotent(self, make_channels):
        """Test abort() can be called repeatedly and fails a pending channel once."""
        async def handler(request):
            await asyncio.sleep(10)
            return httpx.Response(200)

        channels, _ = make_channels(handler)
        channel = channels.open(RequestDescriptor(uri="https://example.test/slow"))
        await asyncio.sleep(0)

        await channel.abort()
        await channel.abort()

        assert channel.state is ChannelState.FAILED
        with pytest.raises(RequestAborted):
            await channel.wait()

    @pytest.mark.asyncio
    async def test_abort_after_complete_keeps_outcome(self, make_channels):
        """Test aborting a completed channel does not change its outcome."""
        channels, _ = make_channels(lambda request: httpx.Response(204))
        channel = channels.open(RequestDescriptor(uri="https://example.test/obj", method="DELETE"))

        meta = await channel.drain()
        await channel.abort()

        assert meta.status_code == 204
        assert channel.state is ChannelState.COMPLETE
        assert channel.error is None

    @pytest.mark.asyncio
    async def test_streaming_request_body(self, make_channels):
        """Test body bytes written to a write channel reach the transport."""
        received = []

        def handler(request):
            received.append(request.content)
            return httpx.Response(200, json={"ok": True})

        channels, _ = make_channels(handler)
        channel = channels.open(RequestDescriptor(uri="https://example.test/upload", method="PUT"))

        await channel.write(b"ab")
        await channel.write(b"cd")
        meta = await channel.close()

        assert meta.status_code == 200
        assert received == [b"abcd"]
        assert json.loads(channel.body) == {"ok": True}
        assert channel.bytes_sent == 4

    @pytest.mark.asyncio
    async def test_write_after_close(self, make_channels):
        """Test writes are refused once the body was closed."""
        channels, _ = make_channels(lambda request: httpx.Response(200))
        channel = channels.open(RequestDescriptor(uri="https://example.test/upload", method="PUT"))

        await channel.close()

        with pytest.raises(RuntimeError):
            await channel.write(b"late")

    @pytest.mark.asyncio
    async def test_read_channel_refuses_writes(self, make_channels):
        """Test GET channels have no request body."""
        channels, _ = make_channels(lambda request: httpx.Response(200))
        channel = channels.open(RequestDescriptor(uri="https://example.test/obj"))

        with pytest.raises(TypeError):
            await channel.write(b"nope")
        await channel.drain()
