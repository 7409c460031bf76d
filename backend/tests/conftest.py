"""
Test configuration and fixtures.
All HTTP traffic goes through httpx.MockTransport; no network is used.
"""
from typing import AsyncGenerator, Callable

import httpx
import pytest

from bucketstream.config import Settings
from bucketstream.storage.channel import RequestChannel
from bucketstream.storage.client import StorageClient
from bucketstream.storage.credentials import CredentialGate, StaticTokenSource

from helpers import CHUNK, TEST_BUCKET, TEST_TOKEN, RecordingHandler


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        access_token=TEST_TOKEN,
        bucket=TEST_BUCKET,
        tmp_bucket="tmp-bucket",
        upload_chunk_size=CHUNK,
    )


@pytest.fixture
async def make_client(test_settings: Settings) -> AsyncGenerator[Callable, None]:
    """Factory building a StorageClient over a recording mock transport."""
    http_clients = []

    def factory(handler: Callable, **kwargs):
        recorder = RecordingHandler(handler)
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        http_clients.append(http_client)
        client = StorageClient(
            settings=kwargs.pop("settings", test_settings),
            http_client=http_client,
            **kwargs
        )
        return client, recorder

    yield factory

    for http_client in http_clients:
        await http_client.aclose()


@pytest.fixture
async def make_channels() -> AsyncGenerator[Callable, None]:
    """Factory building a bare RequestChannel over a recording mock transport."""
    http_clients = []

    def factory(handler: Callable, token_source=None):
        recorder = RecordingHandler(handler)
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        http_clients.append(http_client)
        gate = CredentialGate(
            token_source or StaticTokenSource(TEST_TOKEN),
            ["scope-a"],
            user_agent="bucketstream-tests",
        )
        return RequestChannel(http_client, gate), recorder

    yield factory

    for http_client in http_clients:
        await http_client.aclose()
