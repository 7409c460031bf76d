"""
Shared test doubles.
"""
import inspect
from typing import Callable, List

import httpx

TEST_TOKEN = "test-token"
TEST_BUCKET = "test-bucket"
CHUNK = 256 * 1024


class RecordingHandler:
    """MockTransport handler that keeps every request it served."""

    def __init__(self, handler: Callable):
        self.handler = handler
        self.requests: List[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        result = self.handler(request)
        if inspect.isawaitable(result):
            result = await result
        return result

    def count(self, method: str) -> int:
        return sum(1 for request in self.requests if request.method == method)


class BrokenTokenSource:
    """Token source whose backend is unreachable."""

    async def fetch(self, scopes):
        raise RuntimeError("metadata server unreachable")
