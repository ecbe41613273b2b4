"""Test configuration: shared fixtures and fake upstream helpers."""

import os

# Keep a developer's .env out of the test run; must be set before any
# streamproxy imports.
os.environ["STREAMPROXY_ENV_FILE"] = "/nonexistent/.env"

import httpx  # noqa: E402
import pytest  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


class RecordingSleep:
    """Stand-in for asyncio.sleep that records waits instead of waiting."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)


class FakeUpstream:
    """httpx MockTransport handler that records every request it sees."""

    def __init__(self, *responders):
        # Each responder is a Response, an exception instance, or a callable
        # taking the request. The last one repeats once the list runs out.
        self._responders = list(responders)
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests), len(self._responders)) - 1
        responder = self._responders[index]
        if isinstance(responder, Exception):
            raise responder
        if callable(responder):
            result = responder(request)
            if hasattr(result, "__await__"):
                result = await result
            return result
        return responder

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def sleeps():
    return RecordingSleep()
