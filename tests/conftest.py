"""Shared fixtures for the passthrough proxy test suite."""

import asyncio
import json
from unittest.mock import patch

import httpx
import pytest

from src.config.settings import get_settings
from src.proxy.client import DownstreamClient

TEST_TOKEN = "sk-test-caller-token-1234567890"


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {TEST_TOKEN}"}


@pytest.fixture
def chat_request_body() -> dict:
    """Standard chat completions request body."""
    return {
        "model": "gpt-4",
        "messages": [
            {"role": "system", "content": "You are a helpful assistant."},
            {"role": "user", "content": "Hello, how are you?"},
        ],
    }


@pytest.fixture
def override_settings(monkeypatch):
    """Factory fixture: set env vars and clear settings cache.

    Usage:
        override_settings(UPSTREAM_BASE_URL="https://example.test", STREAM_BUFFER_CHUNKS=4)
    """
    def _override(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        # Clear lru_cache so Settings re-reads env
        get_settings.cache_clear()

    yield _override

    # Always clear cache on teardown so other tests get fresh settings
    get_settings.cache_clear()


class FakeDownstream:
    """Records every request the proxy sends and answers via `handler`."""

    def __init__(self, handler=None):
        self.requests: list[httpx.Request] = []
        self.handler = handler or (lambda request: httpx.Response(200, json={"ok": True}))

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.handler(request)
        if not isinstance(response, httpx.Response):
            response = await response
        return response

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def downstream() -> FakeDownstream:
    return FakeDownstream()


@pytest.fixture
def app_client(override_settings, downstream):
    """httpx AsyncClient wired to the FastAPI app, downstream replaced by `downstream`."""
    override_settings(UPSTREAM_BASE_URL="https://api.openai.test", UPSTREAM_API_VERSION="v1")

    def _scoped_client(credential, *, beta=False):
        return DownstreamClient(credential, beta=beta, transport=downstream.transport)

    with patch("src.proxy.handler.create_downstream_client", side_effect=_scoped_client):
        from src.main import app
        transport = httpx.ASGITransport(app=app)
        client = httpx.AsyncClient(transport=transport, base_url="http://test")
        yield client


def sse_chunks(*payloads: dict, done: bool = True) -> list[bytes]:
    """Build raw SSE frames the way the downstream emits them."""
    frames = [f"data: {json.dumps(p)}\n\n".encode() for p in payloads]
    if done:
        frames.append(b"data: [DONE]\n\n")
    return frames


class ScriptedStream(httpx.AsyncByteStream):
    """Async byte stream that yields `chunks`, optionally failing or pausing.

    At index `fail_after` it raises `error` (httpx.ReadError by default).

    `produced` counts chunks handed out; `closed` flips when the consumer
    side closes the response.
    """

    def __init__(self, chunks: list[bytes], *, fail_after: int | None = None,
                 gate_after: int | None = None, delay: float = 0.0,
                 error: Exception | None = None):
        self.chunks = chunks
        self.fail_after = fail_after
        self.gate_after = gate_after
        self.delay = delay
        self.error = error or httpx.ReadError("connection reset by peer")
        self.produced = 0
        self.closed = False
        self.gate = asyncio.Event() if gate_after is not None else None

    async def __aiter__(self):
        for i, chunk in enumerate(self.chunks):
            if self.fail_after is not None and i == self.fail_after:
                raise self.error
            if self.gate is not None and i == self.gate_after:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            self.produced += 1
            yield chunk

    async def aclose(self) -> None:
        self.closed = True
