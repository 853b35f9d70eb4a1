"""Shared test fixtures for pytest.

ENVIRONMENT is forced to `test` before application modules are imported so
settings never read a local `.env.*` file during tests.
"""

import asyncio
import os
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient


os.environ["ENVIRONMENT"] = "test"

from api.v1.assess import get_stream_source
from core.config import Settings, get_settings
from main import create_app
from services.streaming.interfaces import SearchProgress, StreamUsage


class FakeCompletion:
    """Completion that replays scripted text deltas."""

    def __init__(self, source: "FakeStreamSource") -> None:
        self._source = source

    async def chunks(self) -> AsyncIterator[str]:
        source = self._source
        for index, part in enumerate(source.parts):
            if source.error is not None and index == source.error_after:
                raise source.error
            if source.gate is not None and index == source.gate_before:
                await source.gate.wait()
            yield part
            # Let other tasks (readers, keepalive) run between deltas.
            await asyncio.sleep(source.delay)
        if source.error is not None and source.error_after >= len(source.parts):
            raise source.error

    def usage(self) -> StreamUsage | None:
        return self._source.usage


class FakeStreamSource:
    """In-memory `LLMStreamSourceProtocol` implementation."""

    def __init__(
        self,
        parts: list[str | SearchProgress],
        *,
        usage: StreamUsage | None = None,
        error: Exception | None = None,
        error_after: int = 0,
        open_error: Exception | None = None,
        gate: asyncio.Event | None = None,
        gate_before: int = 0,
        delay: float = 0,
    ) -> None:
        self.parts = parts
        self.usage = usage
        self.error = error
        self.error_after = error_after
        self.open_error = open_error
        self.gate = gate
        self.gate_before = gate_before
        self.delay = delay
        self.prompts: list[str] = []
        self.released = 0

    @asynccontextmanager
    async def open(self, prompt: str) -> AsyncIterator[FakeCompletion]:
        self.prompts.append(prompt)
        if self.open_error is not None:
            raise self.open_error
        try:
            yield FakeCompletion(self)
        finally:
            self.released += 1


@pytest.fixture
def fake_source() -> Callable[..., FakeStreamSource]:
    """Factory for scripted stream sources."""
    return FakeStreamSource


@pytest.fixture
def test_settings() -> Settings:
    return Settings(  # type: ignore[call-arg]
        _env_file=None,
        ENVIRONMENT="test",
        RATE_LIMIT_ENABLED=False,
        ANTHROPIC_API_KEY=None,
        SSE_KEEPALIVE_SECONDS=0,
        SSE_WRITE_TIMEOUT_SECONDS=5,
    )


@pytest.fixture
def app(test_settings: Settings) -> FastAPI:
    """Fresh application per test (own rate limiter, no shared overrides)."""
    application = create_app(test_settings)
    application.dependency_overrides[get_settings] = lambda: test_settings
    return application


@pytest_asyncio.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def override_source(app: FastAPI) -> Callable[[FakeStreamSource], FakeStreamSource]:
    """Install a fake stream source on the assess endpoint."""

    def _install(source: FakeStreamSource) -> FakeStreamSource:
        app.dependency_overrides[get_stream_source] = lambda: source
        return source

    return _install
