"""Shared test fixtures for the relay."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Iterable

import httpx
import pytest
from fastapi.testclient import TestClient

from luma_relay.api import configure_web_app, web_app
from luma_relay.core.config import API_KEY_ENV, CONFIG_NAME_ENV, PORT_ENV, RelayConfig, get_relay_config

TEST_API_KEY = "sk-or-test-key"

SSE_CHUNKS = [
    b'data: {"choices":[{"delta":{"role":"assistant","con',
    b'tent":"Hi"}}]}\n\ndata: {"choices":[{"delta":{"content":" there"}}]}\n\n',
    b'data: {"choices":[{"delta":{"content":"!"},"finish_reason":"stop"}]}\n\n',
    b"data: [DONE]\n\n",
]


class ScriptedStream(httpx.AsyncByteStream):
    """Upstream response body that yields scripted chunks and records its lifecycle.

    ``delay_from``: chunks at or after this index wait ``delay_s`` first.
    ``fail_at``: raise ``httpx.ReadError`` instead of yielding this index.
    """

    def __init__(
        self,
        chunks: Iterable[bytes],
        *,
        delay_from: int | None = None,
        delay_s: float = 0.0,
        fail_at: int | None = None,
    ) -> None:
        self.chunks = list(chunks)
        self.delay_from = delay_from
        self.delay_s = delay_s
        self.fail_at = fail_at
        self.delivered = 0
        self.close_calls = 0

    async def __aiter__(self):
        for i, chunk in enumerate(self.chunks):
            if self.delay_from is not None and i >= self.delay_from:
                await asyncio.sleep(self.delay_s)
            if self.fail_at is not None and i >= self.fail_at:
                raise httpx.ReadError("connection reset by peer")
            self.delivered += 1
            yield chunk

    async def aclose(self) -> None:
        self.close_calls += 1


class FakeUpstream:
    """Stand-in for the provider endpoint, served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.calls: list[httpx.Request] = []
        self.status_code = 200
        self.error_text = '{"error":{"message":"overloaded"}}'
        self.stream = ScriptedStream(SSE_CHUNKS)
        self.raise_on_connect: Exception | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.raise_on_connect is not None:
            raise self.raise_on_connect
        if self.status_code != 200:
            return httpx.Response(self.status_code, text=self.error_text)
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            stream=self.stream,
        )

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.calls]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class DisconnectSwitch:
    """Client-disconnect probe flipped by the test."""

    def __init__(self, when: Callable[[], bool] | None = None) -> None:
        self.gone = False
        self.when = when
        self.polls = 0

    async def __call__(self) -> bool:
        self.polls += 1
        if self.when is not None and self.when():
            self.gone = True
        return self.gone


@pytest.fixture(autouse=True)
def _clear_config_cache(monkeypatch):
    """Isolate tests from the caller's environment and cached config."""
    for name in (API_KEY_ENV, PORT_ENV, CONFIG_NAME_ENV):
        monkeypatch.delenv(name, raising=False)
    get_relay_config.cache_clear()
    yield
    get_relay_config.cache_clear()


@pytest.fixture()
def relay_config() -> RelayConfig:
    return RelayConfig(openrouter_api_key=TEST_API_KEY, disconnect_poll_interval_s=0.01)


@pytest.fixture()
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture()
def api_client(relay_config, upstream):
    """TestClient for the relay app wired to the fake upstream."""
    configure_web_app(relay_config, transport=upstream.transport())
    return TestClient(web_app)
