"""Luma Relay API: FastAPI app relaying streaming chat completions.

The relay validates a chat request, opens a streaming chat completion on the
upstream provider (OpenRouter) and forwards the provider's SSE byte stream to
the client unchanged. Runtime config is selected via Hydra config name
(``local`` or ``production``) at process startup.

Endpoints:
- GET  /health: Liveness check
- POST /api/chat/stream: Stream a chat completion as Server-Sent Events

Example usage::

    curl -N -X POST http://localhost:3000/api/chat/stream \\
        -H "Content-Type: application/json" \\
        -d '{"messages": [{"role": "user", "content": "hi"}], "max_tokens": 200}'
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .core.config import RelayConfig, get_relay_config
from .core.errors import InvalidRequest, PayloadTooLarge, RelayError
from .core.types import ErrorResponse, HealthResponse
from .forwarder import SSE_HEADERS, StreamForwarder
from .gateway import build_upstream_request

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Configure on startup if nothing did so yet; close the upstream pool on shutdown."""
    if getattr(app.state, "forwarder", None) is None:
        configure_web_app(get_relay_config())
    cfg = _runtime_config()
    logger.info("Streaming relay starting (model=%s, port=%d)", cfg.model, cfg.port)
    yield
    forwarder = getattr(app.state, "forwarder", None)
    if forwarder is not None:
        await forwarder.aclose()
    logger.info("Streaming relay stopped")


web_app = FastAPI(
    title="Luma Relay",
    description="Streaming chat-completion relay",
    version="0.1.0",
    lifespan=lifespan,
)
web_app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def configure_web_app(
    cfg: RelayConfig, transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Inject runtime config and a fresh upstream forwarder into the app.

    ``transport`` replaces the network transport of the upstream client
    (tests pass an ``httpx.MockTransport``). A forwarder installed by an
    earlier call is closed.
    """
    previous = getattr(web_app.state, "forwarder", None)
    web_app.state.runtime_config = cfg
    web_app.state.forwarder = StreamForwarder.from_config(cfg, transport=transport)
    if isinstance(previous, StreamForwarder):
        _close_replaced(previous)
    if not cfg.has_credentials:
        logger.warning("OPENROUTER_API_KEY is not set; chat requests will fail with HTTP 500")


_closing: set[asyncio.Task[None]] = set()


def _close_replaced(forwarder: StreamForwarder) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(forwarder.aclose())
        return
    # Inside a running loop; close in the background.
    task = loop.create_task(forwarder.aclose())
    _closing.add(task)
    task.add_done_callback(_closing.discard)


def _runtime_config() -> RelayConfig:
    cfg = getattr(web_app.state, "runtime_config", None)
    if isinstance(cfg, RelayConfig):
        return cfg
    raise TypeError("Relay app is not configured; call configure_web_app() first")


def _forwarder() -> StreamForwarder:
    forwarder = getattr(web_app.state, "forwarder", None)
    if isinstance(forwarder, StreamForwarder):
        return forwarder
    raise TypeError("Relay app is not configured; call configure_web_app() first")


@web_app.exception_handler(RelayError)
async def _relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def _read_json_body(request: Request, max_bytes: int) -> object:
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > max_bytes:
        raise PayloadTooLarge()
    # Chunked uploads carry no length; stop reading once the limit is passed.
    raw = bytearray()
    async for chunk in request.stream():
        raw += chunk
        if len(raw) > max_bytes:
            raise PayloadTooLarge()
    if not raw:
        return None
    try:
        return json.loads(bytes(raw))
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequest("Invalid JSON body") from None



@web_app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness check."""
    now = datetime.now(timezone.utc)
    timestamp = now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return HealthResponse(status="ok", timestamp=timestamp)


@web_app.post(
    "/api/chat/stream",
    response_model=None,
    responses={
        400: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def chat_stream(request: Request) -> StreamingResponse:
    """Relay a streaming chat completion.

    Validation and configuration failures are answered with a JSON
    ``{"error": ...}`` body before any upstream call. Once the SSE response
    starts, upstream failures are reported inside the stream.
    """
    cfg = _runtime_config()
    payload = await _read_json_body(request, cfg.max_body_bytes)
    upstream = build_upstream_request(payload, cfg)

    logger.info(
        "Starting streaming request (%d messages, max_tokens=%d)",
        len(upstream.body["messages"]), upstream.max_tokens,
    )
    return StreamingResponse(
        _forwarder().relay(upstream, request.is_disconnected),
        headers=SSE_HEADERS,
    )
