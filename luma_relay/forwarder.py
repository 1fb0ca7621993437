"""Stream forwarder: mirror one upstream SSE response to one client.

Each inbound request gets a :class:`RelaySession` that owns exactly one
upstream ``httpx.Response``. The session runs as a single async generator
that races every upstream read against a client-disconnect watcher, so the
upstream handle is released on every exit path:

- ``COMPLETED``          upstream signalled end of stream
- ``UPSTREAM_REJECTED``  upstream answered non-2xx; one error frame is sent
- ``SETUP_FAILED``       the request never got a response; one error frame
- ``UPSTREAM_ERROR``     upstream failed mid-stream; the stream just ends
- ``CLIENT_GONE``        the client went away; upstream is closed, not drained

Chunks are forwarded verbatim via ``Response.aiter_raw``. SSE event
boundaries are never parsed or re-framed.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import httpx

from .core.config import RelayConfig
from .core.errors import UpstreamFault, UpstreamRejected
from .core.types import UpstreamRequest

logger = logging.getLogger(__name__)

DisconnectProbe = Callable[[], Awaitable[bool]]

SSE_MEDIA_TYPE = "text/event-stream"
SSE_HEADERS = {
    "Content-Type": SSE_MEDIA_TYPE,
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    # Disable proxy (nginx) buffering
    "X-Accel-Buffering": "no",
}
AI_SERVICE_ERROR = "AI service error"

_MAX_LOGGED_ERROR_BODY = 2000


def error_frame(message: str) -> bytes:
    """Encode a synthetic ``data: {"error": ...}`` SSE frame."""
    payload = json.dumps({"error": message}, separators=(",", ":"))
    return f"data: {payload}\n\n".encode()


class StreamState(str, enum.Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    UPSTREAM_REJECTED = "upstream_rejected"
    SETUP_FAILED = "setup_failed"
    COMPLETED = "completed"
    UPSTREAM_ERROR = "upstream_error"
    CLIENT_GONE = "client_gone"

    @property
    def terminal(self) -> bool:
        return self not in (StreamState.CONNECTING, StreamState.STREAMING)


class _ClientGone:
    """Sentinel returned when the client disconnects before an await finishes."""


_CLIENT_GONE = _ClientGone()


class RelaySession:
    """Lifecycle of one upstream stream for one client request.

    Not reusable: :meth:`run` may be iterated once.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        upstream: UpstreamRequest,
        is_disconnected: DisconnectProbe,
        *,
        poll_interval_s: float = 0.25,
        emit_fault_trailer: bool = False,
    ) -> None:
        self._client = client
        self._upstream = upstream
        self._is_disconnected = is_disconnected
        self._poll_interval_s = poll_interval_s
        self._emit_fault_trailer = emit_fault_trailer
        self._response: httpx.Response | None = None
        self._watcher: asyncio.Future[None] | None = None
        self._upstream_closed = False
        self._started = 0.0
        self.state = StreamState.CONNECTING
        self.chunks_forwarded = 0
        self.first_chunk_latency_ms: int | None = None

    # -- state ------------------------------------------------------------

    def _transition(self, state: StreamState) -> None:
        if self.state.terminal:
            return
        logger.debug("Relay stream %s -> %s", self.state.value, state.value)
        self.state = state

    @property
    def upstream_closed(self) -> bool:
        return self._upstream_closed

    # -- main loop --------------------------------------------------------

    async def run(self) -> AsyncIterator[bytes]:
        """Yield upstream bytes in order until a terminal state is reached."""
        self._started = time.monotonic()
        self._watcher = asyncio.ensure_future(self._watch_disconnect())
        try:
            try:
                opened = await self._until_disconnect(self._open())
            except UpstreamRejected as e:
                self._transition(StreamState.UPSTREAM_REJECTED)
                logger.error("Upstream error (HTTP %d): %s", e.upstream_status, e.body)
                yield error_frame(AI_SERVICE_ERROR)
                return
            except Exception as e:
                self._transition(StreamState.SETUP_FAILED)
                logger.error("Failed to open upstream stream: %s", e, exc_info=True)
                yield error_frame(AI_SERVICE_ERROR)
                return

            if opened is _CLIENT_GONE:
                self._transition(StreamState.CLIENT_GONE)
                logger.warning("Client disconnected before upstream responded")
                return

            self._transition(StreamState.STREAMING)
            logger.info("Connected to upstream, streaming chunks")
            assert self._response is not None
            chunks = self._response.aiter_raw()

            while True:
                try:
                    chunk = await self._until_disconnect(self._next_chunk(chunks))
                except StopAsyncIteration:
                    self._transition(StreamState.COMPLETED)
                    return
                except UpstreamFault as e:
                    self._transition(StreamState.UPSTREAM_ERROR)
                    logger.error(
                        "Stream error after %d chunks: %s", self.chunks_forwarded, e.message,
                    )
                    if self._emit_fault_trailer:
                        yield error_frame(AI_SERVICE_ERROR)
                    return

                if isinstance(chunk, _ClientGone):
                    self._transition(StreamState.CLIENT_GONE)
                    return

                self.chunks_forwarded += 1
                if self.chunks_forwarded == 1:
                    self.first_chunk_latency_ms = self._elapsed_ms()
                    logger.info("First chunk arrived in %dms", self.first_chunk_latency_ms)
                yield chunk
        finally:
            # Reached via return, an exception, or aclose() from the server
            # when the response task is torn down.
            self._transition(StreamState.CLIENT_GONE)
            await self._close()
            self._log_outcome()

    # -- helpers ----------------------------------------------------------

    async def _open(self) -> httpx.Response:
        request = self._client.build_request(
            "POST",
            self._upstream.url,
            json=self._upstream.body,
            headers=self._upstream.headers,
        )
        response = await self._client.send(request, stream=True)
        self._response = response
        if not response.is_success:
            raise UpstreamRejected(response.status_code, await self._read_error_body(response))
        return response

    @staticmethod
    async def _next_chunk(chunks: AsyncIterator[bytes]) -> bytes:
        try:
            return await chunks.__anext__()
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise UpstreamFault(str(e) or type(e).__name__) from e

    async def _read_error_body(self, response: httpx.Response) -> str:
        try:
            await response.aread()
        except (httpx.HTTPError, httpx.StreamError) as e:
            return f"<unreadable error body: {e}>"
        return response.text[:_MAX_LOGGED_ERROR_BODY]

    async def _watch_disconnect(self) -> None:
        while not await self._is_disconnected():
            await asyncio.sleep(self._poll_interval_s)

    async def _until_disconnect(self, aw: Awaitable[Any]) -> Any:
        """Await ``aw`` unless the client disconnects first.

        Returns ``_CLIENT_GONE`` if the watcher wins; the pending await is then
        cancelled so nothing more is pulled from upstream.
        """
        assert self._watcher is not None
        task = asyncio.ensure_future(aw)
        try:
            done, _ = await asyncio.wait(
                {task, self._watcher}, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.wait({task})
        if not task.cancelled():
            # Finished before the cancel landed; the outcome no longer matters.
            task.exception()
        return _CLIENT_GONE

    async def _close(self) -> None:
        watcher = self._watcher
        if watcher is not None:
            if watcher.done() and not watcher.cancelled() and watcher.exception() is not None:
                logger.warning("Disconnect watcher failed: %s", watcher.exception())
            watcher.cancel()
        if self._response is not None and not self._upstream_closed:
            self._upstream_closed = True
            # Shielded so the close completes even if this task is cancelled.
            await asyncio.shield(self._response.aclose())

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def _log_outcome(self) -> None:
        total = self._elapsed_ms()
        if self.state is StreamState.COMPLETED:
            logger.info("Stream complete: %d chunks in %dms", self.chunks_forwarded, total)
        elif self.state is StreamState.CLIENT_GONE:
            logger.warning(
                "Client disconnected after %d chunks (%dms); upstream closed",
                self.chunks_forwarded, total,
            )
        else:
            logger.info(
                "Stream ended in state %s after %d chunks (%dms)",
                self.state.value, self.chunks_forwarded, total,
            )


class StreamForwarder:
    """Opens upstream streams on a shared ``httpx.AsyncClient`` connection pool."""

    def __init__(self, client: httpx.AsyncClient, cfg: RelayConfig) -> None:
        self._client = client
        self._cfg = cfg

    @classmethod
    def from_config(
        cls, cfg: RelayConfig, transport: httpx.AsyncBaseTransport | None = None,
    ) -> StreamForwarder:
        client = httpx.AsyncClient(
            timeout=httpx.Timeout(cfg.idle_timeout_s, connect=cfg.connect_timeout_s),
            transport=transport,
        )
        return cls(client, cfg)

    def open_session(
        self, upstream: UpstreamRequest, is_disconnected: DisconnectProbe,
    ) -> RelaySession:
        return RelaySession(
            self._client,
            upstream,
            is_disconnected,
            poll_interval_s=self._cfg.disconnect_poll_interval_s,
            emit_fault_trailer=self._cfg.emit_fault_trailer,
        )

    def relay(
        self, upstream: UpstreamRequest, is_disconnected: DisconnectProbe,
    ) -> AsyncIterator[bytes]:
        """Return the byte iterator for one client response."""
        return self.open_session(upstream, is_disconnected).run()

    @property
    def closed(self) -> bool:
        return self._client.is_closed

    async def aclose(self) -> None:
        await self._client.aclose()
