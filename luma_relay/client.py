"""Minimal client for a running relay.

Reads the relayed SSE stream line by line and yields assistant text deltas.
The relay itself never parses the stream; this is only for the CLI and
smoke tests.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Iterable, Iterator
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class RelayStreamError(RuntimeError):
    """The relay reported an error inside the event stream."""


class SSEDecoder:
    """Incremental SSE line decoder that emits one ``data`` payload per event.

    Multi-line ``data:`` fields are joined with ``\\n``; comment lines
    (``:``-prefixed) and other fields are ignored.
    """

    def __init__(self) -> None:
        self._data: list[str] = []

    def feed(self, line: str) -> str | None:
        line = line.rstrip("\r\n")
        if not line:
            return self.flush()
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if field == "data":
            self._data.append(value[1:] if value.startswith(" ") else value)
        return None

    def flush(self) -> str | None:
        if not self._data:
            return None
        payload = "\n".join(self._data)
        self._data = []
        return payload


def iter_sse_data(lines: Iterable[str]) -> Iterator[str]:
    """Yield the ``data:`` payload of each event in an SSE line stream."""
    decoder = SSEDecoder()
    for line in lines:
        payload = decoder.feed(line)
        if payload is not None:
            yield payload
    payload = decoder.flush()
    if payload is not None:
        yield payload


def extract_delta(payload: str) -> str | None:
    """Return the assistant text carried by one OpenAI-style chunk payload.

    Raises:
        RelayStreamError: the payload is an ``{"error": ...}`` frame.
    """
    if payload == DONE_SENTINEL:
        return None
    try:
        data: Any = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON SSE payload: %r", payload[:80])
        return None
    if not isinstance(data, dict):
        return None
    if "error" in data:
        error = data["error"]
        message = error.get("message") if isinstance(error, dict) else error
        raise RelayStreamError(str(message))
    choices = data.get("choices") or []
    if not choices:
        return None
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content if isinstance(content, str) else None


async def stream_chat(
    base_url: str,
    messages: list[dict[str, Any]],
    *,
    max_tokens: int | None = None,
    temperature: float | None = None,
    timeout_s: float = 60.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[str]:
    """POST to ``/api/chat/stream`` and yield assistant text as it arrives."""
    body: dict[str, Any] = {"messages": messages}
    if max_tokens is not None:
        body["max_tokens"] = max_tokens
    if temperature is not None:
        body["temperature"] = temperature

    async with httpx.AsyncClient(
        base_url=base_url.rstrip("/"), timeout=timeout_s, transport=transport,
    ) as client:
        async with client.stream("POST", "/api/chat/stream", json=body) as resp:
            if resp.status_code != 200:
                await resp.aread()
                raise RelayStreamError(f"HTTP {resp.status_code}: {resp.text}")
            decoder = SSEDecoder()
            async for line in resp.aiter_lines():
                payload = decoder.feed(line)
                if payload is not None:
                    text = extract_delta(payload)
                    if text:
                        yield text
            payload = decoder.flush()
            if payload is not None:
                text = extract_delta(payload)
                if text:
                    yield text
