"""Request gateway: turn an inbound body into a bounded upstream request."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from .core.config import RelayConfig
from .core.errors import ConfigurationError, InvalidRequest
from .core.types import ChatRequest, UpstreamRequest

logger = logging.getLogger(__name__)

_FIELD_ERRORS = {
    "max_tokens": "Invalid max_tokens",
    "temperature": "Invalid temperature",
}


def parse_chat_request(payload: Any) -> ChatRequest:
    """Validate a decoded JSON body.

    Raises:
        InvalidRequest: ``messages`` is missing, not a list, empty, or holds a
            non-object entry; or an optional parameter has the wrong type.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("messages"), list):
        raise InvalidRequest()
    try:
        return ChatRequest.model_validate(payload)
    except ValidationError as e:
        field = next((err["loc"][0] for err in e.errors() if err["loc"]), "messages")
        raise InvalidRequest(_FIELD_ERRORS.get(str(field), "Invalid messages format")) from None


def build_upstream_request(payload: Any, cfg: RelayConfig) -> UpstreamRequest:
    """Validate ``payload`` and build the upstream chat-completions call.

    ``messages`` are forwarded exactly as the client sent them. ``max_tokens``
    is capped at ``cfg.max_tokens_cap`` whatever the client asked for;
    ``temperature`` passes through, defaulting to ``cfg.default_temperature``.

    Raises:
        InvalidRequest: malformed client input (HTTP 400).
        ConfigurationError: no provider credential configured (HTTP 500).
    """
    req = parse_chat_request(payload)

    if not cfg.has_credentials:
        logger.error("Rejecting chat request: provider API key is not configured")
        raise ConfigurationError()

    requested = req.max_tokens if req.max_tokens is not None else cfg.default_max_tokens
    max_tokens = min(requested, cfg.max_tokens_cap)
    temperature = req.temperature if req.temperature is not None else cfg.default_temperature

    body: dict[str, Any] = {
        "model": cfg.model,
        "messages": list(payload["messages"]),
        "max_tokens": max_tokens,
        "temperature": temperature,
        "stream": True,
        "top_p": cfg.top_p,
        "frequency_penalty": cfg.frequency_penalty,
    }
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {cfg.openrouter_api_key}",
        "HTTP-Referer": cfg.referer,
        "X-Title": cfg.title,
    }
    if requested != max_tokens:
        logger.debug("Capped max_tokens from %d to %d", requested, max_tokens)
    return UpstreamRequest(url=cfg.upstream_url, headers=headers, body=body)
