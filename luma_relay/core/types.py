"""Shared request/response models for the relay."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt


class ChatMessage(BaseModel):
    """A single chat message.

    Only used to validate; the caller's message objects are forwarded as sent.
    ``content`` may be absent (e.g. assistant turns carrying ``tool_calls``).
    """

    model_config = ConfigDict(extra="allow")

    role: str
    content: Any = None


class ChatRequest(BaseModel):
    """Inbound body of ``POST /api/chat/stream``."""

    model_config = ConfigDict(extra="ignore")

    messages: list[ChatMessage] = Field(min_length=1)
    # Strict: "300" or true are rejected, never coerced.
    max_tokens: Annotated[StrictInt, Field(gt=0)] | None = None
    temperature: StrictInt | StrictFloat | None = None


@dataclass(frozen=True)
class UpstreamRequest:
    """A validated, bounded call descriptor for the upstream provider."""

    url: str
    headers: dict[str, str]
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def max_tokens(self) -> int:
        return int(self.body["max_tokens"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: str


class ErrorResponse(BaseModel):
    """JSON error body for pre-stream failures."""

    error: str
