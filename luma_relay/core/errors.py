"""Relay error taxonomy.

Pre-stream errors (:class:`InvalidRequest`, :class:`PayloadTooLarge`,
:class:`ConfigurationError`) carry the HTTP status they are rendered with.
Upstream errors are raised and handled inside the stream forwarder and never
reach the client as an HTTP status.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base error for the relay."""

    def __init__(self, message: str, status_code: int = 500) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class InvalidRequest(RelayError):
    """Malformed client input. Never contacts upstream."""

    def __init__(self, message: str = "Invalid messages format") -> None:
        super().__init__(message, status_code=400)


class PayloadTooLarge(RelayError):
    """Request body exceeds the configured size limit."""

    def __init__(self, message: str = "Request body too large") -> None:
        super().__init__(message, status_code=413)


class ConfigurationError(RelayError):
    """Missing deployment credential. Never contacts upstream."""

    def __init__(self, message: str = "OpenRouter API key not configured") -> None:
        super().__init__(message, status_code=500)


class UpstreamRejected(RelayError):
    """Upstream answered with a non-success status before streaming."""

    def __init__(self, upstream_status: int, body: str = "") -> None:
        self.upstream_status = upstream_status
        self.body = body
        super().__init__(f"Upstream rejected request (HTTP {upstream_status})", status_code=502)


class UpstreamFault(RelayError):
    """Upstream connection failed after streaming began."""

    def __init__(self, message: str = "Upstream stream failed") -> None:
        super().__init__(message, status_code=502)
