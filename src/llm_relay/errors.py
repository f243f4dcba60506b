"""Error taxonomy for llm-relay.

Every error can carry the backend kind it came from so callers can render
a meaningful message without inspecting the exception type.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay failures."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider

    def __str__(self) -> str:
        if self.provider:
            return f"[{self.provider}] {self.message}"
        return self.message


class ConfigurationError(RelayError):
    """Missing or malformed credential/endpoint.  Raised before any network call."""


class ValidationError(RelayError):
    """Unsupported model, provider, or option value.  Never retried."""


class ChannelBusyError(ValidationError):
    """A stream is already active on the channel."""


class UpstreamError(RelayError):
    """Non-success HTTP status from the backend.

    ``status`` is 0 when the request never produced a response
    (connection refused, timeout).
    """

    def __init__(
        self,
        message: str,
        *,
        status: int = 0,
        body: str = "",
        provider: str | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.status = status
        self.body = body


class ParseError(RelayError):
    """Response body does not match the expected shape."""

    def __init__(self, message: str, *, body: str = "", provider: str | None = None) -> None:
        super().__init__(message, provider=provider)
        self.body = body


class StreamIntegrityError(RelayError):
    """Stream ended without content after exhausting retries."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        chunk_count: int,
        provider: str | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.attempts = attempts
        self.chunk_count = chunk_count

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} (attempts={self.attempts}, chunks={self.chunk_count})"


class CancellationError(RelayError):
    """The caller abandoned the channel."""
