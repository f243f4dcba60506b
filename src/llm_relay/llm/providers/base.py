"""Provider client contract and the shared HTTP plumbing.

``ProviderClient`` is the capability set the dispatcher relies on.  Concrete
clients are parameterized by a ``ProviderProfile`` (endpoint defaults,
credential requirements, cold-start behavior) rather than subclassed per
backend, so one wire-protocol implementation serves every server that
speaks it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Protocol, runtime_checkable

import httpx

from llm_relay.errors import ConfigurationError, ValidationError
from llm_relay.llm.decoders import StreamDecoder
from llm_relay.llm.streaming import ChunkStream
from llm_relay.llm.transport import (
    API_KEY_PATTERN,
    ENDPOINT_PATTERN,
    get_json,
    make_timeout,
    post_json,
)
from llm_relay.types import (
    CompletionOptions,
    CompletionRequest,
    CompletionResult,
    ProviderConfig,
    ProviderKind,
)

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

@runtime_checkable
class ProviderClient(Protocol):
    """Uniform operations every backend family implements."""

    kind: ProviderKind
    model: str
    cold_start_retry: bool

    def configure(self, config: ProviderConfig) -> None:
        """Validate and apply *config*.  Raises ``ConfigurationError``."""
        ...

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Non-streaming completion."""
        ...

    def stream_complete(self, request: CompletionRequest) -> ChunkStream:
        """Streaming completion as a pull-based chunk iterator."""
        ...

    def validate_credential(self, text: str) -> bool:
        ...

    def validate_endpoint(self, text: str) -> bool:
        ...

    async def check_connection(self) -> None:
        """Probe the backend.  Raises ``UpstreamError`` / ``ParseError``."""
        ...

    async def aclose(self) -> None:
        ...


@dataclass(frozen=True)
class ProviderProfile:
    """Static description of one backend kind."""

    kind: ProviderKind
    display_name: str
    default_endpoint: str
    default_model: str
    requires_api_key: bool = True
    # Local servers may answer the first request with an empty stream
    # while a model is still loading.
    cold_start_retry: bool = False


# Inclusive bounds accepted for numeric options.
_OPTION_BOUNDS: dict[str, tuple[float, float]] = {
    "temperature": (0.0, 2.0),
    "top_p": (0.0, 1.0),
    "frequency_penalty": (-2.0, 2.0),
    "presence_penalty": (-2.0, 2.0),
}


def validate_options(options: CompletionOptions, *, provider: str) -> None:
    """Reject option values no backend accepts."""
    for name, (low, high) in _OPTION_BOUNDS.items():
        value = getattr(options, name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{name} must be a number, got {value!r}", provider=provider)
        if not low <= value <= high:
            raise ValidationError(
                f"{name}={value} is outside [{low}, {high}]", provider=provider,
            )
    if options.max_tokens is not None:
        if isinstance(options.max_tokens, bool) or not isinstance(options.max_tokens, int) \
                or options.max_tokens <= 0:
            raise ValidationError(
                f"max_tokens must be a positive integer, got {options.max_tokens!r}",
                provider=provider,
            )
    if options.stop is not None:
        if not isinstance(options.stop, list) or not all(isinstance(s, str) for s in options.stop):
            raise ValidationError("stop must be a list of strings", provider=provider)


# ---------------------------------------------------------------------------
# Shared HTTP client behavior
# ---------------------------------------------------------------------------

class HTTPProvider:
    """Configuration state and httpx lifecycle shared by the wire clients.

    Subclasses supply ``completion_path``, ``_headers()``, ``_build_body()``,
    ``_parse_completion()`` and ``_new_decoder()``.
    """

    completion_path = ""

    def __init__(
        self,
        profile: ProviderProfile,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.profile = profile
        self.kind = profile.kind
        self.cold_start_retry = profile.cold_start_retry
        self.api_key = ""
        self.endpoint = profile.default_endpoint
        self.model = profile.default_model
        self.request_defaults = CompletionOptions()
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._configured = False

    @property
    def name(self) -> str:
        return self.profile.display_name

    @property
    def configured(self) -> bool:
        return self._configured

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_credential(self, text: str) -> bool:
        return bool(text) and API_KEY_PATTERN.match(text) is not None

    def validate_endpoint(self, text: str) -> bool:
        return bool(text) and ENDPOINT_PATTERN.match(text) is not None

    def configure(self, config: ProviderConfig) -> None:
        """Apply *config* after format-only checks.  No network I/O."""
        provider = self.kind.value
        if config.kind is not self.kind:
            raise ConfigurationError(
                f"Config for '{config.kind.value}' given to {self.name} provider",
                provider=provider,
            )

        api_key = (config.api_key or "").strip()
        endpoint = (config.endpoint or "").strip().rstrip("/")

        if self.profile.requires_api_key:
            if not api_key:
                raise ConfigurationError(
                    f"{self.name} provider not configured. "
                    "Please provide a valid API key in settings.",
                    provider=provider,
                )
            if not self.validate_credential(api_key):
                raise ConfigurationError(
                    "Invalid API key format. Key should be at least 5 characters long.",
                    provider=provider,
                )
        elif not endpoint:
            raise ConfigurationError(
                f"{self.name} provider not configured. "
                f"Please provide an endpoint (e.g. {self.profile.default_endpoint}).",
                provider=provider,
            )

        if endpoint and not self.validate_endpoint(endpoint):
            raise ConfigurationError(
                f"Invalid endpoint URL format: {endpoint}", provider=provider,
            )

        model = (config.model or "").strip() or self.profile.default_model
        if config.models and model not in config.models:
            raise ValidationError(
                f"Invalid model: {model}. Available models: {', '.join(config.models)}",
                provider=provider,
            )

        validate_options(config.request_defaults, provider=provider)

        self.api_key = api_key
        self.endpoint = endpoint or self.profile.default_endpoint
        self.model = model
        self.request_defaults = config.request_defaults
        self._configured = True

        _logger.debug(
            "%s provider configured: has_key=%s model=%s endpoint=%s",
            self.name, bool(api_key), self.model, self.endpoint,
        )

    def _require_configured(self) -> None:
        if not self._configured:
            raise ConfigurationError(
                f"{self.name} provider not initialized. Please check your settings.",
                provider=self.kind.value,
            )

    def _effective_options(self, request: CompletionRequest) -> CompletionOptions:
        options = request.options.merged_over(self.request_defaults)
        validate_options(options, provider=self.kind.value)
        return options

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self._require_configured()
        options = self._effective_options(request)
        model = self.model
        body = self._build_body(request.prompt, options, stream=False)
        _logger.debug(
            "%s request: model=%s prompt_chars=%d endpoint=%s",
            self.name, model, len(request.prompt), self.endpoint,
        )
        # URL, headers and body are bound before the first await.
        data = await self._post(self.completion_path, body)
        result = self._parse_completion(data, model)
        _logger.info(
            "%s completion: model=%s total_tokens=%d",
            self.name, result.model, result.usage.total_tokens,
        )
        return result

    def stream_complete(self, request: CompletionRequest) -> ChunkStream:
        self._require_configured()
        options = self._effective_options(request)
        body = self._build_body(request.prompt, options, stream=True)
        http_request = self._http().build_request(
            "POST", self._url(self.completion_path), json=body, headers=self._headers(),
        )
        _logger.debug(
            "%s stream request: model=%s prompt_chars=%d",
            self.name, self.model, len(request.prompt),
        )
        return ChunkStream(
            self._http(), http_request, self._new_decoder(), provider=self.kind.value,
        )

    async def check_connection(self) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def _http(self) -> httpx.AsyncClient:
        # One pool per provider; endpoint and credentials travel per request.
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=make_timeout(self._timeout),
                transport=self._transport,
            )
        return self._client

    def _url(self, path: str) -> str:
        return f"{self.endpoint}{path}"

    def _post(self, path: str, body: dict[str, Any]) -> Awaitable[dict[str, Any]]:
        return post_json(
            self._http(), self._url(path), body,
            headers=self._headers(), provider=self.kind.value,
        )

    def _get(self, path: str) -> Awaitable[dict[str, Any]]:
        return get_json(
            self._http(), self._url(path),
            headers=self._headers(), provider=self.kind.value,
        )

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _build_body(
        self, prompt: str, options: CompletionOptions, *, stream: bool,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def _parse_completion(self, data: dict[str, Any], model: str) -> CompletionResult:
        raise NotImplementedError

    def _new_decoder(self) -> StreamDecoder:
        raise NotImplementedError
