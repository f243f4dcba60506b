"""Anthropic Messages API client."""

from __future__ import annotations

import logging
from typing import Any

from llm_relay.errors import ParseError
from llm_relay.llm.decoders import AnthropicEventDecoder, StreamDecoder
from llm_relay.llm.providers.base import HTTPProvider, ProviderProfile
from llm_relay.llm.transport import drop_none
from llm_relay.types import CompletionOptions, CompletionResult, ProviderKind, Usage

_logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 1024

ANTHROPIC_PROFILE = ProviderProfile(
    kind=ProviderKind.ANTHROPIC,
    display_name="Anthropic",
    default_endpoint="https://api.anthropic.com",
    default_model="claude-3-5-sonnet-latest",
)


class AnthropicProvider(HTTPProvider):
    """Sends prompts to ``/v1/messages``; streams event-tagged SSE."""

    completion_path = "/v1/messages"

    def __init__(self, profile: ProviderProfile = ANTHROPIC_PROFILE, **kwargs: Any) -> None:
        super().__init__(profile, **kwargs)

    def _headers(self) -> dict[str, str]:
        return {
            "content-type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _build_body(
        self, prompt: str, options: CompletionOptions, *, stream: bool,
    ) -> dict[str, Any]:
        return drop_none({
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": 0.7 if options.temperature is None else options.temperature,
            "top_p": options.top_p,
            "stop_sequences": options.stop,
            "stream": stream,
        })

    def _parse_completion(self, data: dict[str, Any], model: str) -> CompletionResult:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            blocks = []
        texts = [
            b["text"] for b in blocks
            if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
        ]
        if not texts:
            raise ParseError(
                "Invalid response format from Anthropic API: no text content",
                provider=self.kind.value,
            )

        usage_data = data.get("usage") or {}
        return CompletionResult(
            content="".join(texts),
            model=data.get("model") or model,
            usage=Usage.from_counts(
                usage_data.get("input_tokens"), usage_data.get("output_tokens"),
            ),
            raw=data,
        )

    def _new_decoder(self) -> StreamDecoder:
        return AnthropicEventDecoder()

    async def check_connection(self) -> None:
        """Validate the key with a one-token message."""
        self._require_configured()
        await self._post(self.completion_path, {
            "model": self.model,
            "messages": [{"role": "user", "content": "Hello"}],
            "max_tokens": 1,
        })
        _logger.info("Anthropic connection ok (model=%s)", self.model)
