"""Ollama native API client (``/api/generate``, NDJSON streaming)."""

from __future__ import annotations

import logging
from typing import Any

from llm_relay.errors import ParseError
from llm_relay.llm.decoders import NDJSONDecoder, StreamDecoder
from llm_relay.llm.providers.base import HTTPProvider, ProviderProfile
from llm_relay.llm.transport import drop_none
from llm_relay.types import CompletionOptions, CompletionResult, ProviderKind, Usage

_logger = logging.getLogger(__name__)

OLLAMA_PROFILE = ProviderProfile(
    kind=ProviderKind.OLLAMA,
    display_name="Ollama",
    default_endpoint="http://localhost:11434",
    default_model="llama2",
    requires_api_key=False,
    cold_start_retry=True,
)


class OllamaProvider(HTTPProvider):
    """Talks to a local Ollama server.

    Sampling options go in the ``options`` object; ``max_tokens`` maps to
    ``num_predict``.
    """

    completion_path = "/api/generate"
    tags_path = "/api/tags"

    def __init__(self, profile: ProviderProfile = OLLAMA_PROFILE, **kwargs: Any) -> None:
        super().__init__(profile, **kwargs)

    def _build_body(
        self, prompt: str, options: CompletionOptions, *, stream: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": stream,
        }
        ollama_options = drop_none({
            "temperature": options.temperature,
            "top_p": options.top_p,
            "num_predict": options.max_tokens,
            "frequency_penalty": options.frequency_penalty,
            "presence_penalty": options.presence_penalty,
            "stop": options.stop,
        })
        if ollama_options:
            body["options"] = ollama_options
        return body

    def _parse_completion(self, data: dict[str, Any], model: str) -> CompletionResult:
        content = data.get("response")
        if not isinstance(content, str):
            raise ParseError(
                "Invalid response format from Ollama API: missing response field",
                provider=self.kind.value,
            )
        return CompletionResult(
            content=content,
            model=data.get("model") or model,
            usage=Usage.from_counts(data.get("prompt_eval_count"), data.get("eval_count")),
            raw=data,
        )

    def _new_decoder(self) -> StreamDecoder:
        return NDJSONDecoder()

    async def list_models(self) -> list[str]:
        """Return the names of locally pulled models."""
        self._require_configured()
        data = await self._get(self.tags_path)
        models = data.get("models")
        if not isinstance(models, list):
            raise ParseError(
                "Invalid response format from Ollama API: missing models array",
                provider=self.kind.value,
            )
        return [m["name"] for m in models if isinstance(m, dict) and "name" in m]

    async def check_connection(self) -> None:
        models = await self.list_models()
        _logger.info("Ollama endpoint ok: %d models pulled", len(models))
