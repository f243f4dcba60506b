"""OpenAI-compatible chat completions client.

One implementation serves the hosted OpenAI and Deepseek APIs as well as
local servers exposing ``/v1/chat/completions`` (LM Studio, llama.cpp,
vLLM, ...).  Streaming uses line-delimited SSE.
"""

from __future__ import annotations

import logging
from typing import Any

from llm_relay.errors import ParseError
from llm_relay.llm.decoders import SSEDecoder, StreamDecoder
from llm_relay.llm.providers.base import HTTPProvider, ProviderProfile
from llm_relay.llm.transport import drop_none
from llm_relay.types import CompletionOptions, CompletionResult, ProviderKind, Usage

_logger = logging.getLogger(__name__)

OPENAI_PROFILE = ProviderProfile(
    kind=ProviderKind.OPENAI,
    display_name="OpenAI",
    default_endpoint="https://api.openai.com",
    default_model="gpt-3.5-turbo",
)

DEEPSEEK_PROFILE = ProviderProfile(
    kind=ProviderKind.DEEPSEEK,
    display_name="Deepseek",
    default_endpoint="https://api.deepseek.com",
    default_model="deepseek-chat",
)

LMSTUDIO_PROFILE = ProviderProfile(
    kind=ProviderKind.LMSTUDIO,
    display_name="LM Studio",
    default_endpoint="http://localhost:1234",
    default_model="local-model",
    requires_api_key=False,
    cold_start_retry=True,
)

LOCAL_OPENAI_PROFILE = ProviderProfile(
    kind=ProviderKind.OPENAI_COMPATIBLE,
    display_name="OpenAI-compatible server",
    default_endpoint="http://localhost:8080",
    default_model="local-model",
    requires_api_key=False,
    cold_start_retry=True,
)


class OpenAIChatProvider(HTTPProvider):
    """Client for any ``/v1/chat/completions`` backend."""

    completion_path = "/v1/chat/completions"
    models_path = "/v1/models"

    def __init__(self, profile: ProviderProfile = OPENAI_PROFILE, **kwargs: Any) -> None:
        super().__init__(profile, **kwargs)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_body(
        self, prompt: str, options: CompletionOptions, *, stream: bool,
    ) -> dict[str, Any]:
        return drop_none({
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": _default(options.temperature, 0.7),
            "max_tokens": options.max_tokens,
            "top_p": _default(options.top_p, 1),
            "frequency_penalty": _default(options.frequency_penalty, 0),
            "presence_penalty": _default(options.presence_penalty, 0),
            "stop": options.stop,
            "stream": stream,
        })

    def _parse_completion(self, data: dict[str, Any], model: str) -> CompletionResult:
        choices = data.get("choices")
        first = choices[0] if isinstance(choices, list) and choices else None
        message = first.get("message") if isinstance(first, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise ParseError(
                f"Invalid response format from {self.name} API: missing message content",
                provider=self.kind.value,
            )

        usage_data = data.get("usage") or {}
        return CompletionResult(
            content=content,
            model=data.get("model") or model,
            usage=Usage.from_counts(
                usage_data.get("prompt_tokens"),
                usage_data.get("completion_tokens"),
                usage_data.get("total_tokens"),
            ),
            raw=data,
        )

    def _new_decoder(self) -> StreamDecoder:
        return SSEDecoder()

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def list_models(self) -> list[str]:
        """Return model ids reported by ``/v1/models``."""
        self._require_configured()
        data = await self._get(self.models_path)
        entries = data.get("data")
        if not isinstance(entries, list):
            raise ParseError(
                f"Invalid response format from {self.name} API: missing data array",
                provider=self.kind.value,
            )
        return [e["id"] for e in entries if isinstance(e, dict) and "id" in e]

    async def check_connection(self) -> None:
        models = await self.list_models()
        _logger.info(
            "%s connection ok: %d models available (%s)",
            self.name, len(models), ", ".join(models[:5]),
        )


def _default(value: Any, fallback: Any) -> Any:
    return fallback if value is None else value
