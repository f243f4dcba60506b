"""Provider clients, one wire implementation per backend family."""

from llm_relay.llm.providers.anthropic import ANTHROPIC_PROFILE, AnthropicProvider
from llm_relay.llm.providers.base import (
    HTTPProvider,
    ProviderClient,
    ProviderProfile,
    validate_options,
)
from llm_relay.llm.providers.ollama import OLLAMA_PROFILE, OllamaProvider
from llm_relay.llm.providers.openai import (
    DEEPSEEK_PROFILE,
    LMSTUDIO_PROFILE,
    LOCAL_OPENAI_PROFILE,
    OPENAI_PROFILE,
    OpenAIChatProvider,
)

__all__ = [
    "ANTHROPIC_PROFILE",
    "AnthropicProvider",
    "DEEPSEEK_PROFILE",
    "HTTPProvider",
    "LMSTUDIO_PROFILE",
    "LOCAL_OPENAI_PROFILE",
    "OLLAMA_PROFILE",
    "OPENAI_PROFILE",
    "OllamaProvider",
    "OpenAIChatProvider",
    "ProviderClient",
    "ProviderProfile",
    "validate_options",
]
