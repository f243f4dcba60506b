"""Provider registry: one cached client instance per backend kind.

The registry is an explicit value handed to the dispatcher; tests build
their own with fake factories.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from llm_relay.llm.providers import (
    ANTHROPIC_PROFILE,
    DEEPSEEK_PROFILE,
    LMSTUDIO_PROFILE,
    LOCAL_OPENAI_PROFILE,
    OLLAMA_PROFILE,
    OPENAI_PROFILE,
    AnthropicProvider,
    OllamaProvider,
    OpenAIChatProvider,
    ProviderClient,
    ProviderProfile,
)
from llm_relay.types import ProviderKind

_logger = logging.getLogger(__name__)

ProviderFactory = Callable[[], ProviderClient]

PROFILES: dict[ProviderKind, ProviderProfile] = {
    ProviderKind.OPENAI: OPENAI_PROFILE,
    ProviderKind.ANTHROPIC: ANTHROPIC_PROFILE,
    ProviderKind.DEEPSEEK: DEEPSEEK_PROFILE,
    ProviderKind.OLLAMA: OLLAMA_PROFILE,
    ProviderKind.LMSTUDIO: LMSTUDIO_PROFILE,
    ProviderKind.OPENAI_COMPATIBLE: LOCAL_OPENAI_PROFILE,
}


def default_factories(timeout: float | None = None) -> dict[ProviderKind, ProviderFactory]:
    """Factories for the built-in backends."""
    return {
        ProviderKind.OPENAI: lambda: OpenAIChatProvider(OPENAI_PROFILE, timeout=timeout),
        ProviderKind.DEEPSEEK: lambda: OpenAIChatProvider(DEEPSEEK_PROFILE, timeout=timeout),
        ProviderKind.LMSTUDIO: lambda: OpenAIChatProvider(LMSTUDIO_PROFILE, timeout=timeout),
        ProviderKind.OPENAI_COMPATIBLE: lambda: OpenAIChatProvider(
            LOCAL_OPENAI_PROFILE, timeout=timeout,
        ),
        ProviderKind.ANTHROPIC: lambda: AnthropicProvider(timeout=timeout),
        ProviderKind.OLLAMA: lambda: OllamaProvider(timeout=timeout),
    }


class ProviderRegistry:
    """Resolve-or-create cache of provider clients.

    ``resolve()`` is safe under concurrent calls for the same kind: the
    first caller creates the client, every other caller gets that instance.
    """

    def __init__(
        self,
        factories: dict[ProviderKind, ProviderFactory] | None = None,
    ) -> None:
        self._factories = dict(factories) if factories is not None else default_factories()
        self._instances: dict[ProviderKind, ProviderClient] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(self, kind: ProviderKind | str) -> ProviderClient:
        """Return the cached client for *kind*, creating it on first use."""
        kind = ProviderKind.parse(kind)
        with self._lock:
            client = self._instances.get(kind)
            if client is None:
                factory = self._factories.get(kind)
                if factory is None:
                    raise KeyError(f"Provider '{kind.value}' not registered")
                client = factory()
                self._instances[kind] = client
                _logger.debug("Created %s provider client", kind.value)
            return client

    def kinds(self) -> list[ProviderKind]:
        return list(self._factories)

    def is_cached(self, kind: ProviderKind | str) -> bool:
        with self._lock:
            return ProviderKind.parse(kind) in self._instances

    def clear(self, kind: ProviderKind | str) -> ProviderClient | None:
        """Drop the cached client for *kind* and return it (caller closes)."""
        with self._lock:
            return self._instances.pop(ProviderKind.parse(kind), None)

    def clear_all(self) -> list[ProviderClient]:
        with self._lock:
            clients = list(self._instances.values())
            self._instances.clear()
        return clients

    async def aclose(self) -> None:
        """Close and forget every cached client."""
        for client in self.clear_all():
            await client.aclose()

    # ------------------------------------------------------------------
    # Static metadata
    # ------------------------------------------------------------------

    @staticmethod
    def display_name(kind: ProviderKind | str) -> str:
        return PROFILES[ProviderKind.parse(kind)].display_name

    @staticmethod
    def default_endpoint(kind: ProviderKind | str) -> str:
        return PROFILES[ProviderKind.parse(kind)].default_endpoint

    @staticmethod
    def default_model(kind: ProviderKind | str) -> str:
        return PROFILES[ProviderKind.parse(kind)].default_model
