"""Provider configuration for llm-relay.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./llm_relay.yaml``
  3. ``~/.config/llm-relay/config.yaml``
  4. Built-in defaults (a local Ollama server)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from llm_relay.llm.transport import DEFAULT_TIMEOUT
from llm_relay.types import CompletionOptions, ProviderConfig, ProviderKind

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

# Hosted providers fall back to these when no key is configured.
_ENV_KEYS: dict[ProviderKind, str] = {
    ProviderKind.OPENAI: "OPENAI_API_KEY",
    ProviderKind.ANTHROPIC: "ANTHROPIC_API_KEY",
    ProviderKind.DEEPSEEK: "DEEPSEEK_API_KEY",
}


def _default_providers() -> dict[ProviderKind, ProviderConfig]:
    return {
        ProviderKind.OLLAMA: ProviderConfig(
            kind=ProviderKind.OLLAMA, endpoint="http://localhost:11434",
        ),
    }


@dataclass
class ConfigStore:
    """Read-only view of the configured providers."""

    default_provider: str = "ollama"
    timeout: float = DEFAULT_TIMEOUT
    providers: dict[ProviderKind, ProviderConfig] = field(default_factory=_default_providers)

    def get(self, kind: ProviderKind | str) -> ProviderConfig | None:
        return self.providers.get(ProviderKind.parse(kind))

    def kinds(self) -> list[ProviderKind]:
        return list(self.providers)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./llm_relay.yaml"),
    Path.home() / ".config" / "llm-relay" / "config.yaml",
]


def normalize_providers(raw: Any) -> dict[str, dict[str, Any]]:
    """Accept either ``{kind: {...}}`` or ``[{type: kind, ...}, ...]``."""
    if not raw:
        return {}
    if isinstance(raw, dict):
        return {str(k): dict(v or {}) for k, v in raw.items()}
    if isinstance(raw, list):
        result: dict[str, dict[str, Any]] = {}
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            kind = entry.get("type") or entry.get("kind")
            if not kind:
                _logger.warning("Skipping provider entry without a type: %r", sorted(entry))
                continue
            result[str(kind)] = {k: v for k, v in entry.items() if k not in ("type", "kind")}
        return result
    raise ValueError(f"'providers' must be a mapping or a list, got {type(raw).__name__}")


def parse_provider(kind: ProviderKind | str, raw: dict[str, Any]) -> ProviderConfig:
    kind = ProviderKind.parse(kind)
    api_key = raw.get("api_key") or raw.get("apiKey") or ""
    if not api_key and kind in _ENV_KEYS:
        api_key = os.environ.get(_ENV_KEYS[kind], "")
    endpoint = raw.get("endpoint") or raw.get("base_url") or raw.get("url") or ""
    return ProviderConfig(
        kind=kind,
        api_key=str(api_key),
        endpoint=str(endpoint).rstrip("/"),
        model=str(raw.get("model") or ""),
        request_defaults=CompletionOptions.from_mapping(
            raw.get("request_defaults") or raw.get("requestDefaults")
        ),
        models=_model_list(raw.get("models")),
    )


def _model_list(raw: Any) -> tuple[str, ...]:
    if not raw:
        return ()
    if isinstance(raw, str):
        return (raw,)
    return tuple(str(m) for m in raw)


def load_config(path: str | Path | None = None) -> ConfigStore:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    ConfigStore

    Raises
    ------
    FileNotFoundError
        When an explicit *path* does not exist.
    yaml.YAMLError
        When the file is not valid YAML.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return ConfigStore()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    providers: dict[ProviderKind, ProviderConfig] = {}
    for name, praw in normalize_providers(raw.get("providers")).items():
        config = parse_provider(name, praw)
        providers[config.kind] = config
        _logger.debug(
            "Provider %s: endpoint=%s model=%s has_key=%s",
            config.kind.value, config.endpoint or "-", config.model or "-",
            bool(config.api_key),
        )

    if not providers:
        providers = _default_providers()

    return ConfigStore(
        default_provider=raw.get("default_provider", "ollama"),
        timeout=float(raw.get("timeout", DEFAULT_TIMEOUT)),
        providers=providers,
    )
