"""Shared data types for llm-relay."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field, fields
from typing import Any

from llm_relay.errors import ValidationError


# ---------------------------------------------------------------------------
# Provider types
# ---------------------------------------------------------------------------

class ProviderKind(enum.Enum):
    """Backend families the relay can talk to."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    DEEPSEEK = "deepseek"
    OLLAMA = "ollama"
    LMSTUDIO = "lmstudio"
    OPENAI_COMPATIBLE = "openai_compatible"

    @classmethod
    def parse(cls, value: ProviderKind | str) -> ProviderKind:
        """Accept an enum member or a loosely formatted name."""
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower().replace("-", "_")
        for kind in cls:
            if kind.value == key:
                return kind
        raise ValidationError(
            f"Unknown provider: '{value}'. "
            f"Supported: {', '.join(k.value for k in cls)}"
        )

    @property
    def is_local(self) -> bool:
        return self in _LOCAL_KINDS


_LOCAL_KINDS = frozenset({
    ProviderKind.OLLAMA,
    ProviderKind.LMSTUDIO,
    ProviderKind.OPENAI_COMPATIBLE,
})


@dataclass
class CompletionOptions:
    """Sampling options.  ``None`` means "use the backend default"."""

    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stop: list[str] | None = None

    def merged_over(self, defaults: CompletionOptions | None) -> CompletionOptions:
        """Return a copy where unset values fall back to *defaults*."""
        if defaults is None:
            return CompletionOptions(**self.as_dict())
        merged: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            merged[f.name] = value if value is not None else getattr(defaults, f.name)
        return CompletionOptions(**merged)

    def as_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_mapping(cls, raw: dict[str, Any] | None) -> CompletionOptions:
        """Build options from a config mapping, accepting camelCase keys."""
        if not raw:
            return cls()
        aliases = {
            "maxTokens": "max_tokens",
            "topP": "top_p",
            "frequencyPenalty": "frequency_penalty",
            "presencePenalty": "presence_penalty",
            "stopSequences": "stop",
            "stop_sequences": "stop",
        }
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in raw.items():
            name = aliases.get(key, key)
            if name in known:
                values[name] = value
        return cls(**values)


@dataclass(frozen=True)
class ProviderConfig:
    """One configured backend.  Read-only to the core."""

    kind: ProviderKind
    api_key: str = ""
    endpoint: str = ""
    model: str = ""
    request_defaults: CompletionOptions = field(default_factory=CompletionOptions)
    # Optional allow-list; empty means any model name is accepted.
    models: tuple[str, ...] = ()

    @property
    def credential_or_endpoint(self) -> str:
        if self.kind.is_local:
            return self.endpoint
        return self.api_key


# ---------------------------------------------------------------------------
# Request / response types
# ---------------------------------------------------------------------------

@dataclass
class CompletionRequest:
    """Normalized completion request, independent of backend wire format."""

    prompt: str
    options: CompletionOptions = field(default_factory=CompletionOptions)


@dataclass
class Usage:
    """Token accounting; backend-omitted fields stay 0."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_counts(
        cls,
        prompt_tokens: Any = None,
        completion_tokens: Any = None,
        total_tokens: Any = None,
    ) -> Usage:
        prompt = _as_int(prompt_tokens)
        completion = _as_int(completion_tokens)
        total = _as_int(total_tokens) if total_tokens is not None else prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


@dataclass
class CompletionResult:
    """Unified one-shot completion result."""

    content: str
    model: str = ""
    usage: Usage = field(default_factory=Usage)
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamChunk:
    """One content delta; ``done`` marks the single terminal chunk."""

    content: str = ""
    done: bool = False


@dataclass
class StreamSession:
    """Per-request streaming state owned by the dispatcher."""

    provider: str = ""
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    content: str = ""
    chunk_count: int = 0
    attempts: int = 0
    skipped_lines: int = 0
    started_at: float = field(default_factory=time.monotonic)

    def record(self, chunk: StreamChunk) -> None:
        self.content += chunk.content
        self.chunk_count += 1

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000


# ---------------------------------------------------------------------------
# Message types
# ---------------------------------------------------------------------------

class MessageKind(str, enum.Enum):
    """Message kinds exchanged with UI/content callers."""

    PROCESS_CONTENT = "PROCESS_CONTENT"
    STREAM_CHUNK = "STREAM_CHUNK"
    STREAM_ERROR = "STREAM_ERROR"


STREAM_CHANNEL_NAME = "llm_stream"


@dataclass
class WorkItem:
    """A parsed ``PROCESS_CONTENT`` unit of work."""

    provider: str
    command: str
    content: str
    title: str = ""
    stream: bool = False
    config: dict[str, Any] | None = None
    options: CompletionOptions = field(default_factory=CompletionOptions)

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> WorkItem:
        """Parse an inbound message.  Raises ``ValidationError`` when incomplete."""
        if not isinstance(message, dict):
            raise ValidationError("Invalid message: expected a mapping")
        kind = message.get("kind", message.get("type", MessageKind.PROCESS_CONTENT.value))
        if kind != MessageKind.PROCESS_CONTENT.value:
            raise ValidationError(f"Unsupported message kind: {kind}")
        provider = message.get("provider")
        command = message.get("command")
        content = message.get("content")
        if not provider or not command or not content:
            raise ValidationError("Missing required fields: provider, command, or content")
        for name in ("config", "options"):
            if message.get(name) is not None and not isinstance(message[name], dict):
                raise ValidationError(f"Invalid {name}: expected a mapping")
        return cls(
            provider=provider,
            command=command,
            content=content,
            title=message.get("title") or "",
            stream=bool(message.get("stream", False)),
            config=message.get("config"),
            options=CompletionOptions.from_mapping(message.get("options")),
        )


def chunk_message(chunk: StreamChunk) -> dict[str, Any]:
    return {
        "kind": MessageKind.STREAM_CHUNK.value,
        "content": chunk.content,
        "done": chunk.done,
    }


def error_message(
    error: str,
    *,
    error_type: str = "",
    provider: str = "",
    attempts: int = 0,
) -> dict[str, Any]:
    message: dict[str, Any] = {"kind": MessageKind.STREAM_ERROR.value, "error": error}
    if error_type:
        message["error_type"] = error_type
    if provider:
        message["provider"] = provider
    if attempts:
        message["attempts"] = attempts
    return message


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Lifecycle events emitted by the dispatcher."""

    REQUEST_STARTED = "request.started"
    REQUEST_COMPLETED = "request.completed"
    REQUEST_FAILED = "request.failed"

    STREAM_RETRY = "stream.retry"
    STREAM_DONE = "stream.done"
    STREAM_ERROR = "stream.error"
    STREAM_CANCELLED = "stream.cancelled"


@dataclass
class RelayEvent:
    """Event emitted via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
