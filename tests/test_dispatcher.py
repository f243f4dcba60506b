"""Tests for RequestDispatcher: one-shot, streaming relay, retry and cancellation."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from llm_relay.channel import QueueChannel
from llm_relay.config import ConfigStore
from llm_relay.dispatcher import RequestDispatcher
from llm_relay.errors import ChannelBusyError, ConfigurationError, UpstreamError
from llm_relay.events.bus import EventBus
from llm_relay.llm.providers import OllamaProvider, OpenAIChatProvider
from llm_relay.llm.registry import ProviderRegistry
from llm_relay.types import (
    CompletionOptions,
    ProviderConfig,
    ProviderKind,
    WorkItem,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

class Backend:
    """Scripted MockTransport handler; the last body repeats."""

    def __init__(self, *bodies, status: int = 200) -> None:
        self.bodies = list(bodies)
        self.status = status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = self.bodies.pop(0) if len(self.bodies) > 1 else self.bodies[0]
        if isinstance(body, dict):
            return httpx.Response(self.status, json=body)
        return httpx.Response(self.status, content=body)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


OLLAMA = ProviderConfig(kind=ProviderKind.OLLAMA, endpoint="http://localhost:11434")
OPENAI = ProviderConfig(kind=ProviderKind.OPENAI, api_key="sk-test-12345")


def _dispatcher(backend, *configs: ProviderConfig, events: EventBus | None = None) -> RequestDispatcher:
    transport = httpx.MockTransport(backend)
    registry = ProviderRegistry({
        ProviderKind.OLLAMA: lambda: OllamaProvider(transport=transport),
        ProviderKind.OPENAI: lambda: OpenAIChatProvider(transport=transport),
    })
    store = ConfigStore(providers={c.kind: c for c in configs})
    return RequestDispatcher(registry, store, events=events)


def _work(provider="ollama", **kwargs) -> WorkItem:
    kwargs.setdefault("command", "Summarize")
    kwargs.setdefault("content", "Some page text")
    kwargs.setdefault("stream", True)
    return WorkItem(provider=provider, **kwargs)


async def _collect(channel: QueueChannel) -> list[dict]:
    return [m async for m in channel.replies()]


def _recording_bus() -> tuple[EventBus, list[str]]:
    bus = EventBus()
    seen: list[str] = []
    bus.subscribe("*", lambda event: seen.append(event.type.value))
    return bus, seen


# ---------------------------------------------------------------------------
# One-shot
# ---------------------------------------------------------------------------

class TestComplete:
    async def test_complete_builds_prompt_and_options(self):
        backend = Backend({"response": "A summary", "prompt_eval_count": 5, "eval_count": 2})
        dispatcher = _dispatcher(backend, OLLAMA)

        result = await dispatcher.complete(_work(title="Page", stream=False))

        assert result.content == "A summary"
        assert result.usage.total_tokens == 7
        body = backend.body()
        assert body["prompt"].startswith("Command: Summarize\nTitle: Page\nContent:\nSome page text")
        assert body["prompt"].endswith("Please summarize the above content.")
        assert body["options"] == {"temperature": 0.7, "num_predict": 1000}

    async def test_option_precedence(self):
        backend = Backend({"response": "x"})
        config = ProviderConfig(
            kind=ProviderKind.OLLAMA, endpoint="http://localhost:11434",
            request_defaults=CompletionOptions(max_tokens=50, top_p=0.9),
        )
        dispatcher = _dispatcher(backend, config)

        await dispatcher.complete(_work(options=CompletionOptions(temperature=0.2)))

        assert backend.body()["options"] == {"temperature": 0.2, "top_p": 0.9, "num_predict": 50}

    async def test_inline_config_wins(self):
        backend = Backend({"response": "x"})
        dispatcher = _dispatcher(backend, OLLAMA)

        await dispatcher.complete(_work(config={"endpoint": "http://gpu-box:11434", "model": "mistral"}))

        assert backend.requests[0].url.host == "gpu-box"
        assert backend.body()["model"] == "mistral"

    async def test_unconfigured_provider(self):
        backend = Backend({"response": "x"})
        dispatcher = _dispatcher(backend)
        with pytest.raises(ConfigurationError, match="not configured"):
            await dispatcher.complete(_work())
        assert backend.calls == 0

    async def test_upstream_error_propagates(self):
        backend = Backend({"error": "boom"}, status=500)
        bus, seen = _recording_bus()
        dispatcher = _dispatcher(backend, OLLAMA, events=bus)
        with pytest.raises(UpstreamError):
            await dispatcher.complete(_work())
        assert seen == ["request.started", "request.failed"]

    async def test_events(self):
        bus, seen = _recording_bus()
        dispatcher = _dispatcher(Backend({"response": "x"}), OLLAMA, events=bus)
        await dispatcher.complete(_work())
        assert seen == ["request.started", "request.completed"]


class TestHandleMessage:
    async def test_content_reply(self):
        dispatcher = _dispatcher(Backend({"response": "Done"}), OLLAMA)
        reply = await dispatcher.handle_message({
            "kind": "PROCESS_CONTENT", "provider": "ollama", "command": "Translate",
            "content": "Bonjour", "title": "t",
        })
        assert reply == {"content": "Done"}

    async def test_missing_fields(self):
        dispatcher = _dispatcher(Backend({"response": "x"}), OLLAMA)
        reply = await dispatcher.handle_message({"kind": "PROCESS_CONTENT", "provider": "ollama"})
        assert reply == {"error": "Missing required fields: provider, command, or content"}

    async def test_error_reply(self):
        dispatcher = _dispatcher(Backend({"response": "x"}))
        reply = await dispatcher.handle_message({
            "type": "PROCESS_CONTENT", "provider": "openai", "command": "Summarize", "content": "x",
        })
        assert "error" in reply
        assert "OpenAI provider not configured" in reply["error"]

    async def test_concurrent_requests_keep_their_own_config(self):
        backend = Backend({"choices": [{"message": {"content": "ok"}}]})
        bus = EventBus()

        async def slow_observer(event):
            await asyncio.sleep(0)

        bus.subscribe("*", slow_observer)
        dispatcher = _dispatcher(backend, events=bus)

        def message(key: str, model: str) -> dict:
            return {
                "kind": "PROCESS_CONTENT", "provider": "openai", "command": "Summarize",
                "content": "x", "config": {"api_key": key, "model": model},
            }

        replies = await asyncio.gather(
            dispatcher.handle_message(message("key-AAAAA", "model-a")),
            dispatcher.handle_message(message("key-BBBBB", "model-b")),
        )

        assert replies == [{"content": "ok"}, {"content": "ok"}]
        sent = sorted(
            (r.headers["Authorization"], json.loads(r.content)["model"]) for r in backend.requests
        )
        assert sent == [("Bearer key-AAAAA", "model-a"), ("Bearer key-BBBBB", "model-b")]

    @pytest.mark.parametrize("field,value", [
        ("config", "sk-12345"),
        ("options", ["temperature", 0.2]),
    ])
    async def test_malformed_field_gets_error_reply(self, field, value):
        dispatcher = _dispatcher(Backend({"response": "x"}), OLLAMA)
        message = {
            "kind": "PROCESS_CONTENT", "provider": "ollama", "command": "Summarize", "content": "x",
            field: value,
        }
        reply = await dispatcher.handle_message(message)
        assert reply == {"error": f"Invalid {field}: expected a mapping"}


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class TestStream:
    async def test_relays_chunks_in_order(self):
        backend = Backend(b'{"response":"Hel"}\n{"response":"lo","done":true}\n')
        bus, seen = _recording_bus()
        dispatcher = _dispatcher(backend, OLLAMA, events=bus)
        channel = QueueChannel()

        session = await dispatcher.stream(_work(), channel)

        assert await _collect(channel) == [
            {"kind": "STREAM_CHUNK", "content": "Hel", "done": False},
            {"kind": "STREAM_CHUNK", "content": "lo", "done": False},
            {"kind": "STREAM_CHUNK", "content": "", "done": True},
        ]
        assert channel.closed
        assert session.content == "Hello"
        assert session.chunk_count == 2
        assert session.attempts == 1
        assert backend.calls == 1
        assert backend.body()["stream"] is True
        assert seen == ["request.started", "stream.done"]

    async def test_cold_start_retry(self):
        backend = Backend(
            b'{"response":"","done":true}\n',
            b'{"response":"ready","done":true}\n',
        )
        bus, seen = _recording_bus()
        dispatcher = _dispatcher(backend, OLLAMA, events=bus)
        channel = QueueChannel()

        session = await dispatcher.stream(_work(), channel)

        assert await _collect(channel) == [
            {"kind": "STREAM_CHUNK", "content": "ready", "done": False},
            {"kind": "STREAM_CHUNK", "content": "", "done": True},
        ]
        assert backend.calls == 2
        assert session.attempts == 2
        assert "stream.retry" in seen

    async def test_content_on_last_allowed_attempt(self):
        empty = b'{"response":"","done":true}\n'
        backend = Backend(empty, empty, b'{"response":"ok","done":true}\n')
        bus, seen = _recording_bus()
        dispatcher = _dispatcher(backend, OLLAMA, events=bus)
        channel = QueueChannel()

        session = await dispatcher.stream(_work(), channel)

        assert await _collect(channel) == [
            {"kind": "STREAM_CHUNK", "content": "ok", "done": False},
            {"kind": "STREAM_CHUNK", "content": "", "done": True},
        ]
        assert backend.calls == 3
        assert session.attempts == 3
        assert session.content == "ok"
        assert seen.count("stream.retry") == 2
        assert seen[-1] == "stream.done"

    async def test_retries_exhausted(self):
        backend = Backend(b'{"response":"","done":true}\n')
        dispatcher = _dispatcher(backend, OLLAMA)
        channel = QueueChannel()

        await dispatcher.stream(_work(), channel)

        messages = await _collect(channel)
        assert backend.calls == 3
        assert len(messages) == 1
        assert messages[0]["kind"] == "STREAM_ERROR"
        assert messages[0]["error_type"] == "StreamIntegrityError"
        assert messages[0]["attempts"] == 3
        assert "attempts=3" in messages[0]["error"]

    async def test_hosted_backend_does_not_retry(self):
        backend = Backend(b"data: [DONE]\n\n")
        dispatcher = _dispatcher(backend, OPENAI)
        channel = QueueChannel()

        await dispatcher.stream(_work("openai"), channel)

        messages = await _collect(channel)
        assert backend.calls == 1
        assert [m["kind"] for m in messages] == ["STREAM_ERROR"]

    async def test_upstream_error_becomes_single_stream_error(self):
        backend = Backend({"error": {"message": "rate limited"}}, status=429)
        bus, seen = _recording_bus()
        dispatcher = _dispatcher(backend, OPENAI, events=bus)
        channel = QueueChannel()

        await dispatcher.stream(_work("openai"), channel)

        messages = await _collect(channel)
        assert len(messages) == 1
        assert messages[0]["kind"] == "STREAM_ERROR"
        assert "rate limited" in messages[0]["error"]
        assert messages[0]["provider"] == "openai"
        assert seen[-1] == "stream.error"

    async def test_configuration_error_before_network(self):
        backend = Backend(b"")
        dispatcher = _dispatcher(backend)
        channel = QueueChannel()

        await dispatcher.stream(_work(), channel)

        messages = await _collect(channel)
        assert backend.calls == 0
        assert messages[0]["kind"] == "STREAM_ERROR"
        assert messages[0]["error_type"] == "ConfigurationError"

    async def test_error_after_partial_content(self):
        async def body():
            yield b'{"response":"par"}\n'
            raise httpx.ReadError("connection reset")

        dispatcher = _dispatcher(Backend(body()), OLLAMA)
        channel = QueueChannel()

        await dispatcher.stream(_work(), channel)

        messages = await _collect(channel)
        assert messages[0] == {"kind": "STREAM_CHUNK", "content": "par", "done": False}
        assert [m["kind"] for m in messages[1:]] == ["STREAM_ERROR"]

    async def test_error_record_in_same_read_as_content(self):
        backend = Backend(b'{"response":"par"}\n{"error":"model crashed"}\n')
        dispatcher = _dispatcher(backend, OLLAMA)
        channel = QueueChannel()

        session = await dispatcher.stream(_work(), channel)

        messages = await _collect(channel)
        assert messages[0] == {"kind": "STREAM_CHUNK", "content": "par", "done": False}
        assert len(messages) == 2
        assert messages[1]["kind"] == "STREAM_ERROR"
        assert messages[1]["error_type"] == "UpstreamError"
        assert "model crashed" in messages[1]["error"]
        assert session.content == "par"

    async def test_busy_channel(self):
        gate = asyncio.Event()

        async def body():
            yield b'{"response":"a"}\n'
            await gate.wait()
            yield b'{"response":"b","done":true}\n'

        dispatcher = _dispatcher(Backend(body()), OLLAMA)
        channel = QueueChannel()
        first = asyncio.create_task(dispatcher.stream(_work(), channel))
        await asyncio.sleep(0)

        with pytest.raises(ChannelBusyError):
            await dispatcher.stream(_work(), channel)

        gate.set()
        await first
        messages = await _collect(channel)
        assert [m["content"] for m in messages] == ["a", "b", ""]

    async def test_caller_closing_channel_stops_stream(self):
        released = asyncio.Event()

        async def body():
            try:
                yield b'{"response":"first"}\n'
                await asyncio.Event().wait()
            finally:
                released.set()

        bus, seen = _recording_bus()
        dispatcher = _dispatcher(Backend(body()), OLLAMA, events=bus)
        channel = QueueChannel()
        task = asyncio.create_task(dispatcher.stream(_work(), channel))

        replies = channel.replies()
        assert (await replies.__anext__())["content"] == "first"
        await channel.close()
        session = await task

        assert released.is_set()
        assert [m async for m in replies] == []
        assert session.chunk_count == 1
        assert seen[-1] == "stream.cancelled"

    async def test_task_cancellation_releases_response(self):
        released = asyncio.Event()

        async def body():
            try:
                yield b'{"response":"first"}\n'
                await asyncio.Event().wait()
            finally:
                released.set()

        dispatcher = _dispatcher(Backend(body()), OLLAMA)
        channel = QueueChannel()
        task = asyncio.create_task(dispatcher.stream(_work(), channel))

        replies = channel.replies()
        await replies.__anext__()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert released.is_set()
        assert channel.closed
        assert [m async for m in replies] == []

    async def test_finished_stream_releases_channel(self):
        backend = Backend(b'{"response":"x","done":true}\n')
        dispatcher = _dispatcher(backend, OLLAMA)
        channel = QueueChannel()
        await dispatcher.stream(_work(), channel)

        # Closed by the first stream: no busy error and nothing more is sent.
        await dispatcher.stream(_work(), channel)

        assert [m["done"] for m in await _collect(channel)] == [False, True]


class TestServeChannel:
    async def test_serves_posted_request(self):
        backend = Backend(b'{"response":"ok","done":true}\n')
        dispatcher = _dispatcher(backend, OLLAMA)
        channel = QueueChannel()
        channel.post({
            "kind": "PROCESS_CONTENT", "provider": "ollama", "command": "Summarize",
            "content": "text", "stream": True,
        })

        session = await dispatcher.serve_channel(channel)

        assert session is not None
        assert session.content == "ok"
        assert [m["done"] for m in await _collect(channel)] == [False, True]

    async def test_invalid_request_gets_stream_error(self):
        dispatcher = _dispatcher(Backend(b""), OLLAMA)
        channel = QueueChannel()
        channel.post({"kind": "PROCESS_CONTENT", "provider": "ollama"})

        assert await dispatcher.serve_channel(channel) is None

        messages = await _collect(channel)
        assert messages == [{
            "kind": "STREAM_ERROR",
            "error": "Missing required fields: provider, command, or content",
            "error_type": "ValidationError",
        }]
