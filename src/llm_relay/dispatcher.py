"""Request dispatcher: the seam between callers and provider clients.

``RequestDispatcher`` turns a ``WorkItem`` into either a single
``CompletionResult`` or an ordered relay of ``STREAM_CHUNK`` messages on a
duplex channel.  Streaming runs an explicit, bounded retry loop driven by
``RetryPolicy``: every non-terminal chunk is relayed as soon as it is
decoded, the terminal chunk of an attempt is held back until the policy
decides whether the attempt counts.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from llm_relay.channel import Channel
from llm_relay.config import ConfigStore, parse_provider
from llm_relay.errors import (
    CancellationError,
    ChannelBusyError,
    ConfigurationError,
    RelayError,
    ValidationError,
)
from llm_relay.events.bus import EventBus
from llm_relay.llm.providers import ProviderClient
from llm_relay.llm.registry import ProviderRegistry
from llm_relay.llm.retry import RetryDecision, RetryPolicy
from llm_relay.prompts import DEFAULT_OPTIONS, build_prompt
from llm_relay.types import (
    CompletionOptions,
    CompletionRequest,
    CompletionResult,
    EventType,
    ProviderConfig,
    ProviderKind,
    StreamChunk,
    StreamSession,
    WorkItem,
    chunk_message,
    error_message,
)

_logger = logging.getLogger(__name__)


class RequestDispatcher:
    """Validate, resolve and run completion requests.

    Parameters
    ----------
    registry:
        Provider clients, one cached instance per kind.
    store:
        Configured providers, consulted when a request carries no inline
        ``config``.
    events:
        Optional bus receiving request and stream lifecycle events.
    default_options:
        Sampling options applied beneath the provider's request defaults.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: ConfigStore | None = None,
        *,
        events: EventBus | None = None,
        default_options: CompletionOptions = DEFAULT_OPTIONS,
    ) -> None:
        self._registry = registry
        self._store = store
        self._events = events
        self._default_options = default_options
        self._active_channels: set[int] = set()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_config(self, work: WorkItem) -> ProviderConfig:
        """Inline config wins; otherwise look the kind up in the store."""
        kind = ProviderKind.parse(work.provider)
        if work.config:
            return parse_provider(kind, work.config)
        config = self._store.get(kind) if self._store is not None else None
        if config is None:
            raise ConfigurationError(
                f"{ProviderRegistry.display_name(kind)} provider not configured. "
                "Please check your settings.",
                provider=kind.value,
            )
        return config

    def _prepare(self, work: WorkItem) -> tuple[ProviderClient, ProviderConfig, CompletionRequest]:
        if not work.provider or not work.command or not work.content:
            raise ValidationError("Missing required fields: provider, command, or content")
        config = self.resolve_config(work)
        try:
            provider = self._registry.resolve(config.kind)
        except KeyError as exc:
            raise ConfigurationError(str(exc.args[0]), provider=config.kind.value) from exc
        provider.configure(config)

        options = work.options.merged_over(
            config.request_defaults.merged_over(self._default_options)
        )
        request = CompletionRequest(
            prompt=build_prompt(work.command, work.title, work.content),
            options=options,
        )
        return provider, config, request

    # ------------------------------------------------------------------
    # One-shot completion
    # ------------------------------------------------------------------

    async def complete(self, work: WorkItem) -> CompletionResult:
        """Run one non-streaming completion.  Typed ``RelayError``\\ s propagate."""
        provider, config, request = self._prepare(work)
        kind = provider.kind.value
        await self._publish(EventType.REQUEST_STARTED, provider=kind, command=work.command)
        try:
            # Shared per kind; rebind after the publish await, then send without yielding.
            provider.configure(config)
            result = await provider.complete(request)
        except RelayError as exc:
            await self._publish(
                EventType.REQUEST_FAILED, provider=kind, error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        await self._publish(
            EventType.REQUEST_COMPLETED, provider=kind, model=result.model,
            total_tokens=result.usage.total_tokens,
        )
        return result

    async def handle_message(self, message: dict[str, Any]) -> dict[str, Any]:
        """Answer a ``PROCESS_CONTENT`` message with ``{content}`` or ``{error}``."""
        try:
            work = WorkItem.from_message(message)
            result = await self.complete(work)
        except RelayError as exc:
            _logger.warning("Request failed: %s", exc)
            return {"error": str(exc)}
        return {"content": result.content}

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def serve_channel(self, channel: Channel) -> StreamSession | None:
        """Read one request from *channel* and stream the reply onto it."""
        self._check_free(channel)
        message = await channel.receive()
        try:
            work = WorkItem.from_message(message)
        except ValidationError as exc:
            await self._send_error(channel, exc)
            await channel.close()
            return None
        return await self.stream(work, channel)

    async def stream(self, work: WorkItem, channel: Channel) -> StreamSession:
        """Relay a streamed completion for *work* onto *channel*.

        Exactly one of these happens before the channel is closed: the
        terminal ``STREAM_CHUNK`` (``done=True``) is sent, a single
        ``STREAM_ERROR`` is sent, or the caller closed the channel and
        nothing more is sent.  Cancelling the calling task releases the
        upstream response and re-raises ``asyncio.CancelledError``.

        Raises
        ------
        ChannelBusyError
            When *channel* already carries an active stream.
        """
        self._check_free(channel)
        key = id(channel)
        self._active_channels.add(key)
        session = StreamSession(provider=work.provider)
        try:
            await self._run(work, channel, session)
        finally:
            self._active_channels.discard(key)
            await channel.close()
        return session

    def _check_free(self, channel: Channel) -> None:
        if id(channel) in self._active_channels:
            raise ChannelBusyError(
                f"Channel '{channel.name}' already has an active stream"
            )

    async def _run(self, work: WorkItem, channel: Channel, session: StreamSession) -> None:
        pump = asyncio.ensure_future(self._pump(work, channel, session))
        closed = asyncio.ensure_future(channel.wait_closed())
        try:
            done, _ = await asyncio.wait({pump, closed}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._stop(pump)
            _logger.info("[%s] Stream cancelled by task", session.request_id)
            await self._publish_session(EventType.STREAM_CANCELLED, session)
            raise
        finally:
            closed.cancel()

        if pump not in done:
            await self._stop(pump)
            _logger.info("[%s] Stream abandoned: channel closed", session.request_id)
            await self._publish_session(EventType.STREAM_CANCELLED, session)
            return

        try:
            pump.result()
        except CancellationError as exc:
            _logger.info("[%s] Stream abandoned: %s", session.request_id, exc)
            await self._publish_session(EventType.STREAM_CANCELLED, session)
        except RelayError as exc:
            _logger.warning("[%s] Stream failed: %s", session.request_id, exc)
            await self._send_error(channel, exc, attempts=session.attempts)
            await self._publish_session(
                EventType.STREAM_ERROR, session,
                error=str(exc), error_type=type(exc).__name__,
            )
        except Exception as exc:
            _logger.exception("[%s] Unexpected error while streaming", session.request_id)
            await self._send_error(channel, exc, attempts=session.attempts)
            await self._publish_session(
                EventType.STREAM_ERROR, session,
                error=str(exc), error_type=type(exc).__name__,
            )

    async def _pump(self, work: WorkItem, channel: Channel, session: StreamSession) -> None:
        provider, config, request = self._prepare(work)
        session.provider = provider.kind.value
        policy = RetryPolicy.for_backend(provider.cold_start_retry)
        await self._publish_session(EventType.REQUEST_STARTED, session, command=work.command)

        while True:
            session.attempts = policy.total_attempts
            # The client is shared per kind; bind this request's config per attempt.
            provider.configure(config)
            stream = provider.stream_complete(request)
            content = ""
            chunk_count = 0
            terminal: StreamChunk | None = None

            async with stream:
                async for chunk in stream:
                    if chunk.done:
                        terminal = chunk
                        break
                    content += chunk.content
                    chunk_count += 1
                    session.record(chunk)
                    await channel.send(chunk_message(chunk))
            session.skipped_lines += stream.decoder.skipped_lines

            decision = policy.on_terminal(content, chunk_count)
            if decision is RetryDecision.ACCEPT:
                await channel.send(chunk_message(terminal or StreamChunk(done=True)))
                _logger.info(
                    "[%s] Stream done: provider=%s chunks=%d attempts=%d elapsed=%.0fms",
                    session.request_id, session.provider, session.chunk_count,
                    session.attempts, session.elapsed_ms,
                )
                await self._publish_session(EventType.STREAM_DONE, session)
                return
            if decision is RetryDecision.RETRY:
                _logger.info(
                    "[%s] %s returned an empty stream, re-issuing (attempt %d)",
                    session.request_id, session.provider, policy.total_attempts,
                )
                await self._publish_session(EventType.STREAM_RETRY, session)
                continue
            raise policy.integrity_error(chunk_count, provider=session.provider)

    @staticmethod
    async def _stop(task: asyncio.Future) -> None:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _send_error(self, channel: Channel, exc: Exception, *, attempts: int = 0) -> None:
        if channel.closed:
            _logger.debug("Channel '%s' closed, dropping error: %s", channel.name, exc)
            return
        provider = exc.provider if isinstance(exc, RelayError) else None
        message = error_message(
            str(exc) or type(exc).__name__,
            error_type=type(exc).__name__,
            provider=provider or "",
            attempts=attempts,
        )
        try:
            await channel.send(message)
        except CancellationError:
            _logger.debug("Channel '%s' closed while sending error", channel.name)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _publish(self, event_type: EventType, **data: Any) -> None:
        if self._events is not None:
            await self._events.publish(event_type, **data)

    async def _publish_session(
        self, event_type: EventType, session: StreamSession, **data: Any,
    ) -> None:
        await self._publish(
            event_type,
            request_id=session.request_id,
            provider=session.provider,
            attempts=session.attempts,
            chunks=session.chunk_count,
            **data,
        )
