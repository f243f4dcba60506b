"""Duplex caller/core channels for streamed requests."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, Protocol, TypeVar, runtime_checkable

from llm_relay.errors import CancellationError
from llm_relay.types import STREAM_CHANNEL_NAME

T = TypeVar("T")


@runtime_checkable
class Channel(Protocol):
    """Core-side view of a duplex channel."""

    name: str

    @property
    def closed(self) -> bool:
        ...

    async def send(self, message: dict[str, Any]) -> None:
        """Deliver *message* to the caller.  Raises ``CancellationError`` if closed."""
        ...

    async def receive(self) -> dict[str, Any]:
        """Next message from the caller.  Raises ``CancellationError`` if closed."""
        ...

    async def wait_closed(self) -> None:
        ...

    async def close(self) -> None:
        ...


class QueueChannel:
    """In-process duplex channel built on two ``asyncio.Queue``\\ s.

    The core uses ``send()`` / ``receive()``; the caller uses ``post()`` and
    iterates ``replies()``.  Either side may ``close()``; pending replies are
    still drained by the caller after close.  A bounded *maxsize* gives the
    producer backpressure when the caller reads slowly.
    """

    def __init__(self, name: str = STREAM_CHANNEL_NAME, maxsize: int = 0) -> None:
        self.name = name
        self._inbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._outbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    # ------------------------------------------------------------------
    # Core side
    # ------------------------------------------------------------------

    async def send(self, message: dict[str, Any]) -> None:
        if self.closed:
            raise CancellationError(f"Channel '{self.name}' is closed")
        await self._until_closed(self._outbound.put(message))

    async def receive(self) -> dict[str, Any]:
        if not self._inbound.empty():
            return self._inbound.get_nowait()
        if self.closed:
            raise CancellationError(f"Channel '{self.name}' is closed")
        return await self._until_closed(self._inbound.get())

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def close(self) -> None:
        self._closed.set()

    # ------------------------------------------------------------------
    # Caller side
    # ------------------------------------------------------------------

    def post(self, message: dict[str, Any]) -> None:
        if self.closed:
            raise CancellationError(f"Channel '{self.name}' is closed")
        self._inbound.put_nowait(message)

    async def replies(self) -> AsyncIterator[dict[str, Any]]:
        """Yield messages from the core until the channel is closed and drained."""
        while True:
            if not self._outbound.empty():
                yield self._outbound.get_nowait()
                continue
            if self.closed:
                return
            try:
                message = await self._until_closed(self._outbound.get())
            except CancellationError:
                continue
            yield message

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _until_closed(self, aw: Awaitable[T]) -> T:
        """Await *aw* unless the channel closes first."""
        task = asyncio.ensure_future(aw)
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({task, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not task.done():
                task.cancel()
        if task.done() and not task.cancelled():
            return task.result()
        raise CancellationError(f"Channel '{self.name}' closed")
