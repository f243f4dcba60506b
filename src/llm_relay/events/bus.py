"""Async pub/sub bus for observing dispatcher activity."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import Counter, deque
from typing import Any, Callable, Deque

from llm_relay.types import EventType, RelayEvent

_logger = logging.getLogger(__name__)

WILDCARD = "*"

# Sync or async callables taking a RelayEvent
Handler = Callable[[RelayEvent], Any]


class EventBus:
    """Fan relay lifecycle events out to subscribers.

    Subscribers register for one ``EventType`` (or its string value) or for
    ``"*"``.  ``emit()`` awaits every matching handler concurrently; a
    handler that raises is logged and never reaches the dispatcher.  The
    most recent events are kept for inspection, bounded by *max_history*.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: Deque[RelayEvent] = deque(maxlen=max_history)
        self._counts: Counter[str] = Counter()

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        self._handlers.setdefault(_key(event_type), []).append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        handlers = self._handlers.get(_key(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: RelayEvent) -> None:
        key = _key(event.type)
        self._history.append(event)
        self._counts[key] += 1

        targets = self._handlers.get(key, []) + self._handlers.get(WILDCARD, [])
        if targets:
            await asyncio.gather(*(_deliver(h, event) for h in targets))

    async def publish(self, event_type: EventType, **data: Any) -> None:
        """Build a ``RelayEvent`` from keyword data and emit it."""
        await self.emit(RelayEvent(type=event_type, data=data))

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def history(self) -> list[RelayEvent]:
        return list(self._history)

    def count(self, event_type: EventType | str) -> int:
        """Events of *event_type* emitted since creation or ``clear()``."""
        return self._counts[_key(event_type)]

    def for_request(self, request_id: str) -> list[RelayEvent]:
        """Buffered events carrying *request_id*, oldest first."""
        return [e for e in self._history if e.data.get("request_id") == request_id]

    def clear(self) -> None:
        self._handlers.clear()
        self._history.clear()
        self._counts.clear()


def _key(event_type: EventType | str) -> str:
    if isinstance(event_type, EventType):
        return event_type.value
    return str(event_type)


async def _deliver(handler: Handler, event: RelayEvent) -> None:
    try:
        result = handler(event)
        if inspect.isawaitable(result):
            await result
    except Exception:
        _logger.exception(
            "Event handler %s failed on %s",
            getattr(handler, "__name__", repr(handler)), event.type.value,
        )
