"""Dispatcher event bus."""

from llm_relay.events.bus import EventBus

__all__ = ["EventBus"]
