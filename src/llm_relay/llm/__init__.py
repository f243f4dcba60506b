"""Provider clients, stream decoding and retry for llm-relay."""

from llm_relay.llm.registry import ProviderRegistry, default_factories
from llm_relay.llm.retry import MAX_RETRIES, RetryDecision, RetryPolicy, RetryState
from llm_relay.llm.streaming import ChunkStream

__all__ = [
    "ChunkStream",
    "MAX_RETRIES",
    "ProviderRegistry",
    "RetryDecision",
    "RetryPolicy",
    "RetryState",
    "default_factories",
]
