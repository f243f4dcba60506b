"""llm-relay: uniform completion and streaming over hosted and local LLM backends."""

__version__ = "0.1.0"
