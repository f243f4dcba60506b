"""Prompt construction for page-content commands."""

from __future__ import annotations

from llm_relay.types import CompletionOptions

DEFAULT_COMMANDS = ("Summarize", "Paraphrase", "Bullet Points", "Translate", "Analyze Tone")

# Options used when neither the request nor the provider config sets them.
DEFAULT_OPTIONS = CompletionOptions(temperature=0.7, max_tokens=1000)


def build_prompt(command: str, title: str, content: str) -> str:
    """Wrap page *content* in an instruction derived from *command*."""
    command = command.strip()
    return (
        f"Command: {command}\n"
        f"Title: {title}\n"
        f"Content:\n"
        f"{content}\n"
        f"\n"
        f"Please {command.lower()} the above content."
    ).strip()
