"""Command-line front end for llm-relay."""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import click
from rich.console import Console
from rich.table import Table

from llm_relay.channel import QueueChannel
from llm_relay.config import ConfigStore, load_config
from llm_relay.dispatcher import RequestDispatcher
from llm_relay.errors import RelayError
from llm_relay.events.bus import EventBus
from llm_relay.llm.registry import ProviderRegistry, default_factories
from llm_relay.log_buffer import RingBufferHandler
from llm_relay.prompts import DEFAULT_COMMANDS
from llm_relay.types import EventType, MessageKind, ProviderKind, RelayEvent, WorkItem

console = Console()
err_console = Console(stderr=True)


def _registry_for(store: ConfigStore) -> ProviderRegistry:
    return ProviderRegistry(default_factories(timeout=store.timeout))


def _load(ctx: click.Context) -> ConfigStore:
    try:
        return load_config(ctx.obj.get("config_path"))
    except FileNotFoundError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to llm_relay.yaml (auto-detected from CWD or ~/.config/llm-relay/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """llm-relay: one contract for hosted and local LLM backends."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ---------------------------------------------------------------------------
# providers
# ---------------------------------------------------------------------------

@main.command()
@click.pass_context
def providers(ctx: click.Context) -> None:
    """List configured providers."""
    store = _load(ctx)
    table = Table(title="Providers", show_lines=False, border_style="dim")
    table.add_column("Kind", style="bold")
    table.add_column("Name")
    table.add_column("Endpoint", max_width=40)
    table.add_column("Model")
    table.add_column("Key", width=5)

    for kind in ProviderKind:
        config = store.get(kind)
        if config is None:
            continue
        marker = " *" if kind.value == store.default_provider else ""
        table.add_row(
            kind.value + marker,
            ProviderRegistry.display_name(kind),
            config.endpoint or ProviderRegistry.default_endpoint(kind),
            config.model or ProviderRegistry.default_model(kind),
            "yes" if config.api_key else "-",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# check
# ---------------------------------------------------------------------------

async def _check(store: ConfigStore, kind: ProviderKind) -> None:
    config = store.get(kind)
    if config is None:
        raise click.ClickException(f"Provider '{kind.value}' is not configured")
    registry = _registry_for(store)
    try:
        provider = registry.resolve(kind)
        provider.configure(config)
        await provider.check_connection()
    finally:
        await registry.aclose()


@main.command()
@click.argument("provider")
@click.pass_context
def check(ctx: click.Context, provider: str) -> None:
    """Probe PROVIDER with a lightweight request."""
    store = _load(ctx)
    try:
        kind = ProviderKind.parse(provider)
        asyncio.run(_check(store, kind))
    except RelayError as e:
        err_console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)
    console.print(f"[green]✓[/green] {ProviderRegistry.display_name(kind)} is reachable")


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------

def _print_retry(event: RelayEvent) -> None:
    err_console.print(
        f"[yellow]Empty response from {event.data.get('provider')}, "
        f"retrying (attempt {event.data.get('attempts')})[/yellow]"
    )


async def _run(store: ConfigStore, work: WorkItem) -> int:
    events = EventBus()
    events.subscribe(EventType.STREAM_RETRY, _print_retry)
    registry = _registry_for(store)
    dispatcher = RequestDispatcher(registry, store, events=events)
    try:
        if not work.stream:
            reply = await dispatcher.handle_message({
                "kind": MessageKind.PROCESS_CONTENT.value,
                "provider": work.provider,
                "command": work.command,
                "title": work.title,
                "content": work.content,
            })
            if "error" in reply:
                err_console.print(f"[red]Error: {reply['error']}[/red]")
                return 1
            console.print(reply["content"], highlight=False, markup=False)
            return 0

        channel = QueueChannel()
        task = asyncio.create_task(dispatcher.stream(work, channel))
        status = 0
        async for message in channel.replies():
            if message["kind"] == MessageKind.STREAM_ERROR.value:
                err_console.print(f"\n[red]Error: {message['error']}[/red]")
                status = 1
            elif message["done"]:
                console.print()
            else:
                console.print(message["content"], end="", highlight=False, markup=False)
        await task
        return status
    finally:
        await registry.aclose()


@contextmanager
def _buffered_logs() -> Iterator[RingBufferHandler]:
    """Capture ``llm_relay`` records at INFO and above for ``--log-json``.

    When the console threshold is stricter than INFO, records are routed
    through a private stderr handler at that threshold so the extra INFO
    lines land only in the buffer.
    """
    handler = RingBufferHandler()
    relay_logger = logging.getLogger("llm_relay")
    saved_level, saved_propagate = relay_logger.level, relay_logger.propagate
    console_handler = None
    relay_logger.addHandler(handler)
    if not relay_logger.isEnabledFor(logging.INFO):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(relay_logger.getEffectiveLevel())
        console_handler.setFormatter(logging.Formatter(logging.BASIC_FORMAT))
        relay_logger.addHandler(console_handler)
        relay_logger.setLevel(logging.INFO)
        relay_logger.propagate = False
    try:
        yield handler
    finally:
        relay_logger.removeHandler(handler)
        if console_handler is not None:
            relay_logger.removeHandler(console_handler)
        relay_logger.setLevel(saved_level)
        relay_logger.propagate = saved_propagate


@main.command()
@click.argument("provider")
@click.argument("source", type=click.File("r"), default="-")
@click.option("--command", "-C", "command", default=DEFAULT_COMMANDS[0], show_default=True,
              help=f"Instruction to apply ({', '.join(DEFAULT_COMMANDS)}, or free text)")
@click.option("--title", "-t", default="", help="Title of the content")
@click.option("--stream/--no-stream", default=True, help="Stream the response as it arrives")
@click.option("--log-json", "log_json", type=click.Path(dir_okay=False), default=None,
              help="Write buffered relay logs as JSON to this file")
@click.pass_context
def run(ctx: click.Context, provider: str, source, command: str, title: str,
        stream: bool, log_json: str | None) -> None:
    """Apply COMMAND to the text in SOURCE (a file or - for stdin) using PROVIDER."""
    store = _load(ctx)
    content = source.read()
    if not content.strip():
        raise click.ClickException("No content to process")

    work = WorkItem(
        provider=provider, command=command, content=content,
        title=title, stream=stream,
    )
    with _buffered_logs() as handler:
        try:
            status = asyncio.run(_run(store, work))
        finally:
            if log_json:
                Path(log_json).write_text(handler.export_json())
    sys.exit(status)


if __name__ == "__main__":
    main()
