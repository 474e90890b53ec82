"""Command-line entry point: stream one prompt through the aggregator."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.table import Table

from openturn import __version__
from openturn.config import TurnConfig, load_config
from openturn.diagnostics import TurnRecorder
from openturn.errors import ProviderError
from openturn.llm.client import AsyncLLMClient
from openturn.types import EventType, Message, Role, Turn

console = Console()


def render_turn(turn: Turn, out: Console = console) -> None:
    """Print tool calls and usage of a finished turn."""
    if turn.tool_calls:
        table = Table(title="Tool calls")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Input")
        for call in turn.tool_calls:
            args = call.input if not call.error else f"[red]{call.input}[/red]"
            table.add_row(call.id, call.name, args)
        out.print(table)
    u = turn.usage
    out.print(
        f"[dim]{turn.model} · {turn.finish_reason.value} · "
        f"in {u.input_tokens} / out {u.output_tokens} / "
        f"cache read {u.cache_read_tokens} · {turn.latency_ms:.0f} ms[/dim]"
    )


async def _stream(client: AsyncLLMClient, history: list[Message], max_tokens: int) -> Turn:
    stream = client.stream(history, max_tokens=max_tokens)
    thinking = False
    try:
        async for event in stream:
            if event.type == EventType.THINKING_DELTA:
                thinking = True
                console.print(event.thinking, style="dim italic", end="")
            elif event.type == EventType.CONTENT_DELTA:
                if thinking:
                    console.print()
                    thinking = False
                console.print(event.content, end="", markup=False, highlight=False)
            elif event.type == EventType.TOOL_USE_START and event.tool_call:
                console.print(f"\n[cyan]→ {event.tool_call.name}[/cyan]")
            elif event.type == EventType.COMPLETE and event.response is not None:
                console.print()
                return event.response
            elif event.type == EventType.ERROR:
                raise event.error or ProviderError("stream failed")
    finally:
        await stream.aclose()
    raise ProviderError("stream closed without a terminal event")


async def _run(
    config: TurnConfig,
    prompt: str,
    model_type: str,
    system: str,
    no_stream: bool,
    max_tokens: int,
    recorder: TurnRecorder | None,
) -> Turn:
    history = [Message(role=Role.USER, content=prompt)]
    async with AsyncLLMClient(
        config, model_type, system, recorder=recorder,
    ) as client:
        if no_stream:
            turn = await client.send(history, max_tokens=max_tokens)
            console.print(turn.content, markup=False, highlight=False)
            return turn
        return await _stream(client, history, max_tokens)


@click.command()
@click.argument("prompt")
@click.option("--config", "-c", "config_path", default=None,
              help="Path to openturn.yaml (auto-detected from CWD or ~/.openturn/)")
@click.option("--model-type", "-m", default="large", help="Model type from config (large/small)")
@click.option("--system", "-s", default="You are a helpful assistant.", help="System prompt")
@click.option("--no-stream", is_flag=True, help="Use a single non-streaming request")
@click.option("--max-tokens", default=0, type=int, help="Override the completion token budget")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.option("--debug", is_flag=True, help="Log HTTP traffic and record the run as JSONL")
@click.version_option(__version__)
def main(prompt: str, config_path: str | None, model_type: str, system: str,
         no_stream: bool, max_tokens: int, verbose: bool, debug: bool):
    """OpenTurn - send one prompt and stream the assistant turn."""
    if verbose or debug:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    config, config_file = load_config(config_path)
    if config_file:
        console.print(f"[dim]Config: {config_file}[/dim]")
    if debug:
        config.debug = True

    recorder = TurnRecorder() if debug else None
    try:
        turn = asyncio.run(
            _run(config, prompt, model_type, system, no_stream, max_tokens, recorder),
        )
    except ProviderError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    finally:
        if recorder is not None:
            console.print(f"[dim]Run log: {recorder.path}[/dim]")
            recorder.close()
    render_turn(turn)


if __name__ == "__main__":
    main()
