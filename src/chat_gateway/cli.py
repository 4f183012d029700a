"""chat-gateway: developer CLI for smoke-testing providers."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import uuid
from pathlib import Path

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from chat_gateway import __version__
from chat_gateway.config import GatewayConfig, load_config
from chat_gateway.core.orchestrator import ChatTurnOrchestrator
from chat_gateway.errors import ConfigurationError
from chat_gateway.events.bus import ALL_EVENTS
from chat_gateway.keys import ProviderKeyManager
from chat_gateway.types import (
    AiRequestContext,
    Attachment,
    ChatMessage,
    EventType,
    GatewayEvent,
    ModelParameters,
    TurnResult,
    TurnStatus,
)

console = Console()


class StreamingDisplay:
    """Renders gateway events to the terminal in real time."""

    def __init__(self, con: Console):
        self.con = con
        self._streaming = False

    def handle(self, event: GatewayEvent):
        if event.type is EventType.CHUNK_RECEIVED:
            self._streaming = True
            self.con.print(event.data.get("text", ""), end="", highlight=False, markup=False)

        elif event.type is EventType.THINKING_RECEIVED:
            self.con.print(event.data.get("text", ""), end="", style="dim italic", markup=False)

        elif event.type is EventType.TOOL_CALL_STARTED:
            self._flush()
            args = event.data.get("arguments", "")
            if len(args) > 120:
                args = args[:120] + "..."
            self.con.print(f"[yellow]> {event.data.get('name', '?')}[/yellow] [dim]{args}[/dim]")

        elif event.type is EventType.TOOL_CALL_FINISHED:
            icon = "[green]OK[/green]" if event.data.get("success") else "[red]FAIL[/red]"
            out = event.data.get("output", "")
            if len(out) > 600:
                out = out[:600] + "\n..."
            if out.strip():
                self.con.print(Panel(out, title=f"{icon} {event.data.get('name', '')}",
                                     border_style="dim", expand=False))

        elif event.type is EventType.STREAM_RETRYING:
            self._flush()
            self.con.print(
                f"[magenta]~ retry {event.data.get('attempt')} in "
                f"{event.data.get('delay', 0):.1f}s: {event.data.get('error', '')}[/magenta]"
            )

    def finish(self, result: TurnResult):
        self._flush()
        if result.status is TurnStatus.COMPLETED and not self._streaming and result.text:
            self.con.print(Markdown(result.text))

    def _flush(self):
        if self._streaming:
            self.con.print()
            self._streaming = False


def _load(config_path: str | None) -> GatewayConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _attachment(path: str) -> Attachment:
    content_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return Attachment.from_bytes(Path(path).name, content_type, Path(path).read_bytes())


async def _ask(orchestrator: ChatTurnOrchestrator, context: AiRequestContext) -> TurnResult:
    try:
        return await orchestrator.run_turn(context)
    finally:
        await orchestrator.close()


@click.group()
@click.version_option(__version__, prog_name="chat-gateway")
@click.option("--config", "-c", "config_path", default=None,
              help="Path to chat_gateway.yaml (default: ./chat_gateway.yaml or ~/.config/chat-gateway/config.yaml)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool):
    """Chat Gateway - stream chat turns through multiple LLM providers."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
    ctx.obj = {"config_path": config_path}


@main.command()
@click.argument("model")
@click.argument("prompt")
@click.option("--system", "-s", "system_prompt", default="", help="System instructions")
@click.option("--thinking", is_flag=True, help="Request reasoning output if the model supports it")
@click.option("--temperature", type=float, default=None)
@click.option("--max-tokens", type=int, default=None)
@click.option("--attach", "-a", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Attach a file (repeatable)")
@click.pass_context
def ask(ctx: click.Context, model: str, prompt: str, system_prompt: str, thinking: bool,
        temperature: float | None, max_tokens: int | None, attach: tuple[str, ...]):
    """Send PROMPT to MODEL and stream the answer."""
    config = _load(ctx.obj["config_path"])
    try:
        model_info = config.model(model)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    context = AiRequestContext(
        session_id=uuid.uuid4().hex,
        model=model_info,
        messages=(ChatMessage.user(prompt, tuple(_attachment(p) for p in attach)),),
        parameters=ModelParameters(temperature=temperature, max_tokens=max_tokens),
        system_instructions=system_prompt,
        enable_thinking=thinking,
    )

    orchestrator = ChatTurnOrchestrator(config)
    display = StreamingDisplay(console)
    orchestrator.event_bus.subscribe(ALL_EVENTS, display.handle, session_id=context.session_id)

    result = asyncio.run(_ask(orchestrator, context))
    display.finish(result)

    usage = result.usage
    console.print(
        f"[dim]{result.status.value} | {usage.input_tokens} in / {usage.output_tokens} out"
        f" | ${model_info.cost(usage.input_tokens, usage.output_tokens):.4f}[/dim]"
    )
    if result.status is not TurnStatus.COMPLETED:
        if result.error:
            console.print(f"[red]Error:[/red] {result.error}")
        ctx.exit(1)


@main.command()
@click.option("--provider", "-p", default=None, help="Only show keys of this provider")
@click.pass_context
def keys(ctx: click.Context, provider: str | None):
    """Show the API key pool."""
    config = _load(ctx.obj["config_path"])
    manager = ProviderKeyManager.from_config(config)

    table = Table(title="API keys")
    table.add_column("Provider", style="cyan")
    table.add_column("Key")
    table.add_column("Secret", style="dim")
    table.add_column("Active")
    table.add_column("Used today", justify="right")
    for status in manager.snapshot(provider):
        table.add_row(
            status.provider,
            status.id,
            status.masked_secret,
            "[green]yes[/green]" if status.active else "[red]no[/red]",
            f"{status.usage_count_today}/{status.max_requests_per_day}",
        )
    console.print(table)


@main.command()
@click.pass_context
def models(ctx: click.Context):
    """List configured models and their capabilities."""
    config = _load(ctx.obj["config_path"])

    table = Table(title="Models")
    table.add_column("Model", style="cyan")
    table.add_column("Provider")
    table.add_column("Capabilities")
    table.add_column("$/1K in/out", justify="right")
    for spec in config.models.values():
        caps = [
            name for name, flag in (
                ("vision", spec.supports_vision),
                ("thinking", spec.supports_thinking),
                ("tools", spec.supports_tools),
                ("caching", spec.supports_prompt_caching),
            ) if flag
        ]
        table.add_row(
            spec.name,
            spec.provider,
            ", ".join(caps) or "-",
            f"{spec.input_price_per_1k:g} / {spec.output_price_per_1k:g}",
        )
    console.print(table)


if __name__ == "__main__":
    main()
