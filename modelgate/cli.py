"""Typer CLI for modelgate.

Commands:
- models: List the model catalog
- select: Show which model a request would be routed to
- chat: Send one chat request through the model service
- init: Create a project config file
- config: Show effective configuration
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from modelgate.config_loader import (
    ConfigLoader,
    get_global_config_path,
    get_project_config_path,
    init_project_config,
)
from modelgate.exceptions import GatewayError
from modelgate.llm.cost_tracker import format_cost_usd
from modelgate.llm.mock import MockTransport
from modelgate.llm.model_registry import load_model_registry
from modelgate.observability import setup_metrics, setup_tracing
from modelgate.observability.logging import setup_logging
from modelgate.services import build_services
from modelgate.settings import get_settings

app = typer.Typer(
    name="modelgate",
    help="Resilient routing for LLM provider calls",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main_callback() -> None:
    """Configure logging before any command runs."""
    settings = get_settings()
    setup_logging(settings)
    setup_tracing(enabled=settings.tracing_enabled)


@app.command()
def models():
    """List the model catalog."""
    settings = get_settings()
    try:
        registry = load_model_registry(settings)
    except GatewayError as e:
        console.print(f"[bold red]✗ Invalid model configuration:[/bold red] {e.message}")
        raise typer.Exit(1)

    table = Table(title="Models")
    table.add_column("Key", style="cyan")
    table.add_column("Model ID")
    table.add_column("Transport", style="magenta")
    table.add_column("$ / 1k in", justify="right")
    table.add_column("$ / 1k out", justify="right")
    table.add_column("Context", justify="right")
    table.add_column("Fallback")

    for key, model in registry.models.items():
        marker = " [green](default)[/green]" if key == registry.routing.default_model else ""
        table.add_row(
            f"{key}{marker}",
            model.id,
            model.transport,
            f"{model.cost_per_1k_input_usd:g}",
            f"{model.cost_per_1k_output_usd:g}",
            f"{model.context_window:,}",
            registry.next_fallback(key) or "-",
        )

    console.print(table)


@app.command()
def select(
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Preferred model or alias"),
    task: Optional[str] = typer.Option(None, "--task", "-t", help="Task type"),
    messages: Optional[int] = typer.Option(None, "--messages", help="Message count"),
    chars: Optional[int] = typer.Option(None, "--chars", help="Input characters"),
):
    """Show which model a request would be routed to."""
    try:
        services = build_services()
    except GatewayError as e:
        console.print(f"[bold red]✗ Invalid model configuration:[/bold red] {e.message}")
        raise typer.Exit(1)
    selection = services.model_service.select_model(
        preferred_model=model,
        task_type=task,
        message_count=messages,
        input_chars=chars,
    )

    console.print(f"Model: [bold cyan]{selection.model}[/bold cyan]")
    console.print(f"Transport: {selection.provider}")
    console.print(f"Reason: {selection.reason}")
    chain = " → ".join(selection.fallback_chain) or "(none)"
    console.print(f"Fallback chain: {chain}")


@app.command()
def chat(
    prompt: str = typer.Argument(..., help="User message"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model key or alias"),
    task: Optional[str] = typer.Option(None, "--task", "-t", help="Task type used for routing"),
    system: Optional[str] = typer.Option(None, "--system", "-s", help="System prompt"),
    stream: bool = typer.Option(False, "--stream", help="Stream the response"),
    mock: bool = typer.Option(False, "--mock", help="Answer from the mock transport"),
    user: Optional[str] = typer.Option(None, "--user", help="User id for cost attribution"),
):
    """Send one chat request through the model service."""
    settings = get_settings()
    setup_metrics(port=settings.metrics_port, enabled=settings.metrics_enabled)

    factory = (lambda definition: MockTransport(name=definition.transport)) if mock else None
    try:
        services = build_services(settings, transport_factory=factory)
    except GatewayError as e:
        console.print(f"[bold red]✗ Invalid model configuration:[/bold red] {e.message}")
        raise typer.Exit(1)

    chat_messages = []
    if system:
        chat_messages.append({"role": "system", "content": system})
    chat_messages.append({"role": "user", "content": prompt})

    selection = services.model_service.select_model(
        preferred_model=model,
        task_type=task,
        message_count=len(chat_messages),
        input_chars=sum(len(m["content"]) for m in chat_messages),
    )

    async def run() -> None:
        try:
            if stream:
                response = await services.model_service.stream_chat(
                    selection.model, chat_messages, user_id=user
                )
                async for chunk in response:
                    console.print(chunk, end="", markup=False, highlight=False)
                console.print()
                finish = response.finish
                if finish is not None:
                    _print_usage(
                        finish.model, finish.provider, finish.usage, finish.cost_usd, finish.latency_ms
                    )
            else:
                result = await services.model_service.generate_chat(
                    selection.model, chat_messages, user_id=user
                )
                console.print(result.text, markup=False, highlight=False)
                _print_usage(
                    result.model, result.provider, result.usage, result.cost_usd, result.latency_ms
                )
        finally:
            await services.aclose()

    try:
        asyncio.run(run())
    except GatewayError as e:
        console.print(f"[bold red]✗ Request failed[/bold red] ({e.code.value})")
        console.print(f"Error: {e.message}")
        raise typer.Exit(1)


def _print_usage(model, provider, usage, cost_usd, latency_ms) -> None:
    console.print()
    tokens = usage.total_tokens if usage and usage.total_tokens is not None else "?"
    console.print(
        f"[dim]{model} via {provider} · {tokens} tokens · "
        f"{format_cost_usd(cost_usd)} · {latency_ms:.0f} ms[/dim]"
    )


@app.command()
def init(
    path: Optional[Path] = typer.Option(None, "--path", help="Path for project config"),
):
    """Create a project config file."""
    project_path = path or Path.cwd()
    config_path = init_project_config(project_path)
    console.print(f"[bold green]Created project config:[/bold green] {config_path}")


@app.command()
def config(
    show_files: bool = typer.Option(False, "--files", "-f", help="Show merged YAML instead"),
):
    """Show effective configuration."""
    settings = get_settings()
    if show_files:
        loader = ConfigLoader(explicit_path=settings.models_config_path)
        table = Table(title="modelgate YAML Configuration")
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="green")

        def add_config(prefix: str, data: dict):
            for key, value in data.items():
                full_key = f"{prefix}.{key}" if prefix else key
                if isinstance(value, dict):
                    add_config(full_key, value)
                else:
                    table.add_row(full_key, str(value))

        add_config("", loader.load())
        console.print(table)
    else:
        table = Table(title="modelgate Settings")
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        for name, value in settings.model_dump().items():
            table.add_row(name, str(value))
        console.print(table)

    console.print()
    console.print("[bold]Configuration Sources:[/bold]")

    global_path = get_global_config_path()
    if global_path.exists():
        console.print(f"  [green]✓[/green] Global: {global_path}")
    else:
        console.print(f"  [yellow]○[/yellow] Global: {global_path} (not created)")

    project_path = get_project_config_path()
    if project_path:
        console.print(f"  [green]✓[/green] Project: {project_path}")
    else:
        console.print("  [yellow]○[/yellow] Project: Not found in current directory")

    explicit_path = settings.models_config_path
    if explicit_path is not None:
        marker = "[green]✓[/green]" if explicit_path.exists() else "[red]✗[/red]"
        console.print(f"  {marker} Explicit: {explicit_path}")


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
