"""Voice Conversion CLI - Main Entry Point"""

import os
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from .client.base import VoiceAPIError
from .client.endpoints import DEFAULT_API_URL, VoiceAPIClient
from .commands import conversions, webhooks, workers
from .utils.formatting import create_processors_table, print_error, print_info

console = Console()

app = typer.Typer(
    name="voice-cli",
    help="🎙️  Voice Conversion - job processors and webhook CLI",
    rich_markup_mode="rich",
)

app.add_typer(workers.app, name="workers")
app.add_typer(webhooks.app, name="webhooks")
app.add_typer(conversions.app, name="conversions")


@app.command()
def status():
    """📊 Check API status, database and processors"""
    base_url = os.getenv("VOICE_API_URL", DEFAULT_API_URL)
    print_info(f"Checking connection to: {base_url}")

    try:
        with VoiceAPIClient(base_url) as client:
            health = client.health_check()
    except VoiceAPIError as e:
        print_error(f"Failed to connect: {e}")
        console.print(Panel(
            f"🚫 [red]Connection Failed[/red]\n\n"
            f"Make sure the Voice Conversion API is running at:\n"
            f"[blue]{base_url}[/blue]\n\n"
            f"Point the CLI elsewhere with the [cyan]VOICE_API_URL[/cyan] variable",
            title="Connection Error",
            border_style="red",
        ))
        raise typer.Exit(1) from None

    database = health.get("database") or {}
    backlog = health.get("backlog") or {}
    queue = health.get("queue")
    if queue is None:
        queue_state = "not checked"
    else:
        queue_state = "connected" if queue.get("connected") else "unreachable"
    state = "[green]Healthy[/green]" if health.get("ok") else "[yellow]Degraded[/yellow]"
    console.print(Panel(
        f"🚀 {state}\n\n"
        f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
        f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
        f"• Database: {'connected' if database.get('connected') else 'unreachable'}\n"
        f"• Queue: {queue_state}\n"
        f"• Conversions waiting: [magenta]{backlog.get('pending_conversions', 0)}[/magenta]\n"
        f"• Deliveries waiting: [magenta]{backlog.get('pending_deliveries', 0)}[/magenta]",
        title="System Status",
        border_style="green" if health.get("ok") else "yellow",
    ))

    processors = health.get("processors") or []
    if processors:
        console.print(create_processors_table(processors))


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(Panel(
        f"🎙️  [bold cyan]Voice Conversion CLI[/bold cyan]\n\n"
        f"• Version: [green]{__version__}[/green]",
        title="Version Info",
        border_style="cyan",
    ))


def _version_callback(value: bool):
    if value:
        from . import __version__
        console.print(f"Voice Conversion CLI v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
):
    """
    🎙️  Voice Conversion CLI

    Run the background processors, inspect the job store backlog and
    manage webhook subscriptions.
    """


if __name__ == "__main__":
    app()
