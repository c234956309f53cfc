"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "healthy": "green",
    "completed": "green",
    "delivered": "green",
    "queued": "cyan",
    "pending": "cyan",
    "pending_preprocessing": "cyan",
    "processing": "yellow",
    "degraded": "yellow",
    "stopped": "dim",
    "failed": "red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def styled_status(status: str | None) -> str:
    if not status:
        return "—"
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def create_processors_table(processors: list[dict[str, Any]]) -> Table:
    """Table of processor health snapshots"""
    table = Table(title="Processors", box=box.ROUNDED)

    table.add_column("Processor", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Last Success", style="yellow")
    table.add_column("Processed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Errors", justify="right", style="red")

    for processor in processors:
        table.add_row(
            processor.get("name", ""),
            styled_status(processor.get("status")),
            processor.get("last_success_at") or "never",
            str(processor.get("total_processed", 0)),
            str(processor.get("total_skipped", 0)),
            str(processor.get("total_errors", 0)),
        )

    return table


def create_backlog_table(counts: dict[str, dict[str, int]]) -> Table:
    """Table of row counts per status for each job table"""
    table = Table(title="Job Store Backlog", box=box.ROUNDED)

    table.add_column("Table", style="cyan")
    table.add_column("Status")
    table.add_column("Rows", justify="right")

    for table_name, by_status in counts.items():
        for status, count in sorted(by_status.items()):
            table.add_row(table_name, styled_status(status), str(count))

    return table


def create_subscriptions_table(subscriptions: list[dict[str, Any]]) -> Table:
    table = Table(title="Webhook Subscriptions", box=box.ROUNDED)

    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("URL", style="blue")
    table.add_column("Events")
    table.add_column("Active", justify="center")
    table.add_column("Failures", justify="right")

    for subscription in subscriptions:
        table.add_row(
            subscription.get("id", "")[:8],
            subscription.get("url", ""),
            ", ".join(subscription.get("events", [])),
            "[green]yes[/green]" if subscription.get("is_active") else "[red]no[/red]",
            str(subscription.get("consecutive_failures", 0)),
        )

    return table


def create_deliveries_table(deliveries: list[dict[str, Any]]) -> Table:
    table = Table(title="Recent Deliveries", box=box.ROUNDED)

    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Event")
    table.add_column("Status", justify="center")
    table.add_column("Attempts", justify="right")
    table.add_column("HTTP", justify="right")
    table.add_column("Next Retry", style="yellow")
    table.add_column("Error", style="red")

    for delivery in deliveries:
        table.add_row(
            delivery.get("id", "")[:8],
            delivery.get("event_type", ""),
            styled_status(delivery.get("status")),
            str(delivery.get("attempt_count", 0)),
            str(delivery.get("http_status_code") or "—"),
            delivery.get("next_retry_at") or "—",
            delivery.get("error_message") or "",
        )

    return table


def create_conversion_panel(conversion: dict[str, Any]) -> Panel:
    content = (
        f"• Status: {styled_status(conversion.get('status'))}\n"
        f"• Pitch shift: [magenta]{conversion.get('pitch_shift')}[/magenta]"
        f"{' (preview)' if conversion.get('use_preview') else ''}\n"
        f"• Retries: [yellow]{conversion.get('retry_count', 0)}[/yellow]\n"
        f"• Created: {conversion.get('created_at')}\n"
        f"• Completed: {conversion.get('completed_at') or '—'}"
    )
    if conversion.get("output_location"):
        content += f"\n• Output: [blue]{conversion['output_location']}[/blue]"
    if conversion.get("error_message"):
        content += f"\n• Error: [red]{conversion['error_message']}[/red]"

    return Panel(content, title=f"Conversion {conversion.get('id', '')}", border_style="cyan")
