"""Webhook Commands - Inspect subscriptions and their deliveries"""

import typer
from rich.console import Console

from ..client.base import VoiceAPIError
from ..client.endpoints import VoiceAPIClient
from ..utils.formatting import (
    create_deliveries_table,
    create_subscriptions_table,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()
app = typer.Typer(name="webhooks", help="Webhook subscription commands")


@app.command("list")
def list_subscriptions():
    """📬 List your webhook subscriptions"""
    try:
        with VoiceAPIClient() as client:
            subscriptions = client.list_subscriptions()
    except VoiceAPIError as e:
        print_error(f"Failed to list subscriptions: {e}")
        raise typer.Exit(1) from None

    if not subscriptions:
        print_info("No webhook subscriptions yet")
        return

    console.print(create_subscriptions_table(subscriptions))
    disabled = [s for s in subscriptions if not s.get("is_active")]
    if disabled:
        print_warning(
            f"{len(disabled)} subscription(s) disabled. "
            "Re-enable with: voice-cli webhooks reactivate <id>"
        )


@app.command("test")
def send_test(subscription_id: str = typer.Argument(..., help="Subscription ID")):
    """🧪 Send a test event to a subscription"""
    try:
        with VoiceAPIClient() as client:
            result = client.test_subscription(subscription_id)
    except VoiceAPIError as e:
        print_error(f"Failed to send test webhook: {e}")
        raise typer.Exit(1) from None

    print_success(result.get("message", "Test webhook queued"))


@app.command("reactivate")
def reactivate(subscription_id: str = typer.Argument(..., help="Subscription ID")):
    """🔁 Re-enable a subscription and reset its failure counter"""
    try:
        with VoiceAPIClient() as client:
            subscription = client.update_subscription(subscription_id, is_active=True)
    except VoiceAPIError as e:
        print_error(f"Failed to reactivate subscription: {e}")
        raise typer.Exit(1) from None

    print_success(f"Subscription {subscription.get('id', subscription_id)} is active again")


@app.command("deliveries")
def list_deliveries(
    subscription_id: str = typer.Argument(..., help="Subscription ID"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of attempts to show"),
):
    """📜 Show recent delivery attempts for a subscription"""
    try:
        with VoiceAPIClient() as client:
            deliveries = client.list_deliveries(subscription_id, limit=limit)
    except VoiceAPIError as e:
        print_error(f"Failed to list deliveries: {e}")
        raise typer.Exit(1) from None

    if not deliveries:
        print_info("No delivery attempts recorded")
        return

    console.print(create_deliveries_table(deliveries))
