"""Conversion Commands"""

import typer
from rich.console import Console

from ..client.base import VoiceAPIError
from ..client.endpoints import VoiceAPIClient
from ..utils.formatting import create_conversion_panel, print_error

console = Console()
app = typer.Typer(name="conversions", help="Conversion job commands")


@app.command("show")
def show_conversion(conversion_id: str = typer.Argument(..., help="Conversion ID")):
    """🎙️  Show the status of a conversion"""
    try:
        with VoiceAPIClient() as client:
            conversion = client.get_conversion(conversion_id)
    except VoiceAPIError as e:
        print_error(f"Failed to get conversion: {e}")
        raise typer.Exit(1) from None

    console.print(create_conversion_panel(conversion))
