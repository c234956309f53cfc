"""Worker Commands - Run and inspect the background processors"""

import asyncio
from enum import Enum

import typer
from rich.console import Console
from sqlalchemy import func, select

from voice_api.config.logging import setup_logging
from voice_api.config.settings import get_settings
from voice_api.infra.database import Database
from voice_api.v1.conversions.models import ConversionJob
from voice_api.v1.infra.background import BackgroundProcessors
from voice_api.v1.webhooks.models import WebhookDeliveryAttempt

from ..utils.formatting import (
    create_backlog_table,
    create_processors_table,
    print_error,
    print_info,
    print_success,
)

console = Console()
app = typer.Typer(name="workers", help="Background processor commands (direct database access)")


class ProcessorName(str, Enum):
    conversion = "conversion"
    delivery = "delivery"


@app.command("run")
def run_workers():
    """⚙️  Run both processors until interrupted"""
    setup_logging()
    settings = get_settings()
    print_info(f"Starting processors against {settings.environment} job store...")

    async def _run():
        database = Database(settings)
        background = BackgroundProcessors.from_settings(settings, database)
        try:
            await background.run_forever()
        finally:
            await database.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass
    print_success("Processors stopped")


@app.command("run-once")
def run_once(
    processor: ProcessorName = typer.Option(
        ProcessorName.conversion, "--processor", "-p", help="Processor to run a single cycle of"
    ),
):
    """🔂 Run a single polling cycle and report the outcome"""
    setup_logging()
    settings = get_settings()

    async def _run():
        database = Database(settings)
        background = BackgroundProcessors.from_settings(settings, database)
        selected = (
            background.conversion_processor
            if processor == ProcessorName.conversion
            else background.delivery_processor
        )
        try:
            processed, skipped = await selected.run_once()
            return selected.health_status() | {
                "total_processed": processed,
                "total_skipped": skipped,
            }
        finally:
            await background.stop()
            await database.close()

    try:
        status = asyncio.run(_run())
    except Exception as e:
        print_error(f"Cycle failed: {e}")
        raise typer.Exit(1) from None

    console.print(create_processors_table([status]))


@app.command("backlog")
def show_backlog():
    """📋 Show job store row counts per status"""
    settings = get_settings()

    async def _count(database: Database, model) -> dict[str, int]:
        async with database.session_scope() as session:
            result = await session.execute(
                select(model.status, func.count(model.id)).group_by(model.status)
            )
            return {status: count for status, count in result.all()}

    async def _run():
        database = Database(settings)
        try:
            return {
                "conversion_jobs": await _count(database, ConversionJob),
                "webhook_delivery_attempts": await _count(database, WebhookDeliveryAttempt),
            }
        finally:
            await database.close()

    try:
        counts = asyncio.run(_run())
    except Exception as e:
        print_error(f"Failed to read job store: {e}")
        raise typer.Exit(1) from None

    console.print(create_backlog_table(counts))
