"""ShipFeed CLI — live AIS vessel positions from aisstream.io.

Commands:
  serve    — run the HTTP API with streaming, flushing and retention
  init-db  — create database tables
  status   — stored position count and data freshness
  sweep    — run one retention pass against storage
  stream   — stream into storage for a fixed duration, no HTTP server
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table


app = typer.Typer(
    name="shipfeed",
    help="Live AIS vessel positions from aisstream.io.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Interface to bind"),
    port: Optional[int] = typer.Option(None, "--port", help="Port (default: PORT setting)"),
    reload: bool = typer.Option(False, "--reload", hidden=True),
):
    """Run the API server."""
    import uvicorn
    from shipfeed.config import settings

    port = port or settings.PORT
    console.print(f"ShipFeed API at [cyan]http://{host}:{port}/api/ships[/cyan] — press Ctrl+C to stop")
    uvicorn.run("shipfeed.main:app", host=host, port=port, reload=reload)


@app.command("init-db")
def init_db_command():
    """Create database tables."""
    from shipfeed.database import init_db
    from shipfeed.exceptions import FatalInitError

    try:
        init_db()
    except FatalInitError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    console.print("[green]Database initialised.[/green]")


@app.command("status")
def status():
    """Show stored position count and data freshness."""
    from shipfeed.database import SessionLocal
    from shipfeed.exceptions import StorageError
    from shipfeed.modules.storage import SqlShipStorage

    try:
        total, newest = SqlShipStorage(SessionLocal).count()
    except StorageError as exc:
        console.print(f"  Database: [red]unavailable[/red] ({exc})")
        console.print("Run [cyan]shipfeed init-db[/cyan] first.")
        raise typer.Exit(1)

    console.print("[bold]Storage[/bold]")
    console.print("  Database: [green]OK[/green]")
    console.print(f"  Ships stored: {total:,}")
    if newest is None:
        console.print("  Latest report: [red]No data yet[/red]")
        return

    age = datetime.now(timezone.utc) - newest
    age_hours = age.total_seconds() / 3600
    age_str = f"{age_hours:.1f} hours ago" if age_hours < 48 else f"{age.days} days ago"
    color = "green" if age_hours < 1 else "yellow" if age_hours < 24 else "red"
    console.print(f"  Latest report: [{color}]{age_str}[/{color}] ({newest.isoformat()})")


@app.command("sweep")
def sweep(
    hours: Optional[float] = typer.Option(None, "--hours", help="Retention horizon (default: RETENTION_HOURS)"),
):
    """Delete stored positions older than the retention horizon."""
    from shipfeed.config import settings
    from shipfeed.database import SessionLocal
    from shipfeed.modules.registry import Registry
    from shipfeed.modules.retention import RetentionSweeper
    from shipfeed.modules.storage import SqlShipStorage

    sweeper = RetentionSweeper(
        Registry(),
        SqlShipStorage(SessionLocal),
        retention_hours=hours if hours is not None else settings.RETENTION_HOURS,
    )
    result = asyncio.run(sweeper.sweep_once())
    if result["error"]:
        console.print(f"[red]Retention sweep failed: {result['error']}[/red]")
        raise typer.Exit(1)
    console.print(
        f"Deleted [bold]{result['storage_deleted']:,}[/bold] positions reported before "
        f"{result['threshold'].isoformat()}"
    )


@app.command("stream")
def stream(
    duration: str = typer.Option("5m", "--duration", help="How long to stream (e.g. 30s, 5m, 1h)"),
):
    """Stream aisstream.io positions into storage for a fixed duration."""
    from shipfeed.config import settings
    from shipfeed.database import init_db
    from shipfeed.modules.service import ShipFeedService

    if not settings.AISSTREAM_API_KEY:
        console.print("[red]AISSTREAM_API_KEY is not set.[/red] Get a free key at https://aisstream.io")
        raise typer.Exit(1)

    init_db()
    service = ShipFeedService.from_settings(stream_enabled=True)
    seconds = _parse_duration(duration)

    async def _run() -> None:
        await service.start()
        try:
            await asyncio.sleep(seconds)
        finally:
            await service.stop()

    console.print(f"Streaming for {seconds}s over {len(service.bounding_boxes)} bounding box(es)...")
    asyncio.run(_run())
    _print_stream_summary(service)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _print_stream_summary(service) -> None:
    stream_stats = service.stream_client.stats
    flush_stats = service.flusher.stats

    table = Table(title="Stream summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Messages received", f"{stream_stats['messages_received']:,}")
    table.add_row("Position reports", f"{stream_stats['position_reports']:,}")
    table.add_row("Decode errors", f"{stream_stats['decode_errors']:,}")
    table.add_row("Connections", f"{stream_stats['connections']:,}")
    table.add_row("Ships in memory", f"{len(service.registry):,}")
    table.add_row("Records flushed", f"{flush_stats['records_flushed']:,}")
    console.print(table)


def _parse_duration(s: str) -> int:
    """Parse duration string (30s, 5m, 1h) to seconds."""
    s = s.strip().lower()
    if s == "0":
        return 0
    if s.endswith("s"):
        return int(s[:-1])
    if s.endswith("m"):
        return int(s[:-1]) * 60
    if s.endswith("h"):
        return int(s[:-1]) * 3600
    try:
        return int(s)
    except ValueError:
        return 300


if __name__ == "__main__":
    app()
