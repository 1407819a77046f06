from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

import httpx
import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from pulse import services
from pulse.chi import MAX_WINDOW_MINUTES
from pulse.closeloop import run_close_loop_pass
from pulse.config import get_settings
from pulse.db import get_session_factory, init_db, seed_product_areas, session_scope

app = typer.Typer(help="Pulse signal intelligence: CHI, velocity, RICE and close-the-loop monitoring")
console = Console()
log = logging.getLogger(__name__)


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db_path: str | None = typer.Option(None, "--db", help="SQLite database file (overrides PULSE_DB_PATH)."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if db_path:
        os.environ["PULSE_DB_PATH"] = str(Path(db_path).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if value is None:
        return "-"
    return str(value)


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for key, value in payload.items():
        if isinstance(value, dict):
            value = ", ".join(f"{k}={v}" for k, v in value.items())
        table.add_row(key, _format_scalar(value))
    console.print(Panel(table, title=title, border_style="cyan"))


def _context() -> services.PulseContext:
    init_db()
    return services.build_context(get_session_factory())


# ---------------------------------------------------------------------------
# Servers
# ---------------------------------------------------------------------------


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8001, help="Port."),
    reload: bool = typer.Option(False, help="Auto-reload on code changes."),
) -> None:
    """Run the HTTP API."""
    import uvicorn
    uvicorn.run("pulse.app:app", host=host, port=port, reload=reload)


@app.command("mcp")
def mcp_command() -> None:
    """Run the MCP server over stdio."""
    from pulse.mcp_server import main
    main()


# ---------------------------------------------------------------------------
# Close loop
# ---------------------------------------------------------------------------


@app.command("monitor")
def monitor_command(
    ctx: typer.Context,
    interval_minutes: float = typer.Option(0, "--interval", help="Repeat every N minutes; 0 runs one pass."),
    workers: int | None = typer.Option(None, help="Worker threads (default from settings)."),
) -> None:
    """Run the close-loop monitoring pass locally."""
    pctx = _context()
    stop = threading.Event()

    while True:
        try:
            with console.status("[bold cyan]close-loop pass[/bold cyan]", spinner="dots"):
                result = run_close_loop_pass(
                    pctx.session_factory, pctx.store, max_workers=workers,
                    stop_event=stop, settings=pctx.settings,
                )
        except KeyboardInterrupt:
            stop.set()
            raise typer.Exit(130)
        _print("close-loop pass", result.model_dump(), ctx)
        if interval_minutes <= 0:
            return
        try:
            stop.wait(interval_minutes * 60)
        except KeyboardInterrupt:
            raise typer.Exit(0)


@app.command("trigger")
def trigger_command(
    ctx: typer.Context,
    url: str | None = typer.Option(None, help="Base URL of a running Pulse API (default PULSE_SITE_URL)."),
    timeout: float = typer.Option(60.0, help="Request timeout in seconds."),
) -> None:
    """Trigger the close-loop pass on a running API via the cron endpoint."""
    settings = get_settings()
    if not settings.cron_secret:
        console.print("[red]CRON_SECRET is not set[/red]")
        raise typer.Exit(1)
    base = (url or settings.site_url).rstrip("/")
    try:
        resp = httpx.post(
            f"{base}/api/cron/close-loop",
            headers={"Authorization": f"Bearer {settings.cron_secret}"},
            timeout=timeout,
        )
        resp.raise_for_status()
    except httpx.HTTPError as exc:
        log.error("Close-loop trigger failed: %s", exc)
        console.print(f"[red]Trigger failed:[/red] {exc}")
        raise typer.Exit(1)
    _print("close-loop pass (remote)", resp.json(), ctx)


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


@app.command("chi")
def chi_command(
    ctx: typer.Context,
    window_minutes: int = typer.Option(60, "--window", min=1, max=MAX_WINDOW_MINUTES, help="Window in minutes."),
    product_area_id: int | None = typer.Option(None, "--area", help="Product area id."),
) -> None:
    """Print the current CHI and trend."""
    pctx = _context()
    payload = {
        **services.get_chi(pctx, window_minutes, product_area_id, use_cache=False),
        **services.get_trend(pctx, window_minutes, product_area_id),
    }
    _print("customer happiness index", payload, ctx)


@app.command("velocity")
def velocity_command(
    ctx: typer.Context,
    lookback_hours: float = typer.Option(24, "--lookback", help="Lookback in hours."),
) -> None:
    """Print growing / stable / declining topic counts per product area."""
    pctx = _context()
    with session_scope() as session:
        rows = services.get_velocity(pctx, session, lookback_hours)
    if _wants_json(ctx):
        typer.echo(json.dumps(rows, indent=2))
        return
    table = Table(show_header=True, header_style="bold yellow", box=ROUNDED)
    for col in ("Product area", "Growing", "Stable", "Declining"):
        table.add_column(col)
    for row in rows:
        table.add_row(
            f"[{row['color']}]{row['product_area_name']}[/]",
            str(row["growing"]), str(row["stable"]), str(row["declining"]),
        )
    console.print(Panel(table, title=f"velocity · last {lookback_hours:g}h", border_style="yellow"))


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@app.command("import")
def import_command(
    ctx: typer.Context,
    file_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="XLSX workbook with a header row."),
) -> None:
    """Import signals from an XLSX workbook."""
    from pulse.importer import import_xlsx
    init_db()
    with session_scope() as session:
        result = import_xlsx(file_path, session)
    _print("import", result.model_dump(), ctx)


@app.command("seed-areas")
def seed_areas_command(ctx: typer.Context) -> None:
    """Insert the configured product areas that are missing."""
    init_db(seed=False)
    added = seed_product_areas()
    _print("product areas", {"added": added}, ctx)


if __name__ == "__main__":
    app()
