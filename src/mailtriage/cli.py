"""Command-line interface for the mail triage engine.

Provides commands for configuration validation, database setup, one-shot
classification and snooze runs, reporting, and the API server.

The config file is config/config.yaml unless MAILTRIAGE_CONFIG_PATH is set.

Usage:
    python -m mailtriage validate-config
    python -m mailtriage init-db
    python -m mailtriage classify
    python -m mailtriage process-snoozes
    python -m mailtriage stats
    python -m mailtriage failed --limit 20
    python -m mailtriage serve
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from mailtriage.config import validate_config_file
from mailtriage.core.logging import configure_logging

if TYPE_CHECKING:
    from mailtriage.config_schema import AppConfig
    from mailtriage.db.store import DatabaseStore
    from mailtriage.engine.components import EngineComponents

console = Console()


def _load_config_or_exit() -> AppConfig:
    from mailtriage.config import get_config
    from mailtriage.core.errors import ConfigLoadError, ConfigValidationError

    try:
        return get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml (see config/config.yaml.example) or set "
            "[cyan]MAILTRIAGE_CONFIG_PATH[/cyan]."
        )
        sys.exit(1)


async def _open_store(config: AppConfig) -> DatabaseStore:
    from mailtriage.db.store import DatabaseStore

    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()
    return store


async def _init_components() -> EngineComponents:
    """Load config, open the database and wire the engine.

    Prints an actionable error and calls sys.exit(1) on config failure.
    """
    from mailtriage.engine.components import build_components

    config = _load_config_or_exit()
    store = await _open_store(config)
    return build_components(config, store)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Mail Triage - LLM email classification with a learning feedback loop."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
def init_db() -> None:
    """Create the SQLite database and verify its schema."""
    asyncio.run(_run_init_db())


async def _run_init_db() -> None:
    from mailtriage.db.models import verify_schema

    config = _load_config_or_exit()
    store = await _open_store(config)
    if not await verify_schema(store.db_path):
        console.print("[red]✗[/red] Database schema is incomplete; see the log for missing tables")
        sys.exit(1)
    console.print(f"[green]✓[/green] Database ready at [cyan]{store.db_path}[/cyan]")


@cli.command("classify")
def classify() -> None:
    """Classify unprocessed emails (and dismissed ones past the cooldown) once."""
    asyncio.run(_run_classify())


async def _run_classify() -> None:
    components = await _init_components()
    try:
        result = await components.classification.classify_unprocessed()
    finally:
        await components.aclose()

    console.print("\n[bold]Classification Summary[/bold]")
    console.print(f"  Classified:  {result.classified}")
    console.print(f"  Triaged:     {result.triaged}")
    console.print(f"  Skipped:     {result.skipped}")
    console.print(f"  Failed:      {result.failed}")
    if result.skipped:
        console.print("  [yellow]Some emails were skipped; the daily budget may be spent.[/yellow]")


@cli.command("process-snoozes")
def process_snoozes() -> None:
    """Return every due snoozed email to its original folder."""
    asyncio.run(_run_process_snoozes())


async def _run_process_snoozes() -> None:
    components = await _init_components()
    try:
        returned = await components.snoozes.process_snoozed_emails()
    finally:
        await components.aclose()
    console.print(f"[green]✓[/green] Returned {returned} snoozed email(s)")


@cli.command("stats")
@click.option("--account", "account_id", type=int, default=None, help="Limit to one account")
def stats(account_id: int | None) -> None:
    """Show classification counts, accuracy and budget usage."""
    asyncio.run(_run_stats(account_id))


async def _run_stats(account_id: int | None) -> None:
    components = await _init_components()
    try:
        result = await components.classification.stats(account_id)
        patterns = await components.feedback.confused_patterns()
    finally:
        await components.aclose()

    table = Table(box=None, padding=(0, 2))
    table.add_column("Status", style="cyan")
    table.add_column("Count", justify="right")
    for status, count in result.counts.items():
        table.add_row(status, str(count))
    console.print("\n[bold]Classification States[/bold]")
    console.print(table)

    limit = str(result.budget_limit) if result.budget_limit else "unlimited"
    console.print(f"\n  Classified today:  {result.classified_today}")
    console.print(f"  Pending review:    {result.pending_review}")
    console.print(f"  30-day accuracy:   {result.accuracy_30_day:.0%}")
    console.print(f"  Budget:            {result.budget_used} / {limit}")

    if patterns:
        console.print("\n[bold]Most Dismissed Patterns[/bold]")
        pattern_table = Table(box=None, padding=(0, 2))
        pattern_table.add_column("Type", style="cyan")
        pattern_table.add_column("Pattern")
        pattern_table.add_column("Dismissals", justify="right")
        pattern_table.add_column("Avg confidence", justify="right")
        for pattern in patterns:
            pattern_table.add_row(
                pattern.pattern_type,
                pattern.pattern_value,
                str(pattern.dismissal_count),
                f"{pattern.avg_confidence:.2f}",
            )
        console.print(pattern_table)


@cli.command("failed")
@click.option("--limit", default=20, type=int, help="Maximum rows to show")
def failed(limit: int) -> None:
    """List emails whose classification failed."""
    asyncio.run(_run_failed(limit))


async def _run_failed(limit: int) -> None:
    config = _load_config_or_exit()
    store = await _open_store(config)
    states = await store.list_failed(limit=limit)

    if not states:
        console.print("[green]No failed classifications.[/green]")
        return

    table = Table(box=None, padding=(0, 2))
    table.add_column("Email", justify="right", style="cyan")
    table.add_column("Failed at")
    table.add_column("Error")
    for state in states:
        table.add_row(
            str(state.email_id),
            state.classified_at.strftime("%Y-%m-%d %H:%M") if state.classified_at else "-",
            state.error_message or "",
        )
    console.print(table)
    console.print("\nRetry with [cyan]POST /api/emails/{id}/retry[/cyan].")


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the API server with scheduled classification and snooze jobs."""
    import uvicorn

    from mailtriage.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "This app has no authentication. Use 127.0.0.1 for local-only access."
        )

    configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
