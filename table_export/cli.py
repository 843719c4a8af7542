"""CLI interface for table-export using Typer.

This module provides the main entry point for the table-export tool, with
commands for listing the tables available for export, exporting tables
into the Drive archive while showing live progress, and verifying stored
OAuth tokens.
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Dict, List, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.live import Live
from rich.table import Table

from .core.pipeline import ExportConfig, ExportOrchestrator, ProvisioningError
from .core.progress import ProgressReporter
from .core.state import Credentials, ItemRecord, ItemStatus, JobStore
from .core.transfer import DriveProvisioner, TableTransfer, folder_link
from .sources.fusiontables import DEFAULT_PAGE_SIZE, TableSource
from .utils.drive import DriveClient
from .utils.http import ApiError
from .utils.logging import mask_sensitive_data, setup_logging

# Load .env file if present
load_dotenv()

app = typer.Typer(
    name="table-export",
    help="Export tables into a Google Drive archive folder.",
    add_completion=False,
)

console = Console()

_defaults = ExportConfig()


def _load_credentials(path: Path) -> Credentials:
    """Load OAuth tokens from a JSON file.

    Raises:
        typer.Exit: If the file is missing or holds no usable token.
    """
    if not path.is_file():
        console.print(f"[red]Error:[/red] Token file not found: {path}")
        raise typer.Exit(1)
    try:
        return Credentials.from_file(path)
    except (ValueError, OSError) as e:
        console.print(f"[red]Error:[/red] Invalid token file {path}: {e}")
        raise typer.Exit(1)


def _read_table_ids(path: Path) -> List[str]:
    """Read table IDs from a file, one per line; '#' starts a comment."""
    ids = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.split("#", 1)[0].strip()
        if line:
            ids.append(line)
    return ids


def _format_status(status: ItemStatus) -> str:
    color_map = {
        ItemStatus.LOADING: "yellow",
        ItemStatus.SUCCESS: "green",
        ItemStatus.ERROR: "red",
    }
    color = color_map.get(status, "white")
    return f"[{color}]{status.value}[/{color}]"


def _build_progress_table(items: List[ItemRecord], names: Dict[str, str]) -> Table:
    table = Table(title="Export Progress")
    table.add_column("Table", style="cyan", max_width=40)
    table.add_column("Status")
    table.add_column("Drive file", max_width=50)
    table.add_column("Error", style="red", max_width=40)

    for item in items:
        link = ""
        if item.result is not None:
            link = item.result.web_view_link or item.result.drive_file_id
            if item.result.is_large:
                link += " (large)"
        table.add_row(
            names.get(item.item_id, item.item_id),
            _format_status(item.status),
            link,
            item.error or "",
        )
    return table


def _watch_progress(
    reporter: ProgressReporter,
    job_id: str,
    credentials: Credentials,
    names: Dict[str, str],
    poll_interval: float,
) -> List[ItemRecord]:
    """Poll a job until every table is done, rendering a live table."""
    with Live(console=console, refresh_per_second=4) as live:
        while True:
            items = reporter.poll(job_id, credentials)
            live.update(_build_progress_table(items, names))
            if all(item.status.is_terminal for item in items):
                return items
            time.sleep(poll_interval)


@app.command()
def export(
    table_ids: Optional[List[str]] = typer.Option(
        None,
        "--table",
        "-t",
        help="ID of a table to export (repeatable)",
    ),
    tables_file: Optional[Path] = typer.Option(
        None,
        "--tables-file",
        "-f",
        help="File with one table ID per line",
    ),
    tokens: Path = typer.Option(
        ...,
        "--tokens",
        envvar="TABLE_EXPORT_TOKENS",
        help="JSON file holding the OAuth tokens of the signed-in user",
    ),
    archive_folder: str = typer.Option(
        _defaults.archive_folder_name,
        "--archive-folder",
        envvar="TABLE_EXPORT_ARCHIVE_FOLDER",
        help="Drive folder that collects all exports",
    ),
    index_sheet: str = typer.Option(
        _defaults.index_sheet_name,
        "--index-sheet",
        envvar="TABLE_EXPORT_INDEX_SHEET",
        help="Name of the archive index spreadsheet",
    ),
    large_threshold: int = typer.Option(
        _defaults.large_table_threshold,
        "--large-threshold",
        envvar="TABLE_EXPORT_LARGE_THRESHOLD",
        help="CSV size in bytes above which tables are kept as CSV",
    ),
    request_timeout: int = typer.Option(
        _defaults.request_timeout,
        "--timeout",
        envvar="TABLE_EXPORT_TIMEOUT",
        help="HTTP request timeout in seconds",
    ),
    max_retries: int = typer.Option(
        _defaults.max_retries,
        "--max-retries",
        help="Attempts per request on rate limits",
    ),
    poll_interval: float = typer.Option(
        2.0,
        "--poll-interval",
        help="Seconds between progress polls",
    ),
    log_dir: Optional[Path] = typer.Option(
        None,
        "--log-dir",
        envvar="TABLE_EXPORT_LOG_DIR",
        help="Directory for log files",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose logging",
    ),
) -> None:
    """
    Export tables into a new folder of the Drive archive.

    Example:
        table-export export --tokens tokens.json -t 1AbC... -t 1XyZ...
    """
    ids = list(table_ids or [])
    if tables_file is not None:
        if not tables_file.is_file():
            console.print(f"[red]Error:[/red] Tables file not found: {tables_file}")
            raise typer.Exit(1)
        ids.extend(_read_table_ids(tables_file))
    if not ids:
        console.print("[red]Error:[/red] No tables given. Use --table or --tables-file.")
        raise typer.Exit(1)

    credentials = _load_credentials(tokens)
    logger = setup_logging(log_dir, verbose=verbose)

    config = ExportConfig(
        archive_folder_name=archive_folder,
        index_sheet_name=index_sheet,
        large_table_threshold=large_threshold,
        max_concurrent_jobs=1,
        request_timeout=request_timeout,
        max_retries=max_retries,
    )

    console.print("\n[bold cyan]Export Configuration[/bold cyan]")
    console.print(f"  Tables:          {len(ids)}")
    console.print(f"  Archive folder:  {archive_folder}")
    console.print(f"  Index sheet:     {index_sheet}")
    console.print(f"  Token:           {mask_sensitive_data(credentials.access_token)}")
    console.print()

    try:
        tables = TableSource(
            credentials, timeout=request_timeout, max_retries=max_retries
        ).get_tables(ids)
    except ApiError as e:
        console.print(f"[red]Could not look up tables:[/red] {e}")
        raise typer.Exit(1)

    names = {table.id: table.name for table in tables}
    store = JobStore()
    reporter = ProgressReporter(store)

    with ExportOrchestrator(
        store,
        DriveProvisioner(config),
        TableTransfer(config),
        config=config,
        logger=logger,
    ) as orchestrator:
        try:
            job_id = orchestrator.run(credentials, tables, credentials)
        except ProvisioningError as e:
            console.print(f"[red]Export failed:[/red] {e}")
            raise typer.Exit(1)

        folder_id = reporter.overview(job_id, credentials).folder_id
        console.print(f"Export folder: {folder_link(folder_id)}")

        try:
            items = _watch_progress(reporter, job_id, credentials, names, poll_interval)
        except KeyboardInterrupt:
            console.print("\n[yellow]Stopped watching; waiting for remaining tables to finish...[/yellow]")
            raise typer.Exit(130)

    failed = sum(1 for item in items if item.status is ItemStatus.ERROR)
    console.print("\n[bold cyan]Export Summary[/bold cyan]")
    console.print(f"  Exported:  [green]{len(items) - failed}[/green]")
    console.print(f"  Failed:    [red]{failed}[/red]")

    if failed:
        raise typer.Exit(1)


@app.command("list")
def list_tables(
    tokens: Path = typer.Option(
        ...,
        "--tokens",
        envvar="TABLE_EXPORT_TOKENS",
        help="JSON file holding the OAuth tokens of the signed-in user",
    ),
    name_filter: Optional[str] = typer.Option(
        None,
        "--filter",
        "-n",
        help="Only list tables whose name contains this text",
    ),
    page_token: Optional[str] = typer.Option(
        None,
        "--page-token",
        help="Continue a previous listing from this page token",
    ),
    page_size: int = typer.Option(
        DEFAULT_PAGE_SIZE,
        "--page-size",
        help="Maximum number of tables to list",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the tables as JSON",
    ),
) -> None:
    """
    List the tables available for export.

    Example:
        table-export list --tokens tokens.json --filter census
    """
    credentials = _load_credentials(tokens)

    try:
        tables, next_page_token = TableSource(credentials).find_tables(
            name_filter, page_token=page_token, page_size=page_size
        )
    except ApiError as e:
        console.print(f"[red]Could not list tables:[/red] {e}")
        raise typer.Exit(1)

    if as_json:
        console.print_json(
            json.dumps(
                {
                    "tables": [{"id": table.id, "name": table.name} for table in tables],
                    "next_page_token": next_page_token,
                }
            )
        )
        return

    if not tables:
        console.print("[yellow]No tables found.[/yellow]")
        return

    table = Table(title="Tables")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    for item in tables:
        table.add_row(item.id, item.name)
    console.print(table)

    if next_page_token:
        console.print(f"More tables available: --page-token {next_page_token}")


@app.command()
def check(
    tokens: Path = typer.Option(
        ...,
        "--tokens",
        envvar="TABLE_EXPORT_TOKENS",
        help="JSON file holding the OAuth tokens of the signed-in user",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the Drive profile as JSON",
    ),
) -> None:
    """
    Verify that the stored tokens can access Google Drive.
    """
    credentials = _load_credentials(tokens)

    try:
        user = DriveClient(credentials).get_about()
    except ApiError as e:
        console.print(f"[red]FAIL[/red] Drive access failed: {e}")
        raise typer.Exit(1)

    if as_json:
        console.print_json(json.dumps(user))
        return

    name = user.get("displayName", "unknown")
    email = user.get("emailAddress", "unknown")
    console.print(f"[green]OK[/green] Signed in as {name} <{email}>")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
