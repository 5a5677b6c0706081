"""
streamdash CLI - Store and server commands.

init creates the store, serve runs (or finds) the project's API server,
status reports what discovery sees.
"""

import json
import logging
import traceback

import typer
from rich.table import Table

from streamdash.cli.common import ExitCode, console, fail, get_config, is_debug
from streamdash.core.db.connection import StoreError, init_db, verify_store
from streamdash.core.discovery.lock import (
    DiscoveryError,
    DiscoveryResult,
    is_process_alive,
    probe_server,
    read_lock,
)

logger = logging.getLogger(__name__)


def init(
    force: bool = typer.Option(
        False,
        "--force",
        help="Drop and recreate the store (deletes all streams and commits)",
    ),
) -> None:
    """
    Create the stream store for this project.

    Examples:
        streamdash init              # Create the store if missing
        streamdash init --force      # Start over with an empty store
    """
    config = get_config()
    try:
        init_db(config.db_path, force_recreate=force)
    except StoreError as e:
        fail(str(e))
    console.print(f"[green]✓[/green] Store ready at {config.db_path}")


def serve(
    ctx: typer.Context,
    port: int | None = typer.Option(
        None,
        "--port",
        "-p",
        help="Port to start probing at (defaults to the per-project port)",
    ),
    no_scan: bool = typer.Option(
        False,
        "--no-scan",
        help="Don't run the periodic commit scanner",
    ),
    init_store: bool = typer.Option(
        False,
        "--init-store",
        help="Create the store first if it doesn't exist",
    ),
) -> None:
    """
    Run the API server for this project.

    If a live server already serves the project, its address is printed
    and nothing is started.

    Examples:
        streamdash serve                 # Discover or start
        streamdash serve --port 4000     # Prefer port 4000
        streamdash serve --no-scan       # API only, no commit scanning
    """
    debug = is_debug(ctx)
    if not debug:
        logging.getLogger("streamdash").setLevel(logging.INFO)

    config = get_config()
    if not config.api.enabled:
        fail(
            "The API server is disabled for this project",
            solution="Set api.enabled to true in .streamdash.json",
        )

    from streamdash.core.api.server import acquire_server, run_server

    try:
        if init_store and not config.db_path.exists():
            init_db(config.db_path)
        verify_store(config.db_path)
        acquired = acquire_server(config, port=port)
    except (StoreError, DiscoveryError) as e:
        fail(str(e))

    if isinstance(acquired, DiscoveryResult):
        pid = acquired.lock.pid if acquired.lock else "?"
        console.print(
            f"[yellow]Server already running[/yellow] for {config.project_name} "
            f"at http://{config.api.host}:{acquired.port} (pid {pid})"
        )
        return

    url = f"http://{config.api.host}:{acquired.port}"
    console.print("[bold cyan]Starting streamdash server...[/bold cyan]")
    console.print(f"[dim]Project: {config.project_name} ({config.project_root})[/dim]")
    console.print(f"[dim]API: {url}/api/streams[/dim]")
    console.print(f"[dim]Events: {url}/api/events[/dim]")
    console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")

    try:
        run_server(
            config,
            acquired,
            run_scanner=not no_scan,
            log_level="debug" if debug else "warning",
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/yellow]")
        raise typer.Exit(ExitCode.SIGINT)
    except Exception as e:
        if debug:
            console.print(traceback.format_exc())
        fail(str(e))


def status(
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON",
    ),
) -> None:
    """
    Show the project's server lock and whether the server is live.

    Read-only: a stale lock is reported, not removed.
    """
    config = get_config()
    lock = read_lock(config.lock_path)

    info: dict[str, object] = {
        "project": config.project_name,
        "project_root": str(config.project_root),
        "database": str(config.db_path),
        "database_exists": config.db_path.exists(),
        "lock_path": str(config.lock_path),
        "running": False,
    }
    if lock is not None:
        alive = is_process_alive(lock.pid)
        responding = alive and probe_server(
            config.api.host, lock.port, config.discovery.probe_timeout_seconds
        )
        info.update(
            {
                "pid": lock.pid,
                "port": lock.port,
                "started_at": lock.started_at,
                "matches_project": lock.matches(config.project_root, config.project_name),
                "process_alive": alive,
                "responding": responding,
                "running": responding,
            }
        )

    if json_output:
        console.print(json.dumps(info, indent=2))
        return

    table = Table(title="streamdash server", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in info.items():
        table.add_row(key, str(value))
    console.print(table)

    if lock is None:
        console.print("[dim]No server lock; run 'streamdash serve' to start one.[/dim]")
    elif not info["running"]:
        console.print("[yellow]Lock is stale[/yellow]; the next 'streamdash serve' removes it.")
