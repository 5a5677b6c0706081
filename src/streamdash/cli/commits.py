"""
streamdash CLI - Commit commands.

Record commits by hand, list recent commits, run a scan pass and show
the dashboard counters.
"""

import asyncio
import json

import typer
from pydantic import ValidationError
from rich.table import Table

from streamdash.cli.common import console, fail, get_inspector, get_store_config
from streamdash.core.db.connection import get_connection
from streamdash.core.db.models import CommitCreate
from streamdash.core.db.queries import compute_quick_stats, get_recent_commits, get_stream
from streamdash.core.scanner.scanner import CommitScanner
from streamdash.core.streams.service import StreamError, StreamService

app = typer.Typer(
    name="commit",
    help="Record commits",
    no_args_is_help=True,
)


@app.command()
def add(
    stream_id: str = typer.Argument(..., help="Stream ID"),
    commit_hash: str = typer.Argument(..., help="Commit hash"),
    message: str = typer.Option(..., "--message", "-m", help="Commit subject"),
    author: str | None = typer.Option(None, "--author", help="Commit author"),
    files_changed: int = typer.Option(0, "--files", "-f", help="Files changed"),
    timestamp: str | None = typer.Option(
        None, "--timestamp", help="Commit time (ISO-8601, default now)"
    ),
) -> None:
    """
    Record one commit for a stream.

    Recording a commit that is already known changes nothing.

    Examples:
        streamdash commit add auth 3f2c9e1 -m "Add login form" --files 3
    """
    config = get_store_config()
    try:
        data = CommitCreate(
            stream_id=stream_id,
            commit_hash=commit_hash,
            message=message,
            author=author,
            files_changed=files_changed,
            timestamp=timestamp,
        )
        inserted = StreamService(config.db_path).record_commit(data)
    except ValidationError as e:
        fail(f"Invalid commit: {e.errors()[0]['msg']}")
    except StreamError as e:
        fail(str(e))

    if inserted:
        console.print(f"[green]✓[/green] Recorded {commit_hash[:8]} for {stream_id}")
    else:
        console.print(f"[dim]{commit_hash[:8]} was already recorded for {stream_id}[/dim]")


def commits(
    limit: int = typer.Option(20, "--limit", "-n", min=1, max=500, help="Commits to show"),
    stream_id: str | None = typer.Option(None, "--stream", "-s", help="Only this stream"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """
    List recent commits, newest first.

    Examples:
        streamdash commits               # Last 20 commits
        streamdash commits -s auth       # Commits of one stream
    """
    config = get_store_config()
    with get_connection(config.db_path) as conn:
        if stream_id is not None and get_stream(conn, stream_id) is None:
            fail(f"Stream not found: {stream_id}")
        recent = get_recent_commits(conn, limit=limit, stream_id=stream_id)

    if json_output:
        console.print(json.dumps([c.model_dump(mode="json") for c in recent], indent=2))
        return

    if not recent:
        console.print("[yellow]No commits recorded[/yellow]")
        return

    table = Table(title="Recent commits")
    table.add_column("Commit", style="blue")
    table.add_column("Stream", style="cyan")
    table.add_column("Message")
    table.add_column("Author", style="dim")
    table.add_column("Files", justify="right")
    table.add_column("Time", style="dim")
    for commit in recent:
        table.add_row(
            commit.commit_hash[:8],
            commit.stream_id,
            commit.message,
            commit.author or "",
            str(commit.files_changed),
            commit.timestamp,
        )
    console.print(table)


def scan(
    stream_id: str | None = typer.Option(None, "--stream", "-s", help="Scan only this stream"),
) -> None:
    """
    Run one commit scan pass now.

    Examples:
        streamdash scan                  # All non-archived streams
        streamdash scan --stream auth    # One stream
    """
    config = get_store_config()
    scanner = CommitScanner(config.db_path, get_inspector(config))

    try:
        if stream_id is not None:
            result = asyncio.run(scanner.scan_stream(stream_id))
        else:
            result = asyncio.run(scanner.trigger())
    except StreamError as e:
        fail(str(e))

    assert result is not None
    console.print(
        f"Scanned {result.scanned} stream(s): "
        f"[green]{result.commits_added}[/green] new commit(s) "
        f"in {result.duration_seconds:.2f}s"
    )
    if result.errors:
        console.print(
            f"[yellow]{result.errors} stream(s) failed:[/yellow] "
            f"{', '.join(result.failed_streams)}"
        )


def stats(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show the dashboard counters."""
    config = get_store_config()
    with get_connection(config.db_path) as conn:
        quick = compute_quick_stats(conn)

    if json_output:
        console.print(json.dumps(quick.model_dump(), indent=2))
        return

    table = Table(title="streamdash stats", show_header=False)
    table.add_column("Counter", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in quick.model_dump().items():
        table.add_row(key.replace("_", " "), str(value))
    console.print(table)
