"""
streamdash CLI - Stream commands.

Register, list and update streams. Writes go straight to the store
through StreamService; a running server's dashboards pick them up on
their next poll.
"""

import json

import typer
from pydantic import ValidationError
from rich.table import Table

from streamdash.cli.common import console, fail, get_store_config
from streamdash.core.db.connection import get_connection
from streamdash.core.db.models import Stream, StreamCreate, StreamUpdate
from streamdash.core.db.queries import get_stream_history, list_streams
from streamdash.core.db.schema import normalize_status
from streamdash.core.streams.service import StreamError, StreamService

app = typer.Typer(
    name="stream",
    help="Register, list and update streams",
    no_args_is_help=True,
)

STATUS_STYLES = {
    "initializing": "dim",
    "active": "green",
    "blocked": "red",
    "ready": "cyan",
    "completed": "blue",
    "archived": "dim",
}


def _service() -> StreamService:
    return StreamService(get_store_config().db_path)


def _styled_status(stream: Stream) -> str:
    style = STATUS_STYLES.get(stream.status.value, "white")
    return f"[{style}]{stream.status.value}[/{style}]"


@app.command()
def add(
    stream_id: str = typer.Argument(..., help="Stable stream identifier"),
    title: str = typer.Option(..., "--title", "-t", help="Display title"),
    status: str = typer.Option("initializing", "--status", "-s", help="Initial status"),
    category: str = typer.Option("general", "--category", "-c", help="Work area"),
    priority: str = typer.Option("medium", "--priority", "-p", help="Priority"),
    worktree: str | None = typer.Option(None, "--worktree", "-w", help="Worktree path"),
    branch: str | None = typer.Option(None, "--branch", "-b", help="Branch name"),
) -> None:
    """
    Register a new stream.

    Examples:
        streamdash stream add auth --title "Auth rework" --branch auth
        streamdash stream add ui -t "UI polish" -c frontend -p high
    """
    try:
        data = StreamCreate(
            id=stream_id,
            title=title,
            status=status,
            category=category,
            priority=priority,
            worktree_path=worktree,
            branch=branch,
        )
        stream = _service().register(data)
    except ValidationError as e:
        fail(f"Invalid stream: {e.errors()[0]['msg']}")
    except StreamError as e:
        fail(str(e))

    console.print(f"[green]✓[/green] Registered stream {stream.id} (#{stream.stream_number})")


@app.command(name="list")
def list_cmd(
    status: str | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    category: str | None = typer.Option(None, "--category", "-c", help="Filter by category"),
    include_archived: bool = typer.Option(
        False, "--all", "-a", help="Include archived streams"
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """
    List streams, most recently updated first.

    Examples:
        streamdash stream list                  # Non-archived streams
        streamdash stream list --status active  # Only active streams
        streamdash stream list --all            # Include archived
    """
    try:
        normalized = normalize_status(status) if status is not None else None
    except ValueError as e:
        fail(str(e))

    with get_connection(get_store_config().db_path) as conn:
        streams = list_streams(
            conn,
            status=normalized,
            category=category,
            include_archived=include_archived,
            with_activity=True,
        )

    if json_output:
        console.print(json.dumps([s.model_dump(mode="json") for s in streams], indent=2))
        return

    if not streams:
        console.print("[yellow]No streams found[/yellow]")
        return

    table = Table(title=f"Streams ({len(streams)})")
    table.add_column("#", style="dim", justify="right")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Priority")
    table.add_column("Branch", style="green")
    table.add_column("Last commit", style="dim")
    for stream in streams:
        activity = stream.recent_activity
        table.add_row(
            str(stream.stream_number),
            stream.id,
            stream.title,
            _styled_status(stream),
            stream.priority.value,
            stream.branch or "",
            activity.last_commit_message if activity else "",
        )
    console.print(table)


@app.command()
def show(
    stream_id: str = typer.Argument(..., help="Stream ID"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show one stream."""
    try:
        stream = _service().get(stream_id)
    except StreamError as e:
        fail(str(e))

    if json_output:
        console.print(json.dumps(stream.model_dump(mode="json"), indent=2))
        return

    console.print(f"[bold]{stream.title}[/bold] [dim]({stream.id}, #{stream.stream_number})[/dim]")
    console.print(f"  Status:   {_styled_status(stream)}")
    console.print(f"  Category: {stream.category.value}")
    console.print(f"  Priority: {stream.priority.value}")
    console.print(f"  Branch:   {stream.branch or '-'}")
    console.print(f"  Worktree: {stream.worktree_path or '-'}")
    console.print(f"  Created:  {stream.created_at}")
    console.print(f"  Updated:  {stream.updated_at}")
    if stream.completed_at:
        console.print(f"  Completed: {stream.completed_at}")


@app.command(name="set-status")
def set_status(
    stream_id: str = typer.Argument(..., help="Stream ID"),
    status: str = typer.Argument(..., help="New status (in_progress is accepted for active)"),
) -> None:
    """
    Change the status of a stream.

    Examples:
        streamdash stream set-status auth active
        streamdash stream set-status auth completed
    """
    try:
        stream = _service().update(stream_id, StreamUpdate(status=status))
    except StreamError as e:
        fail(str(e))
    console.print(f"[green]✓[/green] {stream.id} is now {_styled_status(stream)}")


@app.command()
def archive(
    stream_id: str = typer.Argument(..., help="Stream ID"),
) -> None:
    """Archive a completed stream."""
    try:
        stream, already = _service().archive(stream_id)
    except StreamError as e:
        fail(str(e))
    if already:
        console.print(f"[dim]{stream.id} was already archived[/dim]")
    else:
        console.print(f"[green]✓[/green] Archived {stream.id}")


@app.command(name="archive-bulk")
def archive_bulk(
    stream_ids: list[str] = typer.Argument(..., help="Stream IDs"),
) -> None:
    """
    Archive several completed streams.

    Each stream succeeds or fails on its own. Exits 1 if any failed.
    """
    response = _service().archive_bulk(stream_ids)
    for item in response.results:
        if not item.success:
            console.print(f"[red]✗[/red] {item.stream_id}: {item.error}")
        elif item.already_archived:
            console.print(f"[dim]- {item.stream_id}: already archived[/dim]")
        else:
            console.print(f"[green]✓[/green] {item.stream_id}")
    console.print(
        f"\nArchived {response.archived_count}, failed {response.failed_count}"
    )
    if response.failed_count:
        raise typer.Exit(1)


@app.command()
def history(
    stream_id: str = typer.Argument(..., help="Stream ID"),
    limit: int = typer.Option(20, "--limit", "-n", help="Events to show"),
) -> None:
    """Show the status history of a stream, newest first."""
    service = _service()
    try:
        service.get(stream_id)
    except StreamError as e:
        fail(str(e))

    with get_connection(service.db_path) as conn:
        events = get_stream_history(conn, stream_id, limit=limit)

    table = Table(title=f"History of {stream_id}")
    table.add_column("Time", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("From")
    table.add_column("To")
    for event in events:
        table.add_row(
            event.timestamp, event.event_type, event.old_value or "", event.new_value or ""
        )
    console.print(table)
