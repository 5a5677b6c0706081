"""
streamdash CLI - Reconcile command.

Compares the stream store with the project's git worktrees. Without
--apply nothing is changed; with --apply, stale streams are archived
(--archive-stale) and orphaned worktrees registered (--add-orphaned).
"""

import json

import typer
from rich.table import Table

from streamdash.cli.common import console, fail, get_config, get_inspector, get_store_config
from streamdash.core.reconcile.engine import ReconciliationEngine, format_report
from streamdash.core.reconcile.models import ReconciliationOptions
from streamdash.core.worktree.inspector import InspectionError

app = typer.Typer(
    name="reconcile",
    help="Compare streams with git worktrees",
    no_args_is_help=False,
    invoke_without_command=True,
)


@app.callback(invoke_without_command=True)
def reconcile(
    ctx: typer.Context,
    apply: bool = typer.Option(
        False,
        "--apply",
        help="Make changes (default is a dry run)",
    ),
    archive_stale: bool = typer.Option(
        False,
        "--archive-stale",
        help="Archive streams whose worktree is gone and whose branch is merged",
    ),
    add_orphaned: bool = typer.Option(
        False,
        "--add-orphaned",
        help="Register worktrees that have no stream",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output the full result as JSON",
    ),
) -> None:
    """
    Reconcile streams with git worktrees.

    A stream is stale only when its worktree is gone AND its branch is
    merged into the base branch. Orphaned worktrees are listed and only
    registered on request.

    Examples:
        streamdash reconcile                                # Dry-run report
        streamdash reconcile --apply --archive-stale        # Archive stale streams
        streamdash reconcile --apply --add-orphaned         # Register orphans
        streamdash reconcile worktrees                      # Raw worktree list
    """
    if ctx.invoked_subcommand is not None:
        return

    if (archive_stale or add_orphaned) and not apply:
        console.print("[dim]Dry run: add --apply to make changes[/dim]")

    config = get_store_config()
    engine = ReconciliationEngine(config.db_path, get_inspector(config))
    options = ReconciliationOptions(
        dry_run=not apply,
        auto_archive_stale=archive_stale,
        auto_add_orphaned=add_orphaned,
    )
    try:
        result = engine.reconcile(options)
    except InspectionError as e:
        fail(str(e), solution="Is the project root a git repository?")

    if json_output:
        console.print(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        console.print(format_report(result))

    if result.errors:
        raise typer.Exit(1)


@app.command()
def worktrees() -> None:
    """List git worktrees as the reconciler sees them."""
    config = get_config()
    try:
        found = get_inspector(config).list_worktrees()
    except InspectionError as e:
        fail(str(e))

    table = Table(title="Git worktrees")
    table.add_column("ID", style="cyan")
    table.add_column("Branch", style="green")
    table.add_column("Commit", style="blue")
    table.add_column("Path")
    for worktree in found.values():
        table.add_row(
            worktree.id + (" [dim](main)[/dim]" if worktree.is_main else ""),
            worktree.branch,
            worktree.commit_hash[:7],
            worktree.path,
        )
    console.print(table)


@app.command()
def merged() -> None:
    """List branches merged into the base branch."""
    config = get_config()
    try:
        branches = get_inspector(config).merged_branches()
    except InspectionError as e:
        fail(str(e))

    if not branches:
        console.print(f"[yellow]No branches merged into {config.base_branch}[/yellow]")
        return
    console.print(f"[bold]Merged into {config.base_branch}:[/bold]")
    for branch in sorted(branches):
        console.print(f"  {branch}")
