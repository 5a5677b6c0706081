"""
streamdash CLI - Main application entry point.

This module sets up the Typer CLI application with all subcommands.
"""

import logging

import typer
from rich.console import Console

from streamdash import __version__
from streamdash.cli import commits, reconcile, server, stream
from streamdash.core.config.env import load_layered_env
from streamdash.utils.project import find_project_root

# Help panel names for command grouping
PANEL_SERVER = "Run the Server"
PANEL_STREAMS = "Work with Streams"
PANEL_GIT = "Commits and Worktrees"

app = typer.Typer(
    name="streamdash",
    help="Stream and worktree status server for live dashboards",
    no_args_is_help=True,
    add_completion=True,
    context_settings={"help_option_names": ["--help", "-h"]},
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"streamdash version {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug output with detailed logging",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """
    streamdash - stream status for parallel git worktrees.

    Each stream of work lives on its own branch and worktree. streamdash
    keeps a store of streams and their commits in step with git and
    serves it to dashboards over HTTP and Server-Sent Events.

    Quick Start:
        1. streamdash init                          # Create the store
        2. streamdash stream add auth -t "Auth"     # Register a stream
        3. streamdash serve                         # Start the server

    Keeping in sync:
        streamdash reconcile                        # Drift report
        streamdash reconcile --apply --archive-stale
        streamdash scan                             # Ingest new commits now
    """
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Precedence: OS env > project .env > user .env
    load_layered_env(project_dir=find_project_root())

    ctx.obj = {"debug": debug}


# =============================================================================
# Run the Server
# =============================================================================

app.command(name="init", rich_help_panel=PANEL_SERVER)(server.init)
app.command(name="serve", rich_help_panel=PANEL_SERVER)(server.serve)
app.command(name="status", rich_help_panel=PANEL_SERVER)(server.status)


# =============================================================================
# Work with Streams
# =============================================================================

app.add_typer(stream.app, name="stream", rich_help_panel=PANEL_STREAMS)
app.command(name="stats", rich_help_panel=PANEL_STREAMS)(commits.stats)


# =============================================================================
# Commits and Worktrees
# =============================================================================

app.add_typer(commits.app, name="commit", rich_help_panel=PANEL_GIT)
app.command(name="commits", rich_help_panel=PANEL_GIT)(commits.commits)
app.command(name="scan", rich_help_panel=PANEL_GIT)(commits.scan)
app.add_typer(reconcile.app, name="reconcile", rich_help_panel=PANEL_GIT)


def cli_main() -> None:
    """Main CLI entry point."""
    app()


__all__ = ["app", "cli_main"]
