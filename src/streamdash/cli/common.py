"""
Shared helpers for streamdash CLI commands.

Consistent configuration loading, error output and exit codes.
"""

from enum import IntEnum
from typing import NoReturn

import typer
from rich.console import Console

from streamdash.core.config import ConfigError, load_config
from streamdash.core.config.models import StreamdashConfig
from streamdash.core.db.connection import StoreError, verify_store
from streamdash.core.worktree.inspector import WorktreeInspector

console = Console()
err_console = Console(stderr=True)


class ExitCode(IntEnum):
    """Standard exit codes for streamdash CLI operations."""

    SUCCESS = 0
    """Operation completed successfully."""

    GENERAL_ERROR = 1
    """Any failure: invalid input, missing store, git or discovery error."""

    SIGINT = 130
    """Terminated by SIGINT (Ctrl+C) - Unix standard."""


def print_error(problem: str, *, solution: str | None = None) -> None:
    """Print a standardized error message, with an optional hint."""
    err_console.print(f"[red]Error:[/red] {problem}")
    if solution:
        err_console.print(f"[dim]{solution}[/dim]")


def fail(problem: str, *, solution: str | None = None) -> NoReturn:
    """Print an error and exit with GENERAL_ERROR."""
    print_error(problem, solution=solution)
    raise typer.Exit(ExitCode.GENERAL_ERROR)


def is_debug(ctx: typer.Context) -> bool:
    """Debug flag set by the top-level callback."""
    return bool(ctx.obj.get("debug", False)) if ctx.obj else False


def get_config() -> StreamdashConfig:
    """Load the project configuration, exiting on invalid configuration."""
    try:
        return load_config()
    except ConfigError as e:
        fail(str(e), solution="Check .streamdash.json and STREAMDASH_* variables")


def get_store_config() -> StreamdashConfig:
    """
    Load the configuration of a project whose store must already exist.

    Commands other than init and serve never create the store as a side
    effect; a missing or unreadable store exits with GENERAL_ERROR.
    """
    config = get_config()
    try:
        verify_store(config.db_path)
    except StoreError as e:
        fail(str(e))
    return config


def get_inspector(config: StreamdashConfig) -> WorktreeInspector:
    return WorktreeInspector(
        config.project_root,
        base_branch=config.base_branch,
        timeout=config.scanner.git_timeout_seconds,
        max_commits=config.scanner.max_commits,
    )
