"""
Project root discovery utilities for streamdash.

This module provides functions for discovering project boundaries
by searching for marker files like .git/ or .streamdash.json.
"""

from pathlib import Path

# Markers that indicate a project root, in order of priority
PROJECT_ROOT_MARKERS = [
    ".streamdash.json",  # Project configuration file
    ".git",  # Git repository (directory, or file inside a linked worktree)
]


def find_project_root(start: Path | None = None) -> Path | None:
    """
    Find the project root directory by searching upward for marker files.

    Args:
        start: Directory to start searching from. Defaults to current working directory.

    Returns:
        Path to the project root directory, or None if not found.

    Example:
        >>> find_project_root()  # From /project/src/module/
        PosixPath('/project')
    """
    if start is None:
        start = Path.cwd()

    start = start.resolve()

    current = start
    while True:
        for marker in PROJECT_ROOT_MARKERS:
            if (current / marker).exists():
                return current
        if current == current.parent:
            return None
        current = current.parent


def get_project_root(start: Path | None = None) -> Path:
    """
    Get the project root directory, raising an error if not found.

    Raises:
        FileNotFoundError: If no project root can be found.
    """
    root = find_project_root(start)
    if root is None:
        start_dir = start.resolve() if start else Path.cwd()
        raise FileNotFoundError(
            f"Could not find project root from {start_dir}. "
            f"Expected one of: {', '.join(PROJECT_ROOT_MARKERS)}"
        )
    return root
