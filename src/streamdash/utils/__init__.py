"""Utility modules for streamdash."""

from .project import find_project_root, get_project_root

__all__ = [
    "find_project_root",
    "get_project_root",
]
