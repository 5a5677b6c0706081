"""
Git worktree inspection for streamdash.
"""

from streamdash.core.worktree.inspector import (
    MAIN_WORKTREE_ID,
    CommitRecord,
    InspectionError,
    WorktreeInspector,
    WorktreeRecord,
    normalize_path,
)

__all__ = [
    "MAIN_WORKTREE_ID",
    "CommitRecord",
    "InspectionError",
    "WorktreeInspector",
    "WorktreeRecord",
    "normalize_path",
]
