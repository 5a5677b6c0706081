"""
Store/worktree drift detection and correction.
"""

from streamdash.core.reconcile.engine import Observation, ReconciliationEngine, format_report
from streamdash.core.reconcile.models import (
    OrphanedWorktree,
    ReconciliationEntry,
    ReconciliationError,
    ReconciliationOptions,
    ReconciliationResult,
    ReconciliationSummary,
)

__all__ = [
    "Observation",
    "OrphanedWorktree",
    "ReconciliationEngine",
    "ReconciliationEntry",
    "ReconciliationError",
    "ReconciliationOptions",
    "ReconciliationResult",
    "ReconciliationSummary",
    "format_report",
]
