"""
streamdash - Stream workflow status server.

Tracks streams of work (one per git worktree/branch), keeps a SQLite view of
them in sync with the worktrees, and pushes updates to dashboard clients.
"""

__version__ = "0.4.0"

# Re-export core models for convenience
from streamdash.core.config.models import StreamdashConfig
from streamdash.core.db.models import Commit, Stream, StreamStatus

__all__ = ["StreamdashConfig", "Stream", "StreamStatus", "Commit", "__version__"]
