"""
Stats API routes for the dashboard.

- GET /api/stats - Summary counters for the stats bar
"""

from fastapi import APIRouter, Depends

from streamdash.core.api.deps import ServerContext, get_context
from streamdash.core.db.connection import get_connection
from streamdash.core.db.models import QuickStats
from streamdash.core.db.queries import compute_quick_stats

router = APIRouter()


@router.get("/stats", response_model=QuickStats)
async def get_stats(ctx: ServerContext = Depends(get_context)) -> QuickStats:
    """
    Get summary counters for the dashboard.

    This is a lightweight endpoint that clients re-read on every
    `stats` event.

    Example response:
        {
          "active_streams": 6,
          "in_progress": 4,
          "blocked": 1,
          "ready": 1,
          "completed_today": 2,
          "total_commits": 318,
          "commits_today": 12
        }
    """
    with get_connection(ctx.db_path) as conn:
        return compute_quick_stats(conn)
