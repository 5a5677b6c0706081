"""
Commit API routes.

- GET /api/commits?limit&offset&stream_id - Commits, newest first, paged
"""

from fastapi import APIRouter, Depends, Query

from streamdash.core.api.deps import ServerContext, get_context
from streamdash.core.db.connection import get_connection
from streamdash.core.db.models import Commit
from streamdash.core.db.queries import get_recent_commits, get_stream
from streamdash.core.streams.service import StreamNotFoundError

router = APIRouter()


@router.get("/commits", response_model=list[Commit])
async def get_commits(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    stream_id: str | None = None,
    ctx: ServerContext = Depends(get_context),
) -> list[Commit]:
    """
    Get commits across all streams, or for one stream.

    Example response:
        [
          {"stream_id": "auth", "commit_hash": "3f2a...", "message": "Add login form",
           "author": "Ada", "files_changed": 3, "timestamp": "2026-01-02T08:00:00.000Z"}
        ]
    """
    with get_connection(ctx.db_path) as conn:
        if stream_id is not None and get_stream(conn, stream_id) is None:
            raise StreamNotFoundError(stream_id)
        return get_recent_commits(conn, limit=limit, offset=offset, stream_id=stream_id)
