"""
Stream API routes.

- GET /api/streams - List streams (filters: status, category, priority, include_archived)
- POST /api/streams - Register a stream
- GET /api/streams/{id} - One stream
- PATCH /api/streams/{id} - Change status/title/category/priority
- POST /api/streams/{id}/archive - Archive a completed stream
- POST /api/streams/archive-bulk - Archive several streams, per-item results
- GET /api/streams/{id}/history - Mutation history
- POST /api/streams/{id}/commits - Record one commit
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field, field_validator

from streamdash.core.api.deps import ServerContext, get_context
from streamdash.core.db.connection import get_connection
from streamdash.core.db.models import (
    BulkArchiveResponse,
    CommitCreate,
    Stream,
    StreamCreate,
    StreamHistoryEvent,
    StreamUpdate,
    normalize_timestamp,
)
from streamdash.core.db.queries import get_stream_history, list_streams
from streamdash.core.db.schema import normalize_status

router = APIRouter()


class ArchiveResponse(BaseModel):
    """Response body of POST /api/streams/{id}/archive."""

    stream: Stream
    already_archived: bool = False


class BulkArchiveRequest(BaseModel):
    """Request body of POST /api/streams/archive-bulk."""

    stream_ids: list[str] = Field(..., min_length=1, description="Streams to archive")


class CommitBody(BaseModel):
    """Request body of POST /api/streams/{id}/commits."""

    commit_hash: str = Field(..., min_length=4, max_length=64)
    message: str
    author: str | None = None
    files_changed: int = Field(default=0, ge=0)
    timestamp: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _utc_timestamp(cls, v: str | None) -> str | None:
        return normalize_timestamp(v)


class CommitRecorded(BaseModel):
    stream_id: str
    commit_hash: str
    inserted: bool


@router.get("/streams", response_model=list[Stream])
async def get_streams(
    status_filter: str | None = Query(default=None, alias="status"),
    category: str | None = None,
    priority: str | None = None,
    include_archived: bool = False,
    ctx: ServerContext = Depends(get_context),
) -> list[Stream]:
    """
    List streams, most recently updated first.

    Each stream carries `recent_activity` from its newest commit.
    Archived streams are left out unless include_archived=true or
    status=archived is requested.
    """
    canonical = None
    if status_filter is not None:
        try:
            canonical = normalize_status(status_filter)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

    with get_connection(ctx.db_path) as conn:
        return list_streams(
            conn,
            status=canonical,
            category=category,
            priority=priority,
            include_archived=include_archived,
            with_activity=True,
        )


@router.post("/streams", response_model=Stream, status_code=status.HTTP_201_CREATED)
async def create_stream(data: StreamCreate, ctx: ServerContext = Depends(get_context)) -> Stream:
    """Register a new stream. 409 if the id is taken."""
    return ctx.service.register(data)


@router.post("/streams/archive-bulk", response_model=BulkArchiveResponse)
async def archive_streams_bulk(
    body: BulkArchiveRequest, ctx: ServerContext = Depends(get_context)
) -> BulkArchiveResponse:
    """
    Archive several streams.

    Always 200: the outcome of every id is reported in `results`, and a
    failure for one id never undoes the others.
    """
    return ctx.service.archive_bulk(body.stream_ids)


@router.get("/streams/{stream_id}", response_model=Stream)
async def get_stream_by_id(stream_id: str, ctx: ServerContext = Depends(get_context)) -> Stream:
    return ctx.service.get(stream_id)


@router.patch("/streams/{stream_id}", response_model=Stream)
async def update_stream(
    stream_id: str, data: StreamUpdate, ctx: ServerContext = Depends(get_context)
) -> Stream:
    """
    Update a stream.

    Status aliases in_progress / in-progress are accepted for active.
    Invalid values are rejected with 400 and nothing is changed.
    """
    return ctx.service.update(stream_id, data)


@router.post("/streams/{stream_id}/archive", response_model=ArchiveResponse)
async def archive_stream(
    stream_id: str, ctx: ServerContext = Depends(get_context)
) -> ArchiveResponse:
    """Archive a completed stream. Archiving twice succeeds with already_archived=true."""
    stream, already_archived = ctx.service.archive(stream_id)
    return ArchiveResponse(stream=stream, already_archived=already_archived)


@router.get("/streams/{stream_id}/history", response_model=list[StreamHistoryEvent])
async def stream_history(
    stream_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    ctx: ServerContext = Depends(get_context),
) -> list[StreamHistoryEvent]:
    ctx.service.get(stream_id)
    with get_connection(ctx.db_path) as conn:
        return get_stream_history(conn, stream_id, limit=limit)


@router.post("/streams/{stream_id}/commits", response_model=CommitRecorded)
async def record_commit(
    stream_id: str,
    body: CommitBody,
    response: Response,
    ctx: ServerContext = Depends(get_context),
) -> CommitRecorded:
    """
    Record one commit for a stream.

    201 when the commit is new, 200 when it was already recorded.
    """
    inserted = ctx.service.record_commit(CommitCreate(stream_id=stream_id, **body.model_dump()))
    response.status_code = status.HTTP_201_CREATED if inserted else status.HTTP_200_OK
    return CommitRecorded(stream_id=stream_id, commit_hash=body.commit_hash, inserted=inserted)
