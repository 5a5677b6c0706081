"""
Pydantic models for streams, commits and API responses.

These models provide type-safe data structures for:
- Stream: A tracked unit of work, usually one per worktree/branch
- Commit: A commit ingested from a stream's worktree
- StreamHistoryEvent: One recorded stream mutation
- QuickStats: Dashboard summary counters
- StreamCreate/StreamUpdate/CommitCreate: Mutation payloads
- BulkArchiveItem/BulkArchiveResponse: Per-item bulk archive results

Timestamps are stored and returned as UTC ISO-8601 strings.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from streamdash.core.db.schema import normalize_status


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_utc_iso(value: str) -> str:
    """
    Convert an ISO-8601 date to a UTC ISO-8601 string with millisecond precision.

    Naive values are taken as UTC. Stored timestamps always use this form,
    so ordering by the string is ordering by time.

    Raises:
        ValueError: If the value is not an ISO-8601 date

    Example:
        >>> to_utc_iso("2026-01-02T10:00:00+02:00")
        '2026-01-02T08:00:00.000Z'
    """
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    utc = parsed.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_timestamp(value: str | None) -> str | None:
    """Validator body for optional timestamps in mutation payloads."""
    if value is None:
        return None
    try:
        return to_utc_iso(value)
    except ValueError as e:
        raise ValueError(f"Invalid timestamp: {value!r} is not an ISO-8601 date") from e


class StreamStatus(str, Enum):
    """Lifecycle status of a stream.

    ARCHIVED is terminal for automation: neither the scanner nor the
    reconciliation engine ever moves a stream out of it.
    """

    INITIALIZING = "initializing"
    ACTIVE = "active"
    BLOCKED = "blocked"
    READY = "ready"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class StreamCategory(str, Enum):
    """Area of the codebase a stream works on."""

    FRONTEND = "frontend"
    BACKEND = "backend"
    INFRASTRUCTURE = "infrastructure"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    REFACTORING = "refactoring"
    GENERAL = "general"


class StreamPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RecentActivity(BaseModel):
    """Summary of the newest commit of a stream."""

    last_commit_message: str = Field(..., description="Message of the newest commit")
    files_changed: int = Field(default=0, ge=0, description="Files touched by that commit")
    author: str | None = Field(default=None, description="Commit author")
    timestamp: str = Field(..., description="Commit timestamp (UTC ISO-8601)")


class Stream(BaseModel):
    """A tracked unit of work.

    Example:
        >>> stream = Stream(
        ...     id="stream-042-auth",
        ...     stream_number=42,
        ...     title="Auth rework",
        ...     status=StreamStatus.ACTIVE,
        ...     branch="feature/auth",
        ...     worktree_path="/work/app-worktrees/stream-042-auth",
        ...     created_at="2026-01-01T00:00:00.000Z",
        ...     updated_at="2026-01-01T00:00:00.000Z",
        ... )
    """

    id: str = Field(..., description="Stable stream identifier")
    stream_number: int = Field(default=0, ge=0, description="Display number")
    title: str = Field(..., description="Display title")
    status: StreamStatus = Field(default=StreamStatus.INITIALIZING, description="Lifecycle status")
    category: StreamCategory = Field(default=StreamCategory.GENERAL, description="Work area")
    priority: StreamPriority = Field(default=StreamPriority.MEDIUM, description="Priority")
    worktree_path: str | None = Field(default=None, description="Worktree the stream lives in")
    branch: str | None = Field(default=None, description="Branch the stream commits to")

    created_at: str = Field(..., description="Creation timestamp")
    updated_at: str = Field(..., description="Last update timestamp")
    completed_at: str | None = Field(default=None, description="Completion timestamp")

    recent_activity: RecentActivity | None = Field(
        default=None, description="Newest commit summary (list reads only)"
    )

    @property
    def is_archived(self) -> bool:
        return self.status == StreamStatus.ARCHIVED


class Commit(BaseModel):
    """A commit ingested for a stream."""

    id: int | None = Field(default=None, description="Row id")
    stream_id: str = Field(..., description="Owning stream")
    commit_hash: str = Field(..., description="Full commit hash")
    message: str = Field(..., description="Commit subject")
    author: str | None = Field(default=None, description="Commit author")
    files_changed: int = Field(default=0, ge=0, description="Number of files touched")
    timestamp: str = Field(..., description="Commit timestamp (UTC ISO-8601)")


class StreamHistoryEvent(BaseModel):
    """One recorded mutation of a stream."""

    id: int | None = None
    stream_id: str
    event_type: str = Field(..., description="created, status_changed or archived")
    old_value: str | None = None
    new_value: str | None = None
    timestamp: str


class QuickStats(BaseModel):
    """Dashboard summary counters."""

    active_streams: int = Field(default=0, description="Streams not completed or archived")
    in_progress: int = Field(default=0, description="Streams with status active")
    blocked: int = Field(default=0, description="Streams with status blocked")
    ready: int = Field(default=0, description="Streams with status ready")
    completed_today: int = Field(default=0, description="Streams completed since UTC midnight")
    total_commits: int = Field(default=0, description="All ingested commits")
    commits_today: int = Field(default=0, description="Commits timestamped since UTC midnight")


class StreamCreate(BaseModel):
    """Payload for registering a stream."""

    id: str = Field(..., min_length=1, max_length=200, description="Stable stream identifier")
    title: str = Field(..., min_length=1, description="Display title")
    stream_number: int | None = Field(
        default=None, ge=0, description="Display number (defaults to the next free number)"
    )
    status: StreamStatus = Field(default=StreamStatus.INITIALIZING)
    category: StreamCategory = Field(default=StreamCategory.GENERAL)
    priority: StreamPriority = Field(default=StreamPriority.MEDIUM)
    worktree_path: str | None = None
    branch: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _status_alias(cls, v: object) -> object:
        if isinstance(v, str):
            try:
                return normalize_status(v)
            except ValueError:
                return v
        return v


class StreamUpdate(BaseModel):
    """Payload for updating a stream.

    Values are plain strings; the stream service validates them so that
    a bad value surfaces as an invalid request rather than a schema error.
    """

    status: str | None = None
    title: str | None = None
    category: str | None = None
    priority: str | None = None

    def is_empty(self) -> bool:
        return all(
            value is None for value in (self.status, self.title, self.category, self.priority)
        )


class CommitCreate(BaseModel):
    """Payload for recording one commit against a stream."""

    stream_id: str = Field(..., min_length=1)
    commit_hash: str = Field(..., min_length=4, max_length=64)
    message: str = Field(..., description="Commit subject")
    author: str | None = None
    files_changed: int = Field(default=0, ge=0)
    timestamp: str | None = Field(default=None, description="Defaults to now")

    @field_validator("timestamp")
    @classmethod
    def _utc_timestamp(cls, v: str | None) -> str | None:
        return normalize_timestamp(v)


class BulkArchiveItem(BaseModel):
    """Outcome of archiving one stream in a bulk request."""

    stream_id: str
    success: bool
    error: str | None = None
    already_archived: bool = False


class BulkArchiveResponse(BaseModel):
    """Per-item results of a bulk archive. Partial failure is normal."""

    results: list[BulkArchiveItem] = Field(default_factory=list)
    archived_count: int = Field(default=0, description="Streams that changed to archived")
    failed_count: int = Field(default=0, description="Streams that could not be archived")
