"""
Pydantic models for reconciliation options and results.
"""

from pydantic import BaseModel, Field

from streamdash.core.db.models import utc_now_iso


class ReconciliationOptions(BaseModel):
    """What a reconciliation run is allowed to change.

    The defaults only report. auto_add_orphaned is an explicit operator
    action and is never enabled by the scanner or the HTTP API.
    """

    dry_run: bool = Field(default=True, description="Only report, never mutate the store")
    auto_archive_stale: bool = Field(
        default=False, description="Archive streams whose worktree is gone and branch is merged"
    )
    auto_add_orphaned: bool = Field(
        default=False, description="Register untracked worktrees as new streams"
    )


class ReconciliationEntry(BaseModel):
    """Classification of one stream."""

    stream_id: str
    title: str
    branch: str | None = None
    worktree_path: str | None = None
    previous_status: str
    new_status: str | None = Field(
        default=None, description="Status after this run (only when it changed or would change)"
    )
    reason: str


class OrphanedWorktree(BaseModel):
    """A worktree with no stream record."""

    id: str
    path: str
    branch: str
    commit_hash: str = ""
    added: bool = Field(default=False, description="Registered as a stream by this run")


class ReconciliationError(BaseModel):
    stream_id: str
    error: str


class ReconciliationSummary(BaseModel):
    total_in_db: int = Field(default=0, description="Non-archived streams examined")
    total_worktrees: int = Field(default=0, description="Worktrees other than the main one")
    matched: int = 0
    stale: int = 0
    orphaned: int = 0
    archived: int = 0
    added: int = 0
    errors: int = 0


class ReconciliationResult(BaseModel):
    """
    Outcome of one reconciliation run. Never persisted.

    `archived` and `added` list what was actually applied; in a dry run
    both are empty.
    """

    stale_streams: list[ReconciliationEntry] = Field(default_factory=list)
    orphaned_worktrees: list[OrphanedWorktree] = Field(default_factory=list)
    matched: list[ReconciliationEntry] = Field(default_factory=list)
    archived: list[str] = Field(default_factory=list)
    added: list[str] = Field(default_factory=list)
    errors: list[ReconciliationError] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    summary: ReconciliationSummary = Field(default_factory=ReconciliationSummary)
    options: ReconciliationOptions = Field(default_factory=ReconciliationOptions)
    timestamp: str = Field(default_factory=utc_now_iso)

    @property
    def stale_ids(self) -> set[str]:
        return {entry.stream_id for entry in self.stale_streams}

    @property
    def orphaned_ids(self) -> set[str]:
        return {worktree.id for worktree in self.orphaned_worktrees}

    @property
    def matched_ids(self) -> set[str]:
        return {entry.stream_id for entry in self.matched}
