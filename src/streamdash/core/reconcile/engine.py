"""
Reconciliation between the stream store and the git worktrees on disk.

Classification of every non-archived stream:
- stale: it claims a worktree path that git no longer lists AND its
  branch is merged into the base branch
- matched: everything else (worktree present, worktree gone but branch
  not merged, or no worktree recorded)

Worktrees (other than the main one) whose path and id match no stream
record, archived ones included, are reported as orphaned.

Applying is opt-in and asymmetric: archiving stale streams is safe to
automate, registering orphaned worktrees is not and is only done when
explicitly requested.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path

from streamdash.core.db.connection import get_connection
from streamdash.core.db.models import Stream, StreamCreate, StreamStatus
from streamdash.core.db.queries import (
    add_history_event,
    get_stream,
    list_streams,
    update_stream_fields,
)
from streamdash.core.events.broadcaster import EventBroadcaster
from streamdash.core.reconcile.models import (
    OrphanedWorktree,
    ReconciliationEntry,
    ReconciliationError,
    ReconciliationOptions,
    ReconciliationResult,
)
from streamdash.core.streams.service import StreamError, StreamService
from streamdash.core.worktree.inspector import WorktreeInspector, WorktreeRecord, normalize_path

logger = logging.getLogger(__name__)


@dataclass
class Observation:
    """Git state captured for one reconciliation run."""

    worktrees: dict[str, WorktreeRecord]
    merged: set[str]

    @property
    def paths(self) -> set[str]:
        return {worktree.path for worktree in self.worktrees.values()}


class ReconciliationEngine:
    """
    Compares inspector output with the store and applies safe corrections.

    Example:
        >>> engine = ReconciliationEngine(db_path, inspector, broadcaster)
        >>> result = engine.reconcile(ReconciliationOptions())  # dry run
        >>> sorted(result.stale_ids)
        ['stream-007']
        >>> engine.reconcile(ReconciliationOptions(dry_run=False, auto_archive_stale=True))
    """

    def __init__(
        self,
        db_path: Path,
        inspector: WorktreeInspector,
        broadcaster: EventBroadcaster | None = None,
    ):
        self.db_path = Path(db_path)
        self.inspector = inspector
        self.broadcaster = broadcaster

    def observe(self) -> Observation:
        """
        Read worktrees and merged branches from git.

        Raises:
            InspectionError: If git state cannot be read
        """
        return Observation(
            worktrees=self.inspector.list_worktrees(),
            merged=self.inspector.merged_branches(),
        )

    def reconcile(self, options: ReconciliationOptions | None = None) -> ReconciliationResult:
        """
        Run a reconciliation synchronously.

        Raises:
            InspectionError: If git state cannot be read
        """
        return self.apply(self.observe(), options or ReconciliationOptions())

    async def areconcile(
        self, options: ReconciliationOptions | None = None
    ) -> ReconciliationResult:
        """Run a reconciliation with the git calls off the event loop."""
        observation = await asyncio.to_thread(self.observe)
        return self.apply(observation, options or ReconciliationOptions())

    def _classify(
        self, stream: Stream, observation: Observation
    ) -> tuple[ReconciliationEntry, bool]:
        entry = ReconciliationEntry(
            stream_id=stream.id,
            title=stream.title,
            branch=stream.branch,
            worktree_path=stream.worktree_path,
            previous_status=stream.status.value,
            reason="",
        )
        if not stream.worktree_path:
            entry.reason = "no worktree recorded"
        elif normalize_path(stream.worktree_path) in observation.paths:
            entry.reason = "worktree present"
        elif stream.branch and stream.branch in observation.merged:
            entry.reason = "worktree missing and branch merged"
            return entry, True
        else:
            entry.reason = "worktree missing but branch not merged"
        return entry, False

    def apply(
        self, observation: Observation, options: ReconciliationOptions
    ) -> ReconciliationResult:
        """
        Classify the store against an observation and apply what options allow.

        Store work happens here, on the calling thread.
        """
        result = ReconciliationResult(options=options)

        with get_connection(self.db_path) as conn:
            population = list_streams(conn, include_archived=False)
            all_streams = list_streams(conn)

        result.summary.total_in_db = len(population)
        result.summary.total_worktrees = sum(
            1 for worktree in observation.worktrees.values() if not worktree.is_main
        )

        for stream in population:
            entry, stale = self._classify(stream, observation)
            if stale:
                if options.auto_archive_stale:
                    entry.new_status = StreamStatus.ARCHIVED.value
                result.stale_streams.append(entry)
            else:
                result.matched.append(entry)

        known_paths = {normalize_path(s.worktree_path) for s in all_streams if s.worktree_path}
        known_ids = {s.id for s in all_streams}
        for worktree in observation.worktrees.values():
            if worktree.is_main:
                continue
            if worktree.path in known_paths or worktree.id in known_ids:
                continue
            result.orphaned_worktrees.append(
                OrphanedWorktree(
                    id=worktree.id,
                    path=worktree.path,
                    branch=worktree.branch,
                    commit_hash=worktree.commit_hash,
                )
            )

        if not options.dry_run:
            if options.auto_archive_stale:
                self._archive_stale(result)
            if options.auto_add_orphaned:
                self._add_orphaned(result)

        result.summary.matched = len(result.matched)
        result.summary.stale = len(result.stale_streams)
        result.summary.orphaned = len(result.orphaned_worktrees)
        result.summary.archived = len(result.archived)
        result.summary.added = len(result.added)
        result.summary.errors = len(result.errors)

        logger.info(
            "Reconciliation%s: %d matched, %d stale, %d orphaned, %d archived, %d added",
            " (dry run)" if options.dry_run else "",
            result.summary.matched,
            result.summary.stale,
            result.summary.orphaned,
            result.summary.archived,
            result.summary.added,
        )

        if self.broadcaster is not None and (result.archived or result.added):
            self.broadcaster.notify("streams")

        return result

    def _archive_stale(self, result: ReconciliationResult) -> None:
        with get_connection(self.db_path) as conn:
            for entry in result.stale_streams:
                try:
                    archived = self._archive_one(conn, entry.stream_id)
                    conn.commit()
                except sqlite3.Error as e:
                    conn.rollback()
                    logger.warning("Failed to archive stale stream %s: %s", entry.stream_id, e)
                    result.errors.append(
                        ReconciliationError(stream_id=entry.stream_id, error=str(e))
                    )
                    entry.new_status = None
                    continue
                if archived:
                    result.archived.append(entry.stream_id)

    def _archive_one(self, conn: sqlite3.Connection, stream_id: str) -> bool:
        # Re-read: the stream may have been archived since it was listed
        current = get_stream(conn, stream_id)
        if current is None or current.status == StreamStatus.ARCHIVED:
            return False
        update_stream_fields(conn, stream_id, status=StreamStatus.ARCHIVED.value)
        add_history_event(
            conn, stream_id, "archived", current.status.value, StreamStatus.ARCHIVED.value
        )
        return True

    def _add_orphaned(self, result: ReconciliationResult) -> None:
        service = StreamService(self.db_path)
        for worktree in result.orphaned_worktrees:
            data = StreamCreate(
                id=worktree.id,
                title=worktree.branch or worktree.id,
                status=StreamStatus.INITIALIZING,
                worktree_path=worktree.path,
                branch=worktree.branch,
            )
            try:
                service.register(data)
            except StreamError as e:
                logger.warning("Failed to register orphaned worktree %s: %s", worktree.id, e)
                result.errors.append(ReconciliationError(stream_id=worktree.id, error=str(e)))
                continue
            worktree.added = True
            result.added.append(worktree.id)


def format_report(result: ReconciliationResult, limit: int = 10) -> str:
    """
    Render a reconciliation result as plain text.

    Each section lists at most `limit` items.
    """
    dry_run = result.options.dry_run
    summary = result.summary
    lines = [
        "Reconciliation report (dry run)" if dry_run else "Reconciliation complete",
        "",
        f"Streams examined: {summary.total_in_db}",
        f"Git worktrees: {summary.total_worktrees}",
        f"Matched: {summary.matched}",
        f"Stale (worktree gone, branch merged): {summary.stale}",
        f"Orphaned (no stream record): {summary.orphaned}",
    ]
    if not dry_run:
        lines.append(f"Archived: {summary.archived}")
        lines.append(f"Added: {summary.added}")
    if summary.errors:
        lines.append(f"Errors: {summary.errors}")

    def section(title: str, items: list[str]) -> None:
        if not items:
            return
        lines.append("")
        lines.append(title)
        lines.extend(f"- {item}" for item in items[:limit])
        if len(items) > limit:
            lines.append(f"  ... and {len(items) - limit} more")

    section(
        "Stale streams:",
        [f"{entry.stream_id}: {entry.title} ({entry.branch})" for entry in result.stale_streams],
    )
    section(
        "Orphaned worktrees:",
        [
            f"{worktree.branch} at {worktree.path}" + (" [added]" if worktree.added else "")
            for worktree in result.orphaned_worktrees
        ],
    )
    section("Errors:", [f"{error.stream_id}: {error.error}" for error in result.errors])
    section("Warnings:", result.warnings)

    return "\n".join(lines)
