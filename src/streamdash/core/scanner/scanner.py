"""
Periodic commit scanner.

Each pass reads the commit log of every non-archived stream that has a
worktree, stores the commits not seen before and touches the stream.
Observers are notified only when a pass actually inserted something.

The scanner has two states, idle and scanning. A trigger that arrives
while a pass is running is dropped, not queued: the next tick catches
whatever it would have found.

Usage:
    scanner = CommitScanner(db_path, inspector, broadcaster, interval=60.0)
    scanner.start()          # inside a running event loop
    ...
    await scanner.stop()     # waits for an in-flight pass
"""

import asyncio
import logging
import sqlite3
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from streamdash.core.db.connection import get_connection
from streamdash.core.db.models import Commit, Stream
from streamdash.core.db.queries import (
    get_commit_hashes,
    get_stream,
    insert_commits,
    list_streams,
    touch_stream,
)
from streamdash.core.events.broadcaster import EventBroadcaster
from streamdash.core.streams.service import StreamNotFoundError
from streamdash.core.worktree.inspector import CommitRecord, InspectionError, WorktreeInspector

logger = logging.getLogger(__name__)

IDLE = "idle"
SCANNING = "scanning"


@dataclass
class ScanResult:
    """Counters of one scan pass."""

    scanned: int = 0
    commits_added: int = 0
    errors: int = 0
    failed_streams: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CommitScanner:
    """
    Ingests worktree commits into the store on a fixed interval.

    Git work runs in a worker thread; store work stays on the event loop.
    """

    def __init__(
        self,
        db_path: Path,
        inspector: WorktreeInspector,
        broadcaster: EventBroadcaster | None = None,
        interval: float = 60.0,
    ):
        self.db_path = Path(db_path)
        self.inspector = inspector
        self.broadcaster = broadcaster
        self.interval = interval

        self._scanning = False
        self._task: asyncio.Task[None] | None = None
        self._current: asyncio.Future[ScanResult | None] | None = None
        self.last_result: ScanResult | None = None

    @property
    def state(self) -> str:
        return SCANNING if self._scanning else IDLE

    @property
    def running(self) -> bool:
        """Whether the interval loop is scheduled."""
        return self._task is not None and not self._task.done()

    async def trigger(self) -> ScanResult | None:
        """
        Run one pass over all eligible streams.

        Returns:
            ScanResult, or None if a pass was already running
        """
        with get_connection(self.db_path) as conn:
            streams = [
                stream
                for stream in list_streams(conn, include_archived=False)
                if stream.worktree_path
            ]
        return await self._guarded(streams)

    async def scan_stream(self, stream_id: str) -> ScanResult | None:
        """
        Run one pass over a single stream.

        Returns:
            ScanResult, or None if a pass was already running

        Raises:
            StreamNotFoundError: If the stream doesn't exist
        """
        with get_connection(self.db_path) as conn:
            stream = get_stream(conn, stream_id)
        if stream is None:
            raise StreamNotFoundError(stream_id)
        return await self._guarded([stream] if stream.worktree_path else [])

    async def _guarded(self, streams: list[Stream]) -> ScanResult | None:
        if self._scanning:
            logger.debug("Scan already in progress; trigger dropped")
            return None

        self._scanning = True
        try:
            result = await self._run_pass(streams)
        finally:
            self._scanning = False

        self.last_result = result
        if result.commits_added > 0 and self.broadcaster is not None:
            self.broadcaster.notify("commits", commits_added=result.commits_added)
            self.broadcaster.notify("stats")
        return result

    async def _run_pass(self, streams: list[Stream]) -> ScanResult:
        result = ScanResult()
        started = time.monotonic()

        for stream in streams:
            assert stream.worktree_path is not None
            try:
                records = await asyncio.to_thread(
                    self.inspector.commits_since, stream.worktree_path
                )
            except (InspectionError, OSError) as e:
                logger.warning("Skipping stream %s: %s", stream.id, e)
                result.errors += 1
                result.failed_streams.append(stream.id)
                continue

            try:
                added = self._ingest(stream.id, records)
            except sqlite3.Error as e:
                logger.warning("Could not store commits of stream %s: %s", stream.id, e)
                result.errors += 1
                result.failed_streams.append(stream.id)
                continue

            result.scanned += 1
            result.commits_added += added

        result.duration_seconds = round(time.monotonic() - started, 3)
        if result.commits_added:
            logger.info(
                "Scan added %d commit(s) across %d stream(s)",
                result.commits_added,
                result.scanned,
            )
        else:
            logger.debug("Scan found no new commits (%d stream(s))", result.scanned)
        return result

    def _ingest(self, stream_id: str, records: list[CommitRecord]) -> int:
        """Store the records not yet known for the stream; returns rows inserted."""
        if not records:
            return 0
        with get_connection(self.db_path) as conn:
            known = get_commit_hashes(conn, stream_id)
            new = [
                Commit(stream_id=stream_id, **record.to_dict())
                for record in records
                if record.commit_hash not in known
            ]
            if not new:
                return 0
            inserted = insert_commits(conn, new)
            if inserted:
                touch_stream(conn, stream_id)
            conn.commit()
        return inserted

    def start(self, run_immediately: bool = True) -> None:
        """Schedule the interval loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(run_immediately))
        logger.info("Commit scanner started (every %.0fs)", self.interval)

    async def _loop(self, run_immediately: bool) -> None:
        if run_immediately:
            await self._tick()
        while True:
            await asyncio.sleep(self.interval)
            await self._tick()

    async def _tick(self) -> None:
        self._current = asyncio.ensure_future(self.trigger())
        try:
            # Shielded so that stop() lets an in-flight pass finish
            await asyncio.shield(self._current)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scan pass failed")

    async def stop(self) -> None:
        """Cancel the interval timer and wait for an in-flight pass."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._current is not None and not self._current.done():
            try:
                await self._current
            except Exception:
                logger.exception("Scan pass failed during shutdown")
        self._current = None
        logger.info("Commit scanner stopped")
