"""
Stream mutation service.

All writes that change a stream go through StreamService so that the
HTTP API and the CLI share one set of rules:
- every mutation records a stream_history event
- archiving requires a completed stream; archiving twice is a no-op
- bulk operations report per-item results and never roll back
- the broadcaster is notified only when something actually changed
"""

import logging
import sqlite3
from pathlib import Path

from streamdash.core.db.connection import get_connection
from streamdash.core.db.models import (
    BulkArchiveItem,
    BulkArchiveResponse,
    Commit,
    CommitCreate,
    Stream,
    StreamCreate,
    StreamStatus,
    StreamUpdate,
    utc_now_iso,
)
from streamdash.core.db.queries import (
    add_history_event,
    get_stream,
    insert_commits,
    insert_stream,
    next_stream_number,
    touch_stream,
    update_stream_fields,
)
from streamdash.core.db.schema import normalize_status, validate_category, validate_priority
from streamdash.core.events.broadcaster import EventBroadcaster

logger = logging.getLogger(__name__)


class StreamError(Exception):
    """Base exception for stream operations."""

    pass


class StreamNotFoundError(StreamError):
    """Raised when a stream id does not exist."""

    def __init__(self, stream_id: str):
        super().__init__(f"Stream not found: {stream_id}")
        self.stream_id = stream_id


class StreamExistsError(StreamError):
    """Raised when registering an id that is already taken."""

    def __init__(self, stream_id: str):
        super().__init__(f"Stream already exists: {stream_id}")
        self.stream_id = stream_id


class InvalidTransitionError(StreamError):
    """Raised when a status change is not allowed from the current status."""

    pass


class InvalidStreamUpdateError(StreamError):
    """Raised when an update carries an invalid value."""

    pass


class StreamService:
    """
    Registers, updates and archives streams and records commits.

    Example:
        >>> service = StreamService(db_path, broadcaster)
        >>> service.register(StreamCreate(id="auth", title="Auth rework"))
        >>> service.update("auth", StreamUpdate(status="completed"))
        >>> service.archive("auth")
    """

    def __init__(self, db_path: Path, broadcaster: EventBroadcaster | None = None):
        self.db_path = Path(db_path)
        self.broadcaster = broadcaster

    def _notify(self, *event_types: str) -> None:
        if self.broadcaster is None:
            return
        for event_type in event_types:
            self.broadcaster.notify(event_type)

    def register(self, data: StreamCreate) -> Stream:
        """
        Register a new stream.

        Raises:
            StreamExistsError: If the id is already taken
        """
        with get_connection(self.db_path) as conn:
            if get_stream(conn, data.id) is not None:
                raise StreamExistsError(data.id)

            now = utc_now_iso()
            stream = Stream(
                id=data.id,
                stream_number=(
                    data.stream_number
                    if data.stream_number is not None
                    else next_stream_number(conn)
                ),
                title=data.title,
                status=data.status,
                category=data.category,
                priority=data.priority,
                worktree_path=data.worktree_path,
                branch=data.branch,
                created_at=now,
                updated_at=now,
                completed_at=now if data.status == StreamStatus.COMPLETED else None,
            )
            try:
                insert_stream(conn, stream)
            except sqlite3.IntegrityError as e:
                raise StreamExistsError(data.id) from e
            add_history_event(conn, stream.id, "created", None, stream.status.value)
            conn.commit()

        logger.info("Registered stream %s (%s)", stream.id, stream.title)
        self._notify("streams")
        return stream

    def get(self, stream_id: str) -> Stream:
        """
        Raises:
            StreamNotFoundError: If the stream doesn't exist
        """
        with get_connection(self.db_path) as conn:
            stream = get_stream(conn, stream_id)
        if stream is None:
            raise StreamNotFoundError(stream_id)
        return stream

    def update(self, stream_id: str, data: StreamUpdate) -> Stream:
        """
        Change status, title, category and/or priority of a stream.

        Status aliases (in_progress, in-progress) are accepted. Moving to
        completed stamps completed_at. Any status may be set here,
        including reviving an archived stream: this is the operator path.

        Raises:
            InvalidStreamUpdateError: If no field is given or a value is invalid
            StreamNotFoundError: If the stream doesn't exist
        """
        if data.is_empty():
            raise InvalidStreamUpdateError("No fields to update")

        fields: dict[str, str | None] = {}
        new_status: str | None = None
        try:
            if data.status is not None:
                new_status = normalize_status(data.status)
            if data.category is not None:
                validate_category(data.category)
                fields["category"] = data.category
            if data.priority is not None:
                validate_priority(data.priority)
                fields["priority"] = data.priority
        except ValueError as e:
            raise InvalidStreamUpdateError(str(e)) from e
        if data.title is not None:
            if not data.title.strip():
                raise InvalidStreamUpdateError("Title must not be empty")
            fields["title"] = data.title.strip()

        with get_connection(self.db_path) as conn:
            current = get_stream(conn, stream_id)
            if current is None:
                raise StreamNotFoundError(stream_id)

            old_status = current.status.value
            if new_status is not None and new_status != old_status:
                fields["status"] = new_status
                if new_status == StreamStatus.COMPLETED.value:
                    fields["completed_at"] = utc_now_iso()
                elif new_status != StreamStatus.ARCHIVED.value:
                    fields["completed_at"] = None

            if fields:
                update_stream_fields(conn, stream_id, **fields)
                if "status" in fields:
                    add_history_event(conn, stream_id, "status_changed", old_status, new_status)
                conn.commit()
            updated = get_stream(conn, stream_id)

        assert updated is not None
        if fields:
            logger.info("Updated stream %s: %s", stream_id, ", ".join(sorted(fields)))
            self._notify("streams")
        return updated

    def _archive_in(self, conn: sqlite3.Connection, stream_id: str) -> bool:
        """
        Archive one stream inside an open connection.

        Returns:
            True if the stream changed, False if it was already archived
        """
        stream = get_stream(conn, stream_id)
        if stream is None:
            raise StreamNotFoundError(stream_id)
        if stream.status == StreamStatus.ARCHIVED:
            return False
        if stream.status != StreamStatus.COMPLETED:
            raise InvalidTransitionError(
                f"Only completed streams can be archived; {stream_id} is {stream.status.value}"
            )
        update_stream_fields(conn, stream_id, status=StreamStatus.ARCHIVED.value)
        add_history_event(
            conn, stream_id, "archived", stream.status.value, StreamStatus.ARCHIVED.value
        )
        return True

    def archive(self, stream_id: str) -> tuple[Stream, bool]:
        """
        Archive a completed stream.

        Returns:
            (stream, already_archived)

        Raises:
            StreamNotFoundError: If the stream doesn't exist
            InvalidTransitionError: If the stream is not completed
        """
        with get_connection(self.db_path) as conn:
            changed = self._archive_in(conn, stream_id)
            conn.commit()
            stream = get_stream(conn, stream_id)

        assert stream is not None
        if changed:
            logger.info("Archived stream %s", stream_id)
            self._notify("streams")
        return stream, not changed

    def archive_bulk(self, stream_ids: list[str]) -> BulkArchiveResponse:
        """
        Archive several streams, reporting the outcome of each.

        Each stream is committed on its own, so one failure never undoes
        the others. One notification is sent if anything changed.
        """
        response = BulkArchiveResponse()

        with get_connection(self.db_path) as conn:
            for stream_id in stream_ids:
                try:
                    changed = self._archive_in(conn, stream_id)
                    conn.commit()
                except StreamError as e:
                    conn.rollback()
                    response.results.append(
                        BulkArchiveItem(stream_id=stream_id, success=False, error=str(e))
                    )
                    response.failed_count += 1
                    continue
                response.results.append(
                    BulkArchiveItem(stream_id=stream_id, success=True, already_archived=not changed)
                )
                if changed:
                    response.archived_count += 1

        if response.archived_count:
            logger.info(
                "Bulk archived %d stream(s), %d failed",
                response.archived_count,
                response.failed_count,
            )
            self._notify("streams")
        return response

    def record_commit(self, data: CommitCreate) -> bool:
        """
        Record one commit for a stream.

        Recording the same (stream_id, commit_hash) again is a no-op and
        sends no notification.

        Returns:
            True if the commit was new

        Raises:
            StreamNotFoundError: If the stream doesn't exist
        """
        commit = Commit(
            stream_id=data.stream_id,
            commit_hash=data.commit_hash,
            message=data.message,
            author=data.author,
            files_changed=data.files_changed,
            timestamp=data.timestamp or utc_now_iso(),
        )
        with get_connection(self.db_path) as conn:
            if get_stream(conn, data.stream_id) is None:
                raise StreamNotFoundError(data.stream_id)
            inserted = insert_commits(conn, [commit])
            if inserted:
                touch_stream(conn, data.stream_id)
            conn.commit()

        if inserted:
            logger.debug("Recorded commit %s for %s", data.commit_hash[:8], data.stream_id)
            self._notify("commits", "stats")
        return inserted > 0
