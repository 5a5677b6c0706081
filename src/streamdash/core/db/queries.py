"""
Database query functions for the streamdash store.

Provides the reads and writes used by the stream service, the scanner,
the reconciliation engine and the API, converting raw SQLite rows into
the Pydantic models of streamdash.core.db.models.

All functions take an open connection; callers own the transaction
(see get_connection()).
"""

import sqlite3
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from streamdash.core.db.models import (
    Commit,
    QuickStats,
    RecentActivity,
    Stream,
    StreamHistoryEvent,
    utc_now_iso,
)

STREAM_COLUMNS = (
    "id",
    "stream_number",
    "title",
    "status",
    "category",
    "priority",
    "worktree_path",
    "branch",
    "created_at",
    "updated_at",
    "completed_at",
)

UPDATABLE_STREAM_FIELDS = frozenset(
    {"title", "status", "category", "priority", "worktree_path", "branch", "completed_at"}
)


def row_to_stream(row: dict[str, Any]) -> Stream:
    """
    Convert a database row to a Stream model.

    Rows joined with the newest commit carry `last_commit_*` columns,
    which become the stream's recent_activity.
    """
    recent = None
    if row.get("last_commit_message") is not None:
        recent = RecentActivity(
            last_commit_message=row["last_commit_message"],
            files_changed=row.get("last_commit_files_changed") or 0,
            author=row.get("last_commit_author"),
            timestamp=row["last_commit_timestamp"],
        )
    return Stream(
        **{key: row[key] for key in STREAM_COLUMNS if key in row},
        recent_activity=recent,
    )


def row_to_commit(row: dict[str, Any]) -> Commit:
    """Convert a database row to a Commit model."""
    return Commit(**row)


# ----------------------------------------------------------------------------
# Streams
# ----------------------------------------------------------------------------


def next_stream_number(conn: sqlite3.Connection) -> int:
    """Return the next unused display number."""
    row = conn.execute("SELECT COALESCE(MAX(stream_number), 0) AS n FROM streams").fetchone()
    return int(row["n"]) + 1


def insert_stream(conn: sqlite3.Connection, stream: Stream) -> None:
    """
    Insert a stream row.

    Raises:
        sqlite3.IntegrityError: If a stream with the same id exists
    """
    placeholders = ",".join("?" * len(STREAM_COLUMNS))
    values = stream.model_dump(mode="json", include=set(STREAM_COLUMNS))
    conn.execute(
        f"INSERT INTO streams ({','.join(STREAM_COLUMNS)}) VALUES ({placeholders})",
        tuple(values[key] for key in STREAM_COLUMNS),
    )


def get_stream(conn: sqlite3.Connection, stream_id: str) -> Stream | None:
    """
    Get a single stream by id.

    Returns:
        Stream, or None if it doesn't exist
    """
    row = conn.execute("SELECT * FROM streams WHERE id = ?", (stream_id,)).fetchone()
    if row is None:
        return None
    return row_to_stream(row)


def list_streams(
    conn: sqlite3.Connection,
    *,
    status: str | None = None,
    category: str | None = None,
    priority: str | None = None,
    include_archived: bool = True,
    with_activity: bool = False,
) -> list[Stream]:
    """
    List streams, newest update first.

    Args:
        conn: SQLite connection
        status: Only streams with this status
        category: Only streams in this category
        priority: Only streams with this priority
        include_archived: Include archived streams (ignored when status is given)
        with_activity: Attach recent_activity from each stream's newest commit

    Returns:
        List of Stream models
    """
    select = "SELECT s.* FROM streams s"
    if with_activity:
        select = """
            SELECT s.*,
                   c.message AS last_commit_message,
                   c.files_changed AS last_commit_files_changed,
                   c.author AS last_commit_author,
                   c.timestamp AS last_commit_timestamp
            FROM streams s
            LEFT JOIN commits c ON c.id = (
                SELECT c2.id FROM commits c2
                WHERE c2.stream_id = s.id
                ORDER BY c2.timestamp DESC, c2.id DESC
                LIMIT 1
            )
        """

    clauses: list[str] = []
    params: list[Any] = []
    if status is not None:
        clauses.append("s.status = ?")
        params.append(status)
    elif not include_archived:
        clauses.append("s.status != 'archived'")
    if category is not None:
        clauses.append("s.category = ?")
        params.append(category)
    if priority is not None:
        clauses.append("s.priority = ?")
        params.append(priority)

    query = select
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY s.updated_at DESC, s.stream_number DESC"

    return [row_to_stream(row) for row in conn.execute(query, tuple(params)).fetchall()]


def update_stream_fields(conn: sqlite3.Connection, stream_id: str, **fields: Any) -> bool:
    """
    Update the given columns of a stream and touch updated_at.

    Returns:
        True if a row was updated

    Raises:
        ValueError: If a field is not an updatable column
    """
    unknown = set(fields) - UPDATABLE_STREAM_FIELDS
    if unknown:
        raise ValueError(f"Not updatable: {', '.join(sorted(unknown))}")

    assignments = [f"{key} = ?" for key in fields]
    params: list[Any] = list(fields.values())
    assignments.append("updated_at = ?")
    params.append(utc_now_iso())
    params.append(stream_id)

    cursor = conn.execute(
        f"UPDATE streams SET {', '.join(assignments)} WHERE id = ?",
        tuple(params),
    )
    return cursor.rowcount > 0


def touch_stream(conn: sqlite3.Connection, stream_id: str) -> None:
    """Set updated_at of a stream to now."""
    conn.execute("UPDATE streams SET updated_at = ? WHERE id = ?", (utc_now_iso(), stream_id))


# ----------------------------------------------------------------------------
# Commits
# ----------------------------------------------------------------------------


def insert_commits(conn: sqlite3.Connection, commits: Iterable[Commit]) -> int:
    """
    Insert commits, ignoring ones already stored for the same stream.

    Returns:
        Number of rows actually inserted
    """
    inserted = 0
    for commit in commits:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO commits
                (stream_id, commit_hash, message, author, files_changed, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                commit.stream_id,
                commit.commit_hash,
                commit.message,
                commit.author,
                commit.files_changed,
                commit.timestamp,
            ),
        )
        inserted += cursor.rowcount
    return inserted


def get_commit_hashes(conn: sqlite3.Connection, stream_id: str) -> set[str]:
    """Return the hashes already stored for a stream."""
    cursor = conn.execute("SELECT commit_hash FROM commits WHERE stream_id = ?", (stream_id,))
    return {row["commit_hash"] for row in cursor.fetchall()}


def get_recent_commits(
    conn: sqlite3.Connection,
    *,
    limit: int = 50,
    offset: int = 0,
    stream_id: str | None = None,
) -> list[Commit]:
    """
    Get commits across all streams (or one stream), newest first.

    Args:
        conn: SQLite connection
        limit: Page size
        offset: Rows to skip
        stream_id: Restrict to one stream
    """
    if stream_id is not None:
        return get_stream_commits(conn, stream_id, limit=limit, offset=offset)
    cursor = conn.execute(
        "SELECT * FROM commits ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?",
        (limit, offset),
    )
    return [row_to_commit(row) for row in cursor.fetchall()]


def get_stream_commits(
    conn: sqlite3.Connection, stream_id: str, *, limit: int = 50, offset: int = 0
) -> list[Commit]:
    """Get commits of one stream, newest first."""
    cursor = conn.execute(
        """
        SELECT * FROM commits
        WHERE stream_id = ?
        ORDER BY timestamp DESC, id DESC
        LIMIT ? OFFSET ?
        """,
        (stream_id, limit, offset),
    )
    return [row_to_commit(row) for row in cursor.fetchall()]


def count_commits(conn: sqlite3.Connection, stream_id: str | None = None) -> int:
    """Count stored commits, optionally for one stream."""
    if stream_id is None:
        row = conn.execute("SELECT COUNT(*) AS n FROM commits").fetchone()
    else:
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM commits WHERE stream_id = ?", (stream_id,)
        ).fetchone()
    return int(row["n"])


# ----------------------------------------------------------------------------
# History
# ----------------------------------------------------------------------------


def add_history_event(
    conn: sqlite3.Connection,
    stream_id: str,
    event_type: str,
    old_value: str | None = None,
    new_value: str | None = None,
) -> None:
    """Record one stream mutation."""
    conn.execute(
        """
        INSERT INTO stream_history (stream_id, event_type, old_value, new_value, timestamp)
        VALUES (?, ?, ?, ?, ?)
        """,
        (stream_id, event_type, old_value, new_value, utc_now_iso()),
    )


def get_stream_history(
    conn: sqlite3.Connection, stream_id: str, *, limit: int = 100
) -> list[StreamHistoryEvent]:
    """Get the mutation history of a stream, newest first."""
    cursor = conn.execute(
        """
        SELECT * FROM stream_history
        WHERE stream_id = ?
        ORDER BY timestamp DESC, id DESC
        LIMIT ?
        """,
        (stream_id, limit),
    )
    return [StreamHistoryEvent(**row) for row in cursor.fetchall()]


# ----------------------------------------------------------------------------
# Stats
# ----------------------------------------------------------------------------


def compute_quick_stats(conn: sqlite3.Connection, *, now: datetime | None = None) -> QuickStats:
    """
    Compute dashboard summary counters.

    "Today" starts at UTC midnight of `now`.
    """
    now = now or datetime.now(timezone.utc)
    midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    today = midnight.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    counts = {
        row["status"]: row["n"]
        for row in conn.execute(
            "SELECT status, COUNT(*) AS n FROM streams GROUP BY status"
        ).fetchall()
    }
    completed_today = conn.execute(
        "SELECT COUNT(*) AS n FROM streams WHERE completed_at IS NOT NULL AND completed_at >= ?",
        (today,),
    ).fetchone()["n"]
    commits_today = conn.execute(
        "SELECT COUNT(*) AS n FROM commits WHERE timestamp >= ?", (today,)
    ).fetchone()["n"]

    active_streams = sum(
        n for status, n in counts.items() if status not in ("completed", "archived")
    )

    return QuickStats(
        active_streams=active_streams,
        in_progress=counts.get("active", 0),
        blocked=counts.get("blocked", 0),
        ready=counts.get("ready", 0),
        completed_today=completed_today,
        total_commits=count_commits(conn),
        commits_today=commits_today,
    )
