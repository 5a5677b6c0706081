"""
SQLite schema for the streamdash store.

Schema Design:
- streams: One row per stream of work (usually one per worktree/branch)
- commits: Commits ingested from stream worktrees, unique per stream
- stream_history: Audit trail of stream mutations
- schema_info: Version tracking for migrations

Stream statuses:
- initializing: Registered, no work observed yet
- active: Work in progress
- blocked: Waiting on something outside the stream
- ready: Ready for review/merge
- completed: Merged or otherwise done
- archived: Retired; never touched by automation again
"""

import sqlite3

# Schema version for migrations
SCHEMA_VERSION = 1

STREAM_STATUSES = [
    "initializing",
    "active",
    "blocked",
    "ready",
    "completed",
    "archived",
]

STREAM_CATEGORIES = [
    "frontend",
    "backend",
    "infrastructure",
    "testing",
    "documentation",
    "refactoring",
    "general",
]

STREAM_PRIORITIES = [
    "critical",
    "high",
    "medium",
    "low",
]

HISTORY_EVENT_TYPES = [
    "created",
    "status_changed",
    "archived",
]

# Input aliases accepted for statuses
STATUS_ALIASES = {
    "in_progress": "active",
    "in-progress": "active",
}

REQUIRED_TABLES = ("schema_info", "streams", "commits", "stream_history")


SCHEMA_DDL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_info (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    description TEXT
);

-- Streams of work
CREATE TABLE IF NOT EXISTS streams (
    id TEXT PRIMARY KEY,
    stream_number INTEGER NOT NULL DEFAULT 0,
    title TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'initializing'
        CHECK(status IN ('initializing', 'active', 'blocked', 'ready',
                         'completed', 'archived')),
    category TEXT NOT NULL DEFAULT 'general'
        CHECK(category IN ('frontend', 'backend', 'infrastructure', 'testing',
                           'documentation', 'refactoring', 'general')),
    priority TEXT NOT NULL DEFAULT 'medium'
        CHECK(priority IN ('critical', 'high', 'medium', 'low')),
    worktree_path TEXT,
    branch TEXT,

    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);

-- Commits observed in stream worktrees
CREATE TABLE IF NOT EXISTS commits (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    stream_id TEXT NOT NULL,
    commit_hash TEXT NOT NULL,
    message TEXT NOT NULL,
    author TEXT,
    files_changed INTEGER NOT NULL DEFAULT 0,
    timestamp TEXT NOT NULL,

    FOREIGN KEY (stream_id) REFERENCES streams(id) ON DELETE CASCADE,

    -- Re-ingesting the same commit is a no-op
    UNIQUE(stream_id, commit_hash)
);

-- Stream mutation history
CREATE TABLE IF NOT EXISTS stream_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    stream_id TEXT NOT NULL,
    event_type TEXT NOT NULL CHECK(event_type IN ('created', 'status_changed', 'archived')),
    old_value TEXT,
    new_value TEXT,
    timestamp TEXT NOT NULL,

    FOREIGN KEY (stream_id) REFERENCES streams(id) ON DELETE CASCADE
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_streams_status ON streams(status);
CREATE INDEX IF NOT EXISTS idx_streams_category ON streams(category);
CREATE INDEX IF NOT EXISTS idx_streams_priority ON streams(priority);
CREATE INDEX IF NOT EXISTS idx_streams_updated ON streams(updated_at DESC);

CREATE INDEX IF NOT EXISTS idx_commits_stream ON commits(stream_id);
CREATE INDEX IF NOT EXISTS idx_commits_timestamp ON commits(timestamp DESC);

CREATE INDEX IF NOT EXISTS idx_history_stream ON stream_history(stream_id);
CREATE INDEX IF NOT EXISTS idx_history_timestamp ON stream_history(timestamp DESC);
"""


def create_schema(conn: sqlite3.Connection) -> None:
    """
    Create the database schema.

    Executes all DDL statements to create tables and indexes.
    This is idempotent - safe to call multiple times.

    Args:
        conn: SQLite database connection

    Example:
        >>> import sqlite3
        >>> conn = sqlite3.connect(":memory:")
        >>> create_schema(conn)
        >>> cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        >>> tables = [row[0] for row in cursor.fetchall()]
        >>> assert "streams" in tables
        >>> assert "commits" in tables
    """
    conn.executescript(SCHEMA_DDL)

    conn.execute(
        """
        INSERT OR REPLACE INTO schema_info (version, description)
        VALUES (?, ?)
        """,
        (SCHEMA_VERSION, "Initial schema with streams, commits, and stream history"),
    )

    conn.commit()


def get_schema_version(conn: sqlite3.Connection) -> int | None:
    """
    Get the current schema version from the database.

    Returns:
        Current schema version, or None if schema_info table doesn't exist
    """
    try:
        cursor = conn.execute("SELECT MAX(version) AS version FROM schema_info")
        row = cursor.fetchone()
    except sqlite3.OperationalError:
        # schema_info table doesn't exist
        return None
    if row is None:
        return None
    value = row["version"] if isinstance(row, dict) else row[0]
    return int(value) if value is not None else None


def needs_migration(conn: sqlite3.Connection) -> bool:
    """
    Check if database needs migration to current schema version.

    Example:
        >>> import sqlite3
        >>> conn = sqlite3.connect(":memory:")
        >>> assert needs_migration(conn) is True  # No schema yet
        >>> create_schema(conn)
        >>> assert needs_migration(conn) is False  # Up to date
    """
    current_version = get_schema_version(conn)
    if current_version is None:
        return True
    return current_version < SCHEMA_VERSION


def missing_tables(conn: sqlite3.Connection) -> list[str]:
    """Return the required tables that are absent from the database."""
    cursor = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    present = {row["name"] if isinstance(row, dict) else row[0] for row in cursor.fetchall()}
    return [name for name in REQUIRED_TABLES if name not in present]


def normalize_status(status: str) -> str:
    """
    Map a status string (including aliases) to its canonical value.

    Raises:
        ValueError: If the status is not a known status or alias

    Example:
        >>> normalize_status("in-progress")
        'active'
    """
    value = status.strip().lower()
    value = STATUS_ALIASES.get(value, value)
    if value not in STREAM_STATUSES:
        raise ValueError(
            f"Invalid status: {status}. Must be one of: {', '.join(STREAM_STATUSES)}"
        )
    return value


def validate_category(category: str) -> None:
    """
    Validate that category is one of the allowed categories.

    Raises:
        ValueError: If category is invalid
    """
    if category not in STREAM_CATEGORIES:
        raise ValueError(
            f"Invalid category: {category}. Must be one of: {', '.join(STREAM_CATEGORIES)}"
        )


def validate_priority(priority: str) -> None:
    """
    Validate that priority is one of the allowed priorities.

    Raises:
        ValueError: If priority is invalid
    """
    if priority not in STREAM_PRIORITIES:
        raise ValueError(
            f"Invalid priority: {priority}. Must be one of: {', '.join(STREAM_PRIORITIES)}"
        )
