"""
Database connection management for the streamdash store.

The connection module follows SQLite best practices:
- WAL mode for better concurrency
- Foreign key enforcement
- Row factory for dict-like access
- Context managers for safe transaction handling

Connections are short-lived: every operation opens one, does its work
and closes it, so the store can be shared by the API server and any
number of CLI invocations.

Usage:
    from streamdash.core.db import get_connection, init_db

    init_db(db_path)

    with get_connection(db_path) as conn:
        for row in conn.execute("SELECT * FROM streams WHERE status = ?", ("active",)):
            print(row["id"], row["title"])
"""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from streamdash.core.db.schema import create_schema, missing_tables, needs_migration

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the persisted store is missing, unreadable or corrupt."""

    pass


def dict_factory(cursor: sqlite3.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    """
    Row factory that returns rows as dictionaries.

    Enables dict-like access to query results: row["column_name"]
    instead of positional access: row[0].
    """
    fields = [column[0] for column in cursor.description]
    return dict(zip(fields, row))


def configure_connection(conn: sqlite3.Connection) -> None:
    """
    Configure a SQLite connection.

    Settings applied:
    - WAL mode: readers never block the writer
    - Foreign keys: Enforce referential integrity
    - busy_timeout: wait for a competing writer instead of failing
    - dict_factory: Enable dict-like row access
    """
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = dict_factory


def init_db(db_path: Path | str, *, force_recreate: bool = False) -> None:
    """
    Initialize the store.

    Creates the database file if it doesn't exist and applies the schema.

    Args:
        db_path: Path to the SQLite database file
        force_recreate: If True, delete existing database and recreate

    Example:
        >>> from pathlib import Path
        >>> import tempfile
        >>> with tempfile.TemporaryDirectory() as tmpdir:
        ...     db_path = Path(tmpdir) / "streams.db"
        ...     init_db(db_path)
        ...     assert db_path.exists()
    """
    db_path = Path(db_path)

    if force_recreate and db_path.exists():
        db_path.unlink()

    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    try:
        configure_connection(conn)
        if needs_migration(conn):
            logger.info("Creating store schema at %s", db_path)
            create_schema(conn)
    finally:
        conn.close()


def verify_store(db_path: Path | str) -> None:
    """
    Verify that the store exists and is usable.

    Unlike get_connection(), this never creates anything: the server
    must not start on top of a missing or damaged store.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        StoreError: If the file is missing, unreadable, fails the
            integrity check, or lacks the streamdash schema
    """
    db_path = Path(db_path)
    if not db_path.is_file():
        raise StoreError(f"Store not found at {db_path}. Run 'streamdash init' first.")

    try:
        conn = sqlite3.connect(f"file:{db_path}?mode=rw", uri=True)
    except sqlite3.Error as e:
        raise StoreError(f"Cannot open store at {db_path}: {e}") from e

    try:
        configure_connection(conn)
        check = conn.execute("PRAGMA quick_check").fetchone()
        if check is None or check.get("quick_check") != "ok":
            raise StoreError(f"Store at {db_path} failed integrity check: {check}")
        missing = missing_tables(conn)
        if missing:
            raise StoreError(
                f"Store at {db_path} is missing tables: {', '.join(missing)}"
            )
    except sqlite3.DatabaseError as e:
        raise StoreError(f"Store at {db_path} is corrupt: {e}") from e
    finally:
        conn.close()


@contextmanager
def get_connection(db_path: Path | str) -> Iterator[sqlite3.Connection]:
    """
    Get a database connection as a context manager.

    The connection is automatically closed when the context exits.
    If an exception occurs, the transaction is rolled back.

    Args:
        db_path: Path to the SQLite database file

    Yields:
        Configured SQLite connection
    """
    db_path = Path(db_path)

    if not db_path.exists():
        init_db(db_path)

    conn = sqlite3.connect(str(db_path))
    configure_connection(conn)

    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
