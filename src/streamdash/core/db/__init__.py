"""
Persisted store for streamdash.

Single-file SQLite store holding streams, commits and stream history.
"""

from streamdash.core.db.connection import (
    StoreError,
    configure_connection,
    dict_factory,
    get_connection,
    init_db,
    verify_store,
)
from streamdash.core.db.schema import SCHEMA_VERSION, create_schema, normalize_status

__all__ = [
    "SCHEMA_VERSION",
    "StoreError",
    "configure_connection",
    "create_schema",
    "dict_factory",
    "get_connection",
    "init_db",
    "normalize_status",
    "verify_store",
]
