"""Database layer for the mail triage engine.

Usage:
    from mailtriage.db import DatabaseStore

    store = DatabaseStore("data/mailtriage.db")
    await store.initialize()
"""

from mailtriage.db.models import (
    REQUIRED_TABLES,
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from mailtriage.db.store import MAX_SNIPPET_LENGTH, DatabaseStore

__all__ = [
    # Models
    "REQUIRED_TABLES",
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "MAX_SNIPPET_LENGTH",
]
