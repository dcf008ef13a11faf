"""Database layer for follow-up triage.

This module provides SQLite database access with async operations.

Usage:
    from followup.db import DatabaseStore

    store = DatabaseStore("data/followup.db")
    await store.initialize()

    item_id, created = await store.create_followup_item(item)
    items = await store.find_followup_items(statuses=["ACTIVE"])
"""

from followup.db.models import (
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from followup.db.store import (
    DatabaseStore,
    LearningRecord,
    StoredClassification,
    VIPContact,
)

__all__ = [
    "SCHEMA_VERSION",
    "DatabaseStore",
    "LearningRecord",
    "StoredClassification",
    "VIPContact",
    "init_database",
    "verify_schema",
]
