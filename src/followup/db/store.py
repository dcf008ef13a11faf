"""Database store with CRUD operations for all tables.

DatabaseStore encapsulates every SQLite operation: the follow-up queue and
its audit log, the learning log, the VIP registry, the TTL cache and agent
state. It uses aiosqlite and opens a configured connection per operation, so
separate invocations can share one database file.

Writes to follow-up items are optimistic: each row carries a version and an
update only applies when the version the caller read is still current.

Usage:
    from followup.db.store import DatabaseStore

    store = DatabaseStore("data/followup.db")
    await store.initialize()

    item_id, created = await store.create_followup_item(item)
    await store.cache_set("learning_model", model_dict, ttl_seconds=3600)
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite

from followup.core.errors import ConflictError, DatabaseError
from followup.core.logging import get_correlation_id, get_logger
from followup.db.models import init_database
from followup.engine.models import FollowUpItem, QueueAction, QueueHistoryEntry

logger = get_logger(__name__)

# Body text kept per learning record (keyword mining only needs a prefix)
MAX_BODY_EXCERPT = 2000

_ITEM_COLUMNS = (
    "id",
    "email_id",
    "thread_id",
    "subject",
    "sender",
    "received_at",
    "priority",
    "category",
    "labels_json",
    "reason",
    "status",
    "added_to_queue_at",
    "snoozed_until",
    "last_action_date",
    "sla_deadline",
    "sla_status",
    "action_count",
    "snooze_count",
    "is_vip",
    "vip_tier",
    "confidence",
    "ai_reasoning",
    "notes",
    "completed_at",
    "version",
)


@dataclass
class VIPContact:
    """VIP registry record."""

    email: str
    tier: int
    name: str = ""
    auto_draft: bool = False
    sla_hours: float | None = None
    notes: str | None = None
    added_at: datetime | None = None


@dataclass
class LearningRecord:
    """Learning log record (JSON payloads kept as dicts)."""

    id: int
    event_id: str
    email_id: str
    classification: dict[str, Any]
    outcome: str
    timestamp: datetime
    feedback: dict[str, Any] | None = None
    feedback_type: str | None = None
    subject: str | None = None
    sender: str | None = None
    body_excerpt: str | None = None


@dataclass(frozen=True, slots=True)
class StoredClassification:
    """Latest classification of an email, kept so feedback can refer to it."""

    email_id: str
    thread_id: str | None
    subject: str | None
    sender: str | None
    body_excerpt: str | None
    result: dict[str, Any]
    method: str
    classified_at: datetime | None


def _now() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    """UTC ISO text, so stored timestamps compare correctly as strings."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class DatabaseStore:
    """Database store for all follow-up triage data.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        - busy_timeout: 10s for concurrent invocations on one file
        - foreign_keys: ON to enforce referential integrity
        - synchronous: NORMAL (safe with WAL, faster writes)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Follow-up Items
    # =========================================================================

    async def create_followup_item(self, item: FollowUpItem) -> tuple[str, bool]:
        """Insert a follow-up item unless an open one exists for its email.

        The partial unique index on open items makes this safe across
        concurrent invocations.

        Returns:
            (item_id, created): the new ID and True, or the existing open
            item's ID and False
        """
        values = self._item_values(item)
        placeholders = ", ".join("?" for _ in _ITEM_COLUMNS)
        try:
            async with self._db() as db:
                try:
                    await db.execute(
                        f"INSERT INTO followup_items ({', '.join(_ITEM_COLUMNS)}) "
                        f"VALUES ({placeholders})",
                        values,
                    )
                    await db.commit()
                    return item.id, True
                except aiosqlite.IntegrityError:
                    await db.rollback()
                    cursor = await db.execute(
                        """
                        SELECT id FROM followup_items
                        WHERE email_id = ? AND status NOT IN ('COMPLETED', 'ARCHIVED')
                        """,
                        (item.email_id,),
                    )
                    row = await cursor.fetchone()
                    if row is None:
                        raise
                    return row["id"], False

        except aiosqlite.Error as e:
            logger.error("followup_create_failed", email_id=item.email_id, error=str(e))
            raise DatabaseError(f"Failed to create follow-up item: {e}") from e

    async def get_followup_item(self, item_id: str) -> FollowUpItem | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM followup_items WHERE id = ?", (item_id,))
                row = await cursor.fetchone()
                return self._row_to_item(row) if row else None

        except aiosqlite.Error as e:
            logger.error("followup_get_failed", item_id=item_id, error=str(e))
            raise DatabaseError(f"Failed to get follow-up item: {e}") from e

    async def get_open_item_by_email(self, email_id: str) -> FollowUpItem | None:
        """Get the open (non-terminal) item for an email, if any."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM followup_items
                    WHERE email_id = ? AND status NOT IN ('COMPLETED', 'ARCHIVED')
                    LIMIT 1
                    """,
                    (email_id,),
                )
                row = await cursor.fetchone()
                return self._row_to_item(row) if row else None

        except aiosqlite.Error as e:
            logger.error("followup_get_by_email_failed", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to get follow-up item by email: {e}") from e

    async def find_followup_items(
        self,
        statuses: list[str] | None = None,
        priority: str | None = None,
        reason: str | None = None,
        limit: int | None = None,
    ) -> list[FollowUpItem]:
        """Find items, most severe priority first, then earliest deadline.

        Args:
            statuses: Restrict to these statuses (None = all)
            priority: Restrict to one priority
            reason: Restrict to one reason
            limit: Maximum rows
        """
        clauses: list[str] = []
        params: list[Any] = []
        if statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if priority:
            clauses.append("priority = ?")
            params.append(priority)
        if reason:
            clauses.append("reason = ?")
            params.append(reason)

        sql = "SELECT * FROM followup_items"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += """
            ORDER BY CASE priority
                WHEN 'CRITICAL' THEN 0 WHEN 'HIGH' THEN 1
                WHEN 'MEDIUM' THEN 2 ELSE 3 END,
            sla_deadline IS NULL, sla_deadline ASC, added_to_queue_at ASC
        """
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        try:
            async with self._db() as db:
                cursor = await db.execute(sql, params)
                rows = await cursor.fetchall()
                return [self._row_to_item(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("followup_find_failed", error=str(e))
            raise DatabaseError(f"Failed to find follow-up items: {e}") from e

    async def get_due_snoozed_items(self, now: datetime) -> list[FollowUpItem]:
        """Get SNOOZED items whose wake time has passed."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM followup_items
                    WHERE status = 'SNOOZED' AND snoozed_until <= ?
                    ORDER BY snoozed_until ASC
                    """,
                    (_iso(now),),
                )
                rows = await cursor.fetchall()
                return [self._row_to_item(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("followup_due_snoozed_failed", error=str(e))
            raise DatabaseError(f"Failed to get due snoozed items: {e}") from e

    async def save_followup_item(self, item: FollowUpItem) -> FollowUpItem:
        """Write an item back if nobody else changed it since it was read.

        Args:
            item: Item with ``version`` equal to the version that was read

        Returns:
            The item with its version incremented

        Raises:
            ConflictError: The row's version moved on (lost race)
            DatabaseError: On SQLite failure
        """
        columns = [c for c in _ITEM_COLUMNS if c not in ("id", "version")]
        updated = replace(item, version=item.version + 1)
        values = dict(zip(_ITEM_COLUMNS, self._item_values(updated), strict=True))
        assignments = ", ".join(f"{c} = ?" for c in columns)
        params = [values[c] for c in columns] + [updated.version, item.id, item.version]

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"UPDATE followup_items SET {assignments}, version = ? "
                    "WHERE id = ? AND version = ?",
                    params,
                )
                await db.commit()
                if cursor.rowcount == 0:
                    raise ConflictError(
                        f"Follow-up item {item.id} changed since version {item.version}",
                        resource_id=item.id,
                    )
                return updated

        except aiosqlite.Error as e:
            logger.error("followup_save_failed", item_id=item.id, error=str(e))
            raise DatabaseError(f"Failed to save follow-up item: {e}") from e

    async def get_queue_counts(self) -> dict[str, dict[str, int]]:
        """Item counts grouped by status, priority, reason and SLA status."""
        counts: dict[str, dict[str, int]] = {}
        try:
            async with self._db() as db:
                for column in ("status", "priority", "reason", "sla_status"):
                    cursor = await db.execute(
                        f"SELECT {column} AS k, COUNT(*) AS n FROM followup_items GROUP BY {column}"
                    )
                    counts[column] = {row["k"]: row["n"] for row in await cursor.fetchall()}

                cursor = await db.execute(
                    """
                    SELECT AVG(snooze_count) AS avg_snoozes,
                           AVG(action_count) AS avg_actions
                    FROM followup_items
                    """
                )
                row = await cursor.fetchone()
                counts["averages"] = {
                    "snooze_count": row["avg_snoozes"] or 0,
                    "action_count": row["avg_actions"] or 0,
                }
                return counts

        except aiosqlite.Error as e:
            logger.error("queue_counts_failed", error=str(e))
            raise DatabaseError(f"Failed to get queue counts: {e}") from e

    async def count_completed_since(self, since: datetime) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT COUNT(*) AS n FROM followup_items
                    WHERE status = 'COMPLETED' AND completed_at >= ?
                    """,
                    (_iso(since),),
                )
                row = await cursor.fetchone()
                return row["n"]

        except aiosqlite.Error as e:
            logger.error("completed_count_failed", error=str(e))
            raise DatabaseError(f"Failed to count completed items: {e}") from e

    def _item_values(self, item: FollowUpItem) -> tuple[Any, ...]:
        return (
            item.id,
            item.email_id,
            item.thread_id,
            item.subject,
            item.sender,
            _iso(item.received_at),
            item.priority,
            item.category,
            json.dumps(list(item.labels)),
            item.reason,
            item.status,
            _iso(item.added_to_queue_at),
            _iso(item.snoozed_until),
            _iso(item.last_action_date),
            _iso(item.sla_deadline),
            item.sla_status,
            item.action_count,
            item.snooze_count,
            1 if item.is_vip else 0,
            item.vip_tier,
            item.confidence,
            item.ai_reasoning,
            item.notes,
            _iso(item.completed_at),
            item.version,
        )

    def _row_to_item(self, row: aiosqlite.Row) -> FollowUpItem:
        """Convert a database row to a FollowUpItem dataclass."""
        return FollowUpItem(
            id=row["id"],
            email_id=row["email_id"],
            thread_id=row["thread_id"] or row["email_id"],
            subject=row["subject"] or "",
            sender=row["sender"] or "",
            received_at=_parse_dt(row["received_at"]),
            priority=row["priority"],
            category=row["category"] or "",
            labels=json.loads(row["labels_json"]) if row["labels_json"] else [],
            reason=row["reason"],
            status=row["status"],
            added_to_queue_at=_parse_dt(row["added_to_queue_at"]),
            snoozed_until=_parse_dt(row["snoozed_until"]),
            last_action_date=_parse_dt(row["last_action_date"]),
            sla_deadline=_parse_dt(row["sla_deadline"]),
            sla_status=row["sla_status"] or "ON_TIME",
            action_count=row["action_count"] or 0,
            snooze_count=row["snooze_count"] or 0,
            is_vip=bool(row["is_vip"]),
            vip_tier=row["vip_tier"],
            confidence=row["confidence"],
            ai_reasoning=row["ai_reasoning"],
            notes=row["notes"],
            completed_at=_parse_dt(row["completed_at"]),
            version=row["version"],
        )

    # =========================================================================
    # Queue History
    # =========================================================================

    async def add_history(
        self,
        item_id: str,
        action: QueueAction,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append a queue audit log entry."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO queue_history (item_id, action, timestamp, details_json, run_id)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        item_id,
                        action,
                        _now().isoformat(),
                        json.dumps(details or {}, default=str),
                        get_correlation_id(),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("queue_history_write_failed", item_id=item_id, error=str(e))
            raise DatabaseError(f"Failed to write queue history: {e}") from e

    async def get_history(self, item_id: str) -> list[QueueHistoryEntry]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM queue_history WHERE item_id = ? ORDER BY id ASC",
                    (item_id,),
                )
                rows = await cursor.fetchall()
                return [
                    QueueHistoryEntry(
                        id=row["id"],
                        item_id=row["item_id"],
                        action=row["action"],
                        timestamp=_parse_dt(row["timestamp"]),
                        details=json.loads(row["details_json"]) if row["details_json"] else {},
                    )
                    for row in rows
                ]

        except aiosqlite.Error as e:
            logger.error("queue_history_read_failed", item_id=item_id, error=str(e))
            raise DatabaseError(f"Failed to read queue history: {e}") from e

    # =========================================================================
    # Learning Log
    # =========================================================================

    async def insert_learning_record(
        self,
        event_id: str,
        email_id: str,
        classification: dict[str, Any],
        outcome: str,
        feedback: dict[str, Any] | None = None,
        subject: str | None = None,
        sender: str | None = None,
        body: str | None = None,
        timestamp: datetime | None = None,
    ) -> bool:
        """Append a learning record (idempotent on event_id).

        Returns:
            True if inserted, False if this event_id was already recorded
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO learning_log (
                        event_id, email_id, classification_json, feedback_json,
                        feedback_type, outcome, subject, sender, body_excerpt, timestamp
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event_id,
                        email_id,
                        json.dumps(classification),
                        json.dumps(feedback) if feedback is not None else None,
                        feedback.get("feedback_type") if feedback else None,
                        outcome,
                        subject,
                        sender,
                        (body or "")[:MAX_BODY_EXCERPT],
                        _iso(timestamp or _now()),
                    ),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("learning_record_insert_failed", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to insert learning record: {e}") from e

    async def get_recent_learning_records(self, limit: int = 1000) -> list[LearningRecord]:
        """Most recent learning records, newest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM learning_log ORDER BY timestamp DESC, id DESC LIMIT ?",
                    (limit,),
                )
                rows = await cursor.fetchall()
                return [self._row_to_learning_record(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("learning_records_read_failed", error=str(e))
            raise DatabaseError(f"Failed to read learning records: {e}") from e

    async def get_learning_records_since(self, since: datetime) -> list[LearningRecord]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM learning_log WHERE timestamp >= ? ORDER BY timestamp ASC",
                    (_iso(since),),
                )
                rows = await cursor.fetchall()
                return [self._row_to_learning_record(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("learning_records_read_failed", error=str(e))
            raise DatabaseError(f"Failed to read learning records: {e}") from e

    async def get_feedback_counts(self) -> dict[str, int]:
        """Number of learning records per feedback type ('NONE' for no feedback)."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT COALESCE(feedback_type, 'NONE') AS k, COUNT(*) AS n
                    FROM learning_log GROUP BY k
                    """
                )
                return {row["k"]: row["n"] for row in await cursor.fetchall()}

        except aiosqlite.Error as e:
            logger.error("feedback_counts_failed", error=str(e))
            raise DatabaseError(f"Failed to count feedback: {e}") from e

    def _row_to_learning_record(self, row: aiosqlite.Row) -> LearningRecord:
        return LearningRecord(
            id=row["id"],
            event_id=row["event_id"],
            email_id=row["email_id"],
            classification=json.loads(row["classification_json"]),
            feedback=json.loads(row["feedback_json"]) if row["feedback_json"] else None,
            feedback_type=row["feedback_type"],
            outcome=row["outcome"],
            subject=row["subject"],
            sender=row["sender"],
            body_excerpt=row["body_excerpt"],
            timestamp=_parse_dt(row["timestamp"]),
        )

    # =========================================================================
    # VIP Contacts
    # =========================================================================

    async def upsert_vip(self, contact: VIPContact) -> bool:
        """Insert or update a VIP contact keyed by its normalized email.

        Returns:
            True if a new contact was created, False if an existing one was updated
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT 1 FROM vip_contacts WHERE email = ?", (contact.email,)
                )
                exists = await cursor.fetchone() is not None
                await db.execute(
                    """
                    INSERT INTO vip_contacts (
                        email, name, tier, auto_draft, sla_hours, notes, added_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(email) DO UPDATE SET
                        name = excluded.name,
                        tier = excluded.tier,
                        auto_draft = excluded.auto_draft,
                        sla_hours = excluded.sla_hours,
                        notes = excluded.notes
                    """,
                    (
                        contact.email,
                        contact.name,
                        contact.tier,
                        1 if contact.auto_draft else 0,
                        contact.sla_hours,
                        contact.notes,
                        _iso(contact.added_at or _now()),
                    ),
                )
                await db.commit()
                return not exists

        except aiosqlite.Error as e:
            logger.error("vip_upsert_failed", error=str(e))
            raise DatabaseError(f"Failed to save VIP contact: {e}") from e

    async def delete_vip(self, email: str) -> bool:
        """Remove a VIP contact. Returns False if it wasn't there."""
        try:
            async with self._db() as db:
                cursor = await db.execute("DELETE FROM vip_contacts WHERE email = ?", (email,))
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("vip_delete_failed", error=str(e))
            raise DatabaseError(f"Failed to delete VIP contact: {e}") from e

    async def list_vips(self) -> list[VIPContact]:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM vip_contacts ORDER BY tier, email")
                rows = await cursor.fetchall()
                return [
                    VIPContact(
                        email=row["email"],
                        name=row["name"] or "",
                        tier=row["tier"],
                        auto_draft=bool(row["auto_draft"]),
                        sla_hours=row["sla_hours"],
                        notes=row["notes"],
                        added_at=_parse_dt(row["added_at"]),
                    )
                    for row in rows
                ]

        except aiosqlite.Error as e:
            logger.error("vip_list_failed", error=str(e))
            raise DatabaseError(f"Failed to list VIP contacts: {e}") from e

    # =========================================================================
    # Cache
    # =========================================================================

    async def cache_get(self, key: str, now: datetime | None = None) -> Any | None:
        """Get a cached value, or None if missing or expired."""
        now = now or _now()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT value_json, expires_at FROM cache_entries WHERE key = ?", (key,)
                )
                row = await cursor.fetchone()
                if row is None:
                    return None
                if _parse_dt(row["expires_at"]) <= now:
                    await db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                    await db.commit()
                    return None
                return json.loads(row["value_json"])

        except aiosqlite.Error as e:
            logger.error("cache_get_failed", key=key, error=str(e))
            raise DatabaseError(f"Failed to read cache entry: {e}") from e

    async def cache_set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Store a JSON-serializable value for ttl_seconds."""
        expires_at = _now() + timedelta(seconds=ttl_seconds)
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO cache_entries (key, value_json, expires_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value_json = excluded.value_json,
                        expires_at = excluded.expires_at
                    """,
                    (key, json.dumps(value), expires_at.isoformat()),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("cache_set_failed", key=key, error=str(e))
            raise DatabaseError(f"Failed to write cache entry: {e}") from e

    async def cache_invalidate(self, prefix: str) -> int:
        """Delete every cache entry whose key starts with prefix.

        Returns:
            Number of entries removed
        """
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM cache_entries WHERE key LIKE ? ESCAPE '\\'",
                    (escaped + "%",),
                )
                await db.commit()
                return cursor.rowcount

        except aiosqlite.Error as e:
            logger.error("cache_invalidate_failed", prefix=prefix, error=str(e))
            raise DatabaseError(f"Failed to invalidate cache: {e}") from e

    # =========================================================================
    # Agent State
    # =========================================================================

    async def get_state(self, key: str) -> str | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT value FROM agent_state WHERE key = ?", (key,))
                row = await cursor.fetchone()
                return row["value"] if row else None

        except aiosqlite.Error as e:
            logger.error("state_get_failed", key=key, error=str(e))
            raise DatabaseError(f"Failed to get state: {e}") from e

    async def set_state(self, key: str, value: str) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO agent_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, _now().isoformat()),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("state_set_failed", key=key, error=str(e))
            raise DatabaseError(f"Failed to set state: {e}") from e

    # =========================================================================
    # Rule Match Tracking
    # =========================================================================

    async def record_rule_matches(self, rule_ids: list[str]) -> None:
        """Increment hit counters for matched rules."""
        if not rule_ids:
            return
        now = _now().isoformat()
        try:
            async with self._db() as db:
                await db.executemany(
                    """
                    INSERT INTO rule_matches (rule_id, match_count, last_match_at)
                    VALUES (?, 1, ?)
                    ON CONFLICT(rule_id) DO UPDATE SET
                        match_count = match_count + 1,
                        last_match_at = excluded.last_match_at
                    """,
                    [(rule_id, now) for rule_id in rule_ids],
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("rule_match_record_failed", error=str(e))
            raise DatabaseError(f"Failed to record rule matches: {e}") from e

    async def get_rule_match_counts(self) -> dict[str, dict[str, Any]]:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM rule_matches")
                return {
                    row["rule_id"]: {
                        "match_count": row["match_count"],
                        "last_match_at": row["last_match_at"],
                    }
                    for row in await cursor.fetchall()
                }

        except aiosqlite.Error as e:
            logger.error("rule_match_counts_failed", error=str(e))
            raise DatabaseError(f"Failed to read rule match counts: {e}") from e

    # =========================================================================
    # AI Request Log
    # =========================================================================

    async def log_ai_request(
        self,
        task_type: str,
        model: str,
        tool_call: dict[str, Any] | None,
        duration_ms: int,
        email_id: str | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        error: str | None = None,
    ) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO ai_request_log (
                        timestamp, task_type, model, email_id, run_id, tool_call_json,
                        input_tokens, output_tokens, duration_ms, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _now().isoformat(),
                        task_type,
                        model,
                        email_id,
                        get_correlation_id(),
                        json.dumps(tool_call) if tool_call is not None else None,
                        input_tokens,
                        output_tokens,
                        duration_ms,
                        error,
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("ai_request_log_failed", error=str(e))
            raise DatabaseError(f"Failed to log AI request: {e}") from e

    # =========================================================================
    # Classifications
    # =========================================================================

    async def save_classification(
        self,
        email_id: str,
        result: dict[str, Any],
        method: str,
        thread_id: str | None = None,
        subject: str | None = None,
        sender: str | None = None,
        body: str | None = None,
    ) -> None:
        """Store (or replace) the latest classification of an email."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO classifications (
                        email_id, thread_id, subject, sender, body_excerpt,
                        result_json, method, classified_at, run_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(email_id) DO UPDATE SET
                        thread_id = excluded.thread_id,
                        subject = excluded.subject,
                        sender = excluded.sender,
                        body_excerpt = excluded.body_excerpt,
                        result_json = excluded.result_json,
                        method = excluded.method,
                        classified_at = excluded.classified_at,
                        run_id = excluded.run_id
                    """,
                    (
                        email_id,
                        thread_id,
                        subject,
                        sender,
                        (body or "")[:MAX_BODY_EXCERPT],
                        json.dumps(result),
                        method,
                        _iso(_now()),
                        get_correlation_id(),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("classification_save_failed", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to save classification: {e}") from e

    async def get_classification(self, email_id: str) -> StoredClassification | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM classifications WHERE email_id = ?", (email_id,)
                )
                row = await cursor.fetchone()

        except aiosqlite.Error as e:
            logger.error("classification_get_failed", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to get classification: {e}") from e

        if row is None:
            return None
        return StoredClassification(
            email_id=row["email_id"],
            thread_id=row["thread_id"],
            subject=row["subject"],
            sender=row["sender"],
            body_excerpt=row["body_excerpt"],
            result=json.loads(row["result_json"]),
            method=row["method"],
            classified_at=_parse_dt(row["classified_at"]),
        )
