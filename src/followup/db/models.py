"""SQLite database schema and initialization for follow-up triage.

Tables:
- followup_items: The follow-up queue (never deleted, archived instead)
- queue_history: Append-only audit log of queue transitions
- learning_log: Append-only classification feedback log
- vip_contacts: VIP registry keyed by normalized address or *@domain
- cache_entries: TTL key-value cache (learned model projection)
- agent_state: Key-value state persistence
- rule_matches: Processing-rule hit counters
- ai_request_log: External AI classifier calls for debugging
- classifications: Latest classification per email (feedback target)

Usage:
    from followup.db.models import init_database

    await init_database("data/followup.db")
"""

import stat
from pathlib import Path

import aiosqlite

from followup.core.errors import DatabaseError
from followup.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

REQUIRED_TABLES = (
    "followup_items",
    "queue_history",
    "learning_log",
    "vip_contacts",
    "cache_entries",
    "agent_state",
    "rule_matches",
    "ai_request_log",
    "classifications",
)

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS followup_items (
    id TEXT PRIMARY KEY,                    -- uuid4 hex
    email_id TEXT NOT NULL,
    thread_id TEXT,
    subject TEXT,
    sender TEXT,
    received_at DATETIME,
    priority TEXT NOT NULL,                 -- 'CRITICAL', 'HIGH', 'MEDIUM', 'LOW'
    category TEXT,
    labels_json TEXT DEFAULT '[]',
    reason TEXT NOT NULL,                   -- 'NEEDS_REPLY', 'WAITING_ON_OTHERS', ...
    status TEXT NOT NULL DEFAULT 'ACTIVE',  -- 'ACTIVE', 'SNOOZED', 'WAITING', 'ESCALATED',
                                            -- 'COMPLETED', 'ARCHIVED'
    added_to_queue_at DATETIME NOT NULL,
    snoozed_until DATETIME,
    last_action_date DATETIME,
    sla_deadline DATETIME,
    sla_status TEXT DEFAULT 'ON_TIME',      -- 'ON_TIME', 'AT_RISK', 'OVERDUE'
    action_count INTEGER DEFAULT 0,
    snooze_count INTEGER DEFAULT 0,
    is_vip INTEGER DEFAULT 0,
    vip_tier INTEGER,
    confidence REAL,
    ai_reasoning TEXT,
    notes TEXT,
    completed_at DATETIME,
    version INTEGER NOT NULL DEFAULT 0      -- Optimistic concurrency counter
);

-- At most one open item per email (idempotent enqueue across invocations)
CREATE UNIQUE INDEX IF NOT EXISTS idx_followup_open_email
    ON followup_items(email_id)
    WHERE status NOT IN ('COMPLETED', 'ARCHIVED');

CREATE INDEX IF NOT EXISTS idx_followup_status ON followup_items(status);
CREATE INDEX IF NOT EXISTS idx_followup_snoozed_until ON followup_items(status, snoozed_until);
CREATE INDEX IF NOT EXISTS idx_followup_sla_deadline ON followup_items(sla_deadline);

CREATE TABLE IF NOT EXISTS queue_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id TEXT NOT NULL REFERENCES followup_items(id),
    action TEXT NOT NULL,                   -- 'ADDED', 'SNOOZED', 'RESURFACED', ...
    timestamp DATETIME NOT NULL,
    details_json TEXT,
    run_id TEXT                             -- Correlation ID of the invocation
);

CREATE INDEX IF NOT EXISTS idx_queue_history_item ON queue_history(item_id, timestamp);

CREATE TABLE IF NOT EXISTS learning_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id TEXT NOT NULL UNIQUE,          -- Idempotency key for retried feedback
    email_id TEXT NOT NULL,
    classification_json TEXT NOT NULL,
    feedback_json TEXT,                     -- NULL when no user feedback
    feedback_type TEXT,
    outcome TEXT NOT NULL,                  -- 'SUCCESS', 'CORRECTED', 'IGNORED'
    subject TEXT,
    sender TEXT,
    body_excerpt TEXT,                      -- Truncated body for keyword mining
    timestamp DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_learning_log_timestamp ON learning_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_learning_log_email ON learning_log(email_id);

CREATE TABLE IF NOT EXISTS vip_contacts (
    email TEXT PRIMARY KEY,                 -- Normalized address or '*@domain'
    name TEXT,
    tier INTEGER NOT NULL,                  -- 1 (highest) to 3
    auto_draft INTEGER DEFAULT 0,
    sla_hours REAL,
    notes TEXT,
    added_at DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    expires_at DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS agent_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS rule_matches (
    rule_id TEXT PRIMARY KEY,
    match_count INTEGER DEFAULT 0,
    last_match_at DATETIME
);

CREATE TABLE IF NOT EXISTS ai_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    task_type TEXT,                         -- 'classify', 'snooze'
    model TEXT,
    email_id TEXT,
    run_id TEXT,
    tool_call_json TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    duration_ms INTEGER,
    error TEXT                              -- NULL on success
);

CREATE INDEX IF NOT EXISTS idx_ai_log_timestamp ON ai_request_log(timestamp);

CREATE TABLE IF NOT EXISTS classifications (
    email_id TEXT PRIMARY KEY,
    thread_id TEXT,
    subject TEXT,
    sender TEXT,
    body_excerpt TEXT,
    result_json TEXT NOT NULL,              -- ClassificationResult.to_dict()
    method TEXT NOT NULL,
    classified_at DATETIME NOT NULL,
    run_id TEXT
);
"""


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "wal_mode_not_enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Owner read/write only: the queue holds subjects and sender addresses
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "database_initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Check that all required tables exist.

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing_tables
    if missing:
        logger.warning("missing_database_tables", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
