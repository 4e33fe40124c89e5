"""
Salesflow - Database Initialization
Creates all tables and indexes, and seeds the reason-code weight table.
"""

import logging

from salesflow.config import DB_PATH
from salesflow.db.connection import get_db_conn, list_tables, transaction
from salesflow.db.entities import DEFAULT_WEIGHTS

logger = logging.getLogger("salesflow.db")

SCHEMA_SQL = """
-- Contacts (person-level, one row per reachable person)
CREATE TABLE IF NOT EXISTS contacts (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    first_name TEXT DEFAULT '',
    last_name TEXT DEFAULT '',
    company TEXT DEFAULT '',
    phone TEXT DEFAULT '',
    mobile TEXT DEFAULT '',
    stage TEXT DEFAULT 'lead',
    source TEXT DEFAULT 'manual',
    city TEXT DEFAULT '',
    state TEXT DEFAULT '',
    timezone TEXT DEFAULT '',
    opted_out INTEGER DEFAULT 0,
    opted_out_reason TEXT,
    emails_sent INTEGER DEFAULT 0,
    emails_opened INTEGER DEFAULT 0,
    emails_clicked INTEGER DEFAULT 0,
    last_email_at TEXT,
    last_contact_at TEXT,
    last_meeting_at TEXT,
    last_interaction_at TEXT,
    active_enrollment_id TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

-- Interactions (append-only log per contact)
CREATE TABLE IF NOT EXISTS interactions (
    id TEXT PRIMARY KEY,
    contact_id TEXT NOT NULL REFERENCES contacts(id),
    type TEXT NOT NULL,
    channel TEXT DEFAULT 'system',
    direction TEXT DEFAULT 'outbound',
    data TEXT DEFAULT '{}',
    timestamp TEXT NOT NULL
);

-- Sequence enrollments (one contact's run through one sequence)
CREATE TABLE IF NOT EXISTS enrollments (
    id TEXT PRIMARY KEY,
    contact_id TEXT NOT NULL REFERENCES contacts(id),
    sequence_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    current_step_index INTEGER NOT NULL DEFAULT 0,
    next_action_at TEXT,
    waiting_task_id TEXT,
    started_at TEXT,
    updated_at TEXT,
    last_action_at TEXT,
    stopped_reason TEXT,
    events TEXT DEFAULT '[]'
);

-- Human tasks created by task steps
CREATE TABLE IF NOT EXISTS sequence_tasks (
    id TEXT PRIMARY KEY,
    contact_id TEXT NOT NULL REFERENCES contacts(id),
    enrollment_id TEXT,
    sequence_id TEXT,
    step_index INTEGER,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    status TEXT NOT NULL DEFAULT 'open',
    created_at TEXT,
    completed_at TEXT
);

-- Call feedback (append-only)
CREATE TABLE IF NOT EXISTS call_feedback (
    id TEXT PRIMARY KEY,
    contact_id TEXT NOT NULL,
    reason_code TEXT NOT NULL,
    outcome TEXT NOT NULL,
    notes TEXT DEFAULT '',
    called_by TEXT DEFAULT '',
    call_duration INTEGER,
    recommendation_id TEXT,
    created_at TEXT NOT NULL
);

-- Reason-code weights (mutated only by feedback or manual override)
CREATE TABLE IF NOT EXISTS reason_weights (
    reason_code TEXT PRIMARY KEY,
    weight INTEGER NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);

-- Non-fatal engine errors surfaced to operators
CREATE TABLE IF NOT EXISTS pipeline_errors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    phase TEXT NOT NULL,
    contact_id TEXT,
    enrollment_id TEXT,
    sequence_id TEXT,
    error_type TEXT,
    error_message TEXT,
    context TEXT DEFAULT '{}',
    severity TEXT DEFAULT 'warning',
    resolved INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now'))
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_contacts_stage ON contacts(stage);
CREATE INDEX IF NOT EXISTS idx_contacts_email ON contacts(email);
CREATE INDEX IF NOT EXISTS idx_interactions_contact ON interactions(contact_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_enrollments_contact ON enrollments(contact_id);
CREATE INDEX IF NOT EXISTS idx_enrollments_status ON enrollments(status);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON sequence_tasks(status);
CREATE INDEX IF NOT EXISTS idx_feedback_contact ON call_feedback(contact_id);
CREATE INDEX IF NOT EXISTS idx_errors_phase ON pipeline_errors(phase, resolved);
"""

EXPECTED_TABLES = [
    "call_feedback", "contacts", "enrollments", "interactions",
    "pipeline_errors", "reason_weights", "sequence_tasks",
]


def init_db(db_path=None, weights: dict = None):
    """Initialize the database with all tables and indexes.

    Seeds reason_weights with the defaults; existing weights are left alone so
    learned values survive a restart.
    """
    path = db_path or DB_PATH
    with transaction(path) as conn:
        conn.executescript(SCHEMA_SQL)
        conn.executemany(
            "INSERT OR IGNORE INTO reason_weights (reason_code, weight) VALUES (?, ?)",
            list((weights or DEFAULT_WEIGHTS).items()),
        )
        tables = list_tables(conn)
    logger.info("Database initialized at %s (%d tables)", path, len(tables))
    return tables


def verify_db(db_path=None) -> bool:
    """True when every expected table exists."""
    with get_db_conn(db_path) as conn:
        missing = set(EXPECTED_TABLES) - set(list_tables(conn))
    if missing:
        logger.error("Missing tables: %s", sorted(missing))
        return False
    return True


if __name__ == "__main__":
    from salesflow.logging_config import setup_logging
    setup_logging()
    init_db()
    print("PASS" if verify_db() else "FAIL")
