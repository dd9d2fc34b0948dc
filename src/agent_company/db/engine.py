"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    repo_path TEXT NOT NULL,
    base_branch TEXT DEFAULT 'main',
    agent_branch TEXT,
    slack_channel TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS ticket_documents (
    project_id TEXT PRIMARY KEY,
    document TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS ticket_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ticket_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_ticket_events_ticket ON ticket_events(ticket_id);

CREATE TABLE IF NOT EXISTS bus_messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    type TEXT NOT NULL CHECK (type IN (
        'review_request', 'review_response', 'conflict_escalate',
        'task_assign', 'task_complete', 'task_failed', 'escalate'
    )),
    sender TEXT NOT NULL,
    recipient TEXT NOT NULL,
    workflow_id TEXT,
    body TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_bus_messages_recipient ON bus_messages(recipient, seq);
CREATE INDEX IF NOT EXISTS idx_bus_messages_workflow ON bus_messages(workflow_id, seq);

CREATE TABLE IF NOT EXISTS bus_offsets (
    recipient TEXT PRIMARY KEY,
    last_seq INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS bus_acks (
    recipient TEXT NOT NULL,
    message_id TEXT NOT NULL,
    acked_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (recipient, message_id)
);

CREATE TABLE IF NOT EXISTS bus_processed (
    consumer_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    processed_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (consumer_id, message_id)
);

CREATE TABLE IF NOT EXISTS paused_runs (
    ticket_id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    run_id TEXT NOT NULL,
    worker_states TEXT NOT NULL DEFAULT '{}',
    paused_at TEXT DEFAULT (datetime('now'))
);
"""


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
