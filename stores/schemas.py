"""SQLite schema definitions and database initialization."""

import sqlite3
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    origin TEXT NOT NULL,
    channel TEXT NOT NULL DEFAULT 'email',
    subject TEXT,
    body TEXT NOT NULL,
    task_type TEXT DEFAULT 'general',
    intent JSON,
    confidence INTEGER DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'received',
    cost REAL DEFAULT 0.0,
    verification JSON,
    cascade_tier TEXT,
    checkpoint INTEGER DEFAULT -1,
    response TEXT,
    error TEXT,
    results JSON,
    pending_actions JSON,
    facts JSON,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_audit (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    note TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS plans (
    task_id TEXT PRIMARY KEY,
    plan JSON NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS method_performance (
    domain TEXT NOT NULL,
    action_kind TEXT NOT NULL,
    method TEXT NOT NULL,
    successes INTEGER DEFAULT 0,
    failures INTEGER DEFAULT 0,
    avg_duration_ms REAL DEFAULT 0,
    last_attempt_at TEXT,
    PRIMARY KEY (domain, action_kind, method)
);

CREATE TABLE IF NOT EXISTS model_performance (
    owner_id TEXT NOT NULL,
    task_type TEXT NOT NULL,
    domain TEXT NOT NULL DEFAULT '',
    model TEXT NOT NULL,
    successes INTEGER DEFAULT 0,
    failures INTEGER DEFAULT 0,
    avg_cost REAL DEFAULT 0,
    avg_latency_ms REAL DEFAULT 0,
    PRIMARY KEY (owner_id, task_type, domain, model)
);

CREATE TABLE IF NOT EXISTS failure_memory (
    site_domain TEXT NOT NULL,
    action_kind TEXT NOT NULL,
    selector TEXT NOT NULL,
    last_error TEXT,
    original_method TEXT,
    solution_method TEXT,
    solution_selector TEXT,
    times_used INTEGER DEFAULT 0,
    times_worked INTEGER DEFAULT 0,
    success_rate REAL DEFAULT 0,
    last_seen_at TEXT NOT NULL,
    PRIMARY KEY (site_domain, action_kind, selector)
);

CREATE TABLE IF NOT EXISTS learnings (
    service TEXT NOT NULL,
    task_type TEXT NOT NULL,
    actions JSON NOT NULL,
    successes INTEGER DEFAULT 0,
    failures INTEGER DEFAULT 0,
    verified_at TEXT NOT NULL,
    PRIMARY KEY (service, task_type)
);

CREATE TABLE IF NOT EXISTS verification_learnings (
    domain TEXT NOT NULL,
    task_type TEXT NOT NULL,
    hint TEXT NOT NULL,
    times_applied INTEGER DEFAULT 0,
    times_helped INTEGER DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (domain, task_type, hint)
);

CREATE TABLE IF NOT EXISTS task_difficulty (
    domain TEXT NOT NULL,
    task_type TEXT NOT NULL,
    samples INTEGER DEFAULT 0,
    successes INTEGER DEFAULT 0,
    avg_duration_ms REAL DEFAULT 0,
    avg_cost REAL DEFAULT 0,
    avg_strikes REAL DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (domain, task_type)
);

CREATE INDEX IF NOT EXISTS idx_tasks_owner ON tasks(owner_id);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_audit_task ON task_audit(task_id);
CREATE INDEX IF NOT EXISTS idx_method_lookup ON method_performance(domain, action_kind);
CREATE INDEX IF NOT EXISTS idx_model_lookup ON model_performance(owner_id, task_type);
"""


def connect(db_path: str | Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path), timeout=10.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db(db_path: str | Path) -> sqlite3.Connection:
    """Initialize the database with schema and return a connection."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = connect(db_path)
    conn.executescript(SCHEMA_SQL)
    # Migrate: older databases predate the resume checkpoint and stored facts
    cursor = conn.execute("PRAGMA table_info(tasks)")
    columns = {row[1] for row in cursor.fetchall()}
    if "checkpoint" not in columns:
        conn.execute("ALTER TABLE tasks ADD COLUMN checkpoint INTEGER DEFAULT -1")
    if "facts" not in columns:
        conn.execute("ALTER TABLE tasks ADD COLUMN facts JSON")
    conn.commit()
    return conn
