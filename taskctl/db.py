import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from . import config
from .config import DEFAULT_CONFIG

SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS task_types (
    code TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    priority INTEGER NOT NULL DEFAULT 3,
    maximum_execution_attempts INTEGER,
    retry_delay INTEGER,
    execution_timeout INTEGER,
    archive_completed INTEGER NOT NULL DEFAULT 1,
    archive_failed INTEGER NOT NULL DEFAULT 1,
    archive_cancelled INTEGER NOT NULL DEFAULT 1,
    event_types TEXT NOT NULL DEFAULT '',
    event_types_with_data TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    step TEXT,
    status TEXT NOT NULL,
    priority INTEGER NOT NULL,
    batch_id TEXT,
    external_reference TEXT UNIQUE,
    data TEXT,
    queued TEXT NOT NULL,
    executed TEXT,
    next_execution TEXT,
    execution_attempts INTEGER NOT NULL DEFAULT 0,
    execution_time INTEGER NOT NULL DEFAULT 0,
    locked TEXT,
    lock_name TEXT,
    failure TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_claim ON tasks(status, next_execution, priority, queued);
CREATE INDEX IF NOT EXISTS idx_tasks_batch ON tasks(batch_id);
CREATE INDEX IF NOT EXISTS idx_tasks_locked ON tasks(status, locked);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    step TEXT,
    data TEXT
);

CREATE INDEX IF NOT EXISTS idx_task_events_task ON task_events(task_id, timestamp);

CREATE TABLE IF NOT EXISTS archived_tasks (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    step TEXT,
    status TEXT NOT NULL,
    priority INTEGER NOT NULL,
    batch_id TEXT,
    external_reference TEXT,
    data TEXT,
    queued TEXT NOT NULL,
    executed TEXT,
    next_execution TEXT,
    execution_attempts INTEGER NOT NULL,
    execution_time INTEGER NOT NULL,
    locked TEXT,
    lock_name TEXT,
    failure TEXT
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    scheduling_pattern TEXT NOT NULL,
    task_type TEXT NOT NULL,
    data TEXT,
    enabled INTEGER NOT NULL DEFAULT 1,
    next_execution TEXT,
    last_executed TEXT
);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

# Column order shared by tasks and archived_tasks.
TASK_COLUMNS = (
    "id", "type", "step", "status", "priority", "batch_id", "external_reference",
    "data", "queued", "executed", "next_execution", "execution_attempts",
    "execution_time", "locked", "lock_name", "failure",
)


def connect_db(path: Optional[str] = None) -> sqlite3.Connection:
    conn = sqlite3.connect(path or config.DB_FILE, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    with conn:
        # seed defaults
        for k, v in DEFAULT_CONFIG.items():
            conn.execute(
                "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
            )
    conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Write transaction that takes the database write lock up front.

    BEGIN IMMEDIATE makes every read inside the block see rows no other
    writer can change until commit, which is what a claim needs. Nested
    use joins the enclosing transaction.
    """
    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()
