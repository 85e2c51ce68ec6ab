"""SQLite schema for the local suggestion mirror."""

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = """
-- Namespaced key/value documents (the suggestion array lives under one key)
CREATE TABLE IF NOT EXISTS local_kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Sync queue for changes not yet confirmed by the remote store
CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    target TEXT NOT NULL,  -- suggestions, tasks
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,  -- upsert, delete, promote
    payload TEXT,  -- JSON payload
    queued_at TEXT NOT NULL,
    synced INTEGER DEFAULT 0,  -- 0 = pending, 1 = synced
    revision INTEGER DEFAULT 0,  -- bumped when a newer mutation replaces the entry
    retry_count INTEGER DEFAULT 0,
    last_error TEXT,
    last_attempt_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_record ON sync_queue(record_id);
CREATE INDEX IF NOT EXISTS idx_sync_queue_synced ON sync_queue(synced);
-- Unique partial index for atomic UPSERT on unsynced entries
CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_queue_unsynced_unique
    ON sync_queue(target, record_id) WHERE synced = 0;

-- Sync metadata (last sync time, schema version)
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def init_db(conn: sqlite3.Connection, now: str) -> None:
    """Create tables if needed and record the schema version."""
    conn.executescript(SCHEMA)
    row = conn.execute("SELECT value FROM sync_meta WHERE key = 'schema_version'").fetchone()
    if row is None:
        conn.execute(
            "INSERT INTO sync_meta (key, value, updated_at) VALUES ('schema_version', ?, ?)",
            (str(SCHEMA_VERSION), now),
        )
        logger.debug("Initialized local schema v%s", SCHEMA_VERSION)
