"""Local suggestion mirror backed by SQLite.

The whole suggestion collection is stored as one JSON array under a
namespaced key, next to a queue of changes the remote store has not
confirmed yet. Writing the array and queueing its remote change happen in
one transaction, so a crash never leaves a local mutation without its
pending sync entry.
"""

import contextlib
import json
import logging
import sqlite3
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from mallex.errors import StorageCorrupt
from mallex.types import (
    OP_DELETE,
    TARGET_SUGGESTIONS,
    QueuedChange,
    Suggestion,
    parse_datetime,
    utc_now,
)
from mallex.utils import get_mallex_home

from .schema import init_db
from .serializers import records_to_suggestions, suggestion_to_record

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "mallex:taskSuggestions"

# Queued changes that failed this many sync passes are parked until requeued
MAX_SYNC_FAILURES = 5

# (target, record_id, operation, payload)
PendingChange = Tuple[str, str, str, Optional[Dict[str, Any]]]


class LocalSuggestionStore:
    """Durable on-device mirror of the suggestion collection.

    Args:
        db_path: SQLite file. Defaults to ``<mallex home>/suggestions.db``.
        storage_key: Namespaced key the suggestion array is stored under.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        storage_key: str = DEFAULT_STORAGE_KEY,
    ):
        if not storage_key or not storage_key.strip():
            raise ValueError("Storage key cannot be empty")
        self.storage_key = storage_key
        self.db_path = self._resolve_db_path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _resolve_db_path(self, db_path: Optional[Path]) -> Path:
        """Resolve the database path, falling back to temp dir if home is not writable."""
        if db_path is not None:
            return Path(db_path).expanduser().resolve()

        default_path = get_mallex_home() / "suggestions.db"
        try:
            default_path.parent.mkdir(parents=True, exist_ok=True)
            return default_path.resolve()
        except (OSError, PermissionError) as e:
            fallback_dir = Path(tempfile.gettempdir()) / ".mallex"
            logger.warning(
                f"Cannot write to {default_path.parent} ({e}), falling back to {fallback_dir}"
            )
            return (fallback_dir / "suggestions.db").resolve()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            init_db(conn, utc_now())

    # === Suggestion Collection ===

    def load(self) -> List[Suggestion]:
        """Read the persisted collection.

        A missing key is an empty collection.

        Raises:
            StorageCorrupt: If the stored value cannot be parsed.
        """
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT value FROM local_kv WHERE key = ?", (self.storage_key,)
                ).fetchone()
        except sqlite3.DatabaseError as e:
            raise StorageCorrupt(f"Local database unreadable: {e}") from e

        if row is None:
            return []
        try:
            records = json.loads(row["value"])
        except (TypeError, json.JSONDecodeError) as e:
            raise StorageCorrupt(f"Stored suggestions are not valid JSON: {e}") from e
        return records_to_suggestions(records)

    def save(
        self,
        suggestions: Iterable[Suggestion],
        changes: Iterable[PendingChange] = (),
        discard: Iterable[Tuple[str, str]] = (),
    ):
        """Persist the full collection and queue its remote changes atomically.

        ``discard`` lists (target, record_id) pairs whose unsynced changes
        are dropped in the same transaction.
        """
        now = utc_now()
        value = json.dumps([suggestion_to_record(s) for s in suggestions])
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO local_kv (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       value = excluded.value,
                       updated_at = excluded.updated_at""",
                (self.storage_key, value, now),
            )
            for target, record_id in discard:
                conn.execute(
                    "DELETE FROM sync_queue WHERE synced = 0 AND target = ? AND record_id = ?",
                    (target, record_id),
                )
            for target, record_id, operation, payload in changes:
                self._queue_change(conn, target, record_id, operation, payload, now)

    def clear(self) -> None:
        """Remove the persisted collection."""
        with self._connect() as conn:
            conn.execute("DELETE FROM local_kv WHERE key = ?", (self.storage_key,))

    # === Queue Operations ===

    def _queue_change(
        self,
        conn: sqlite3.Connection,
        target: str,
        record_id: str,
        operation: str,
        payload: Optional[Dict[str, Any]],
        now: str,
    ) -> None:
        # A newer mutation of the same record replaces the unsynced entry. A
        # delete drops any payload; other operations keep an earlier payload
        # unless they bring their own.
        conn.execute(
            """INSERT INTO sync_queue
               (target, record_id, operation, payload, queued_at, synced)
               VALUES (?, ?, ?, ?, ?, 0)
               ON CONFLICT(target, record_id) WHERE synced = 0
               DO UPDATE SET
                   operation = excluded.operation,
                   payload = CASE
                       WHEN excluded.operation = ? THEN NULL
                       ELSE COALESCE(excluded.payload, sync_queue.payload)
                   END,
                   queued_at = excluded.queued_at,
                   revision = sync_queue.revision + 1,
                   retry_count = 0,
                   last_error = NULL""",
            (
                target,
                record_id,
                operation,
                json.dumps(payload) if payload is not None else None,
                now,
                OP_DELETE,
            ),
        )

    def queue_change(
        self,
        target: str,
        record_id: str,
        operation: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Queue a remote change outside of a collection write."""
        with self._connect() as conn:
            self._queue_change(conn, target, record_id, operation, payload, utc_now())

    def _row_to_change(self, row: sqlite3.Row) -> QueuedChange:
        payload = None
        if row["payload"]:
            try:
                payload = json.loads(row["payload"])
            except json.JSONDecodeError:
                logger.warning(f"Dropping unreadable payload for queued change {row['id']}")
        return QueuedChange(
            id=row["id"],
            target=row["target"],
            record_id=row["record_id"],
            operation=row["operation"],
            payload=payload,
            queued_at=parse_datetime(row["queued_at"]),
            revision=row["revision"] or 0,
            retry_count=row["retry_count"] or 0,
            last_error=row["last_error"],
            last_attempt_at=parse_datetime(row["last_attempt_at"]),
        )

    def get_queued_changes(
        self, limit: int = 100, max_failures: int = MAX_SYNC_FAILURES
    ) -> List[QueuedChange]:
        """Unsynced changes that have not exhausted their failure budget, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM sync_queue
                   WHERE synced = 0 AND COALESCE(retry_count, 0) < ?
                   ORDER BY id
                   LIMIT ?""",
                (max_failures, limit),
            ).fetchall()
        return [self._row_to_change(row) for row in rows]

    def get_failed_changes(self, min_failures: int = MAX_SYNC_FAILURES) -> List[QueuedChange]:
        """Changes parked after failing ``min_failures`` sync passes."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM sync_queue
                   WHERE synced = 0 AND COALESCE(retry_count, 0) >= ?
                   ORDER BY id""",
                (min_failures,),
            ).fetchall()
        return [self._row_to_change(row) for row in rows]

    def clear_queued_change(self, queue_id: int, revision: Optional[int] = None) -> bool:
        """Remove a confirmed change.

        With ``revision`` the entry is only removed if no newer mutation
        replaced it while the remote write was in flight.
        """
        with self._connect() as conn:
            if revision is None:
                cursor = conn.execute("DELETE FROM sync_queue WHERE id = ?", (queue_id,))
            else:
                cursor = conn.execute(
                    "DELETE FROM sync_queue WHERE id = ? AND revision = ?",
                    (queue_id, revision),
                )
            return cursor.rowcount > 0

    def record_sync_failure(self, queue_id: int, error: str) -> int:
        """Record a failed push and return the entry's failure count."""
        with self._connect() as conn:
            conn.execute(
                """UPDATE sync_queue
                   SET retry_count = COALESCE(retry_count, 0) + 1,
                       last_error = ?,
                       last_attempt_at = ?
                   WHERE id = ?""",
                (error[:500], utc_now(), queue_id),
            )
            row = conn.execute(
                "SELECT retry_count FROM sync_queue WHERE id = ?", (queue_id,)
            ).fetchone()
        return row["retry_count"] if row else 0

    def requeue_failed(self) -> int:
        """Reset failure counters so every unsynced change is retried."""
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE sync_queue SET retry_count = 0, last_error = NULL
                   WHERE synced = 0 AND COALESCE(retry_count, 0) > 0"""
            )
            return cursor.rowcount

    def clear_queue(self, target: Optional[str] = None) -> int:
        """Drop unsynced changes, optionally only for one target."""
        with self._connect() as conn:
            if target is None:
                cursor = conn.execute("DELETE FROM sync_queue WHERE synced = 0")
            else:
                cursor = conn.execute(
                    "DELETE FROM sync_queue WHERE synced = 0 AND target = ?", (target,)
                )
            return cursor.rowcount

    def pending_record_ids(self, target: str = TARGET_SUGGESTIONS) -> Set[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT record_id FROM sync_queue WHERE synced = 0 AND target = ?", (target,)
            ).fetchall()
        return {row["record_id"] for row in rows}

    def has_pending_change(self, record_id: str, target: str = TARGET_SUGGESTIONS) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM sync_queue WHERE synced = 0 AND target = ? AND record_id = ?",
                (target, record_id),
            ).fetchone()
        return row is not None

    def pending_count(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM sync_queue WHERE synced = 0").fetchone()
        return row["n"]

    # === Sync Metadata ===

    def get_meta(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       value = excluded.value,
                       updated_at = excluded.updated_at""",
                (key, value, utc_now()),
            )

    def get_last_sync_time(self) -> Optional[datetime]:
        return parse_datetime(self.get_meta("last_sync_time"))
