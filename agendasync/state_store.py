from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from agendasync.models import APPLIED_ERROR, MemoryEntry

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


MEMORY_COLUMNS = (
    "key",
    "kind",
    "requested_operation",
    "applied_operation",
    "external_ref",
    "observed_at",
    "record_id",
    "item_index",
    "title",
    "start",
    "end",
    "deadline",
    "location",
    "memo",
    "needs_review",
    "confidence",
    "error",
)


def _row_to_entry(row: sqlite3.Row) -> MemoryEntry:
    payload = dict(row)
    payload["needs_review"] = bool(payload.get("needs_review"))
    return MemoryEntry.from_dict(payload)


class StateStore:
    """SQLite-backed run log, key/value meta and append-only memory history."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            record_id TEXT NOT NULL DEFAULT '',
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            changes_applied INTEGER NOT NULL,
            needs_review INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS memory_entries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            "key" TEXT NOT NULL,
            kind TEXT NOT NULL,
            requested_operation TEXT NOT NULL,
            applied_operation TEXT NOT NULL,
            external_ref TEXT NOT NULL DEFAULT '',
            observed_at TEXT NOT NULL,
            record_id TEXT NOT NULL DEFAULT '',
            item_index INTEGER NOT NULL DEFAULT 0,
            title TEXT NOT NULL DEFAULT '',
            "start" TEXT NOT NULL DEFAULT '',
            "end" TEXT NOT NULL DEFAULT '',
            deadline TEXT NOT NULL DEFAULT '',
            location TEXT NOT NULL DEFAULT '',
            memo TEXT NOT NULL DEFAULT '',
            needs_review INTEGER NOT NULL DEFAULT 0,
            confidence REAL NOT NULL DEFAULT 0.6,
            error TEXT NOT NULL DEFAULT ''
        );

        CREATE INDEX IF NOT EXISTS idx_memory_entries_observed_at
            ON memory_entries(observed_at);

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        changes_applied: int,
        needs_review: int,
        record_id: str = "",
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, record_id, status, message, duration_ms,
                                          changes_applied, needs_review)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _utc_now(),
                        trigger,
                        record_id,
                        status,
                        message,
                        int(duration_ms),
                        int(changes_applied),
                        int(needs_review),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, record_id, status, message, duration_ms,
                           changes_applied, needs_review
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def append_memory_entries(self, entries: Sequence[MemoryEntry]) -> int:
        """Append ``entries`` in one transaction; either all land or none do."""
        if not entries:
            return 0
        rows = []
        for entry in entries:
            payload = entry.to_dict()
            payload["needs_review"] = 1 if entry.needs_review else 0
            # UTC text keeps observed_at comparable in SQL.
            payload["observed_at"] = entry.observed_at.astimezone(timezone.utc).isoformat()
            rows.append(tuple(payload[column] for column in MEMORY_COLUMNS))
        placeholders = ", ".join("?" for _ in MEMORY_COLUMNS)
        columns = ", ".join(f'"{column}"' for column in MEMORY_COLUMNS)
        with self._lock:
            with self._connect() as conn:
                conn.executemany(
                    f"INSERT INTO memory_entries({columns}) VALUES ({placeholders})",  # nosec B608
                    rows,
                )
                conn.commit()
        return len(rows)

    def read_memory_window(self, since: datetime, limit: int = 5000) -> list[MemoryEntry]:
        """Entries observed at or after ``since``, oldest append first.

        At most the newest ``limit`` in-window rows are returned; hitting the
        cap is logged because older in-window entries are then invisible.
        """
        cutoff = since.astimezone(timezone.utc)
        limit = max(1, int(limit))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM memory_entries
                    WHERE observed_at >= ?
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (cutoff.isoformat(), limit),
                ).fetchall()
        if len(rows) >= limit:
            logger.warning(
                "Memory window since %s holds at least %d entries; older entries are ignored",
                cutoff.isoformat(),
                limit,
            )
        entries: list[MemoryEntry] = []
        for row in reversed(rows):
            entry = _row_to_entry(row)
            if entry.observed_at < cutoff:
                continue
            entries.append(entry)
        return entries

    def recent_memory_entries(
        self,
        limit: int = 100,
        *,
        applied_operation: str | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if applied_operation is None:
                    rows = conn.execute(
                        "SELECT * FROM memory_entries ORDER BY id DESC LIMIT ?",
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT * FROM memory_entries
                        WHERE applied_operation = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(applied_operation), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = _row_to_entry(row).to_dict()
            item["id"] = int(row["id"])
            output.append(item)
        return output

    def review_entries(self, limit: int = 100) -> list[dict[str, Any]]:
        """Entries an operator may need to reconcile by hand."""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM memory_entries
                    WHERE applied_operation = ? OR needs_review = 1
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (APPLIED_ERROR, max(1, limit)),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = _row_to_entry(row).to_dict()
            item["id"] = int(row["id"])
            output.append(item)
        return output

    def clear_memory(self) -> int:
        """Operator reset: drop all history entries."""
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM memory_entries")
                conn.commit()
                return int(cursor.rowcount)

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM app_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def delete_meta(self, key: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM app_meta WHERE key = ?", (str(key),))
                conn.commit()
                return cursor.rowcount > 0
