"""
Execution Log Store: lookup executions kept for admin analytics.

Behavioral Contract:
- Append-only; a record id is written at most once (duplicates are ignored)
- Every execution is stored, successful or not
- Queryable by lookup, session and recency
- Safe to write from a worker thread while other threads query
"""

import json
import logging
import sqlite3
import threading
from typing import List, Optional

from shortcode_engine.models.processing import ExecutionRecord

logger = logging.getLogger(__name__)


class SQLiteExecutionLog:
    """
    Execution log sink.
    SQLite file or ":memory:"; the host may swap in its own sink.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._lock = threading.Lock()
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS lookup_executions (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                lookup_id TEXT,
                lookup_name TEXT NOT NULL,
                matched_rule_id TEXT,
                used_default INTEGER NOT NULL DEFAULT 0,
                success INTEGER NOT NULL DEFAULT 0,
                execution_time_ms REAL,
                record_json TEXT NOT NULL,
                recorded_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_lookup ON lookup_executions(lookup_name)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_session ON lookup_executions(session_id)
        """)
        self._conn.commit()

    def record(self, record: ExecutionRecord) -> bool:
        """Store a record. Returns False if a record with the same id already exists."""
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO lookup_executions (
                    id, session_id, lookup_id, lookup_name, matched_rule_id,
                    used_default, success, execution_time_ms, record_json, recorded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.session_id,
                    record.lookup_id,
                    record.lookup_name,
                    record.matched_rule_id,
                    int(record.used_default),
                    int(record.result_error is None),
                    record.execution_time_ms,
                    json.dumps(record.model_dump(mode="json"), default=str),
                    record.recorded_at.isoformat(),
                ),
            )
            self._conn.commit()
        return cursor.rowcount == 1

    def _fetch(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _deserialize(self, row: sqlite3.Row) -> ExecutionRecord:
        return ExecutionRecord.model_validate_json(row["record_json"])

    def get_by_id(self, record_id: str) -> Optional[ExecutionRecord]:
        rows = self._fetch(
            "SELECT record_json FROM lookup_executions WHERE id = ?", (record_id,)
        )
        return self._deserialize(rows[0]) if rows else None

    def query_by_lookup(self, lookup_name: str) -> List[ExecutionRecord]:
        """All executions of one lookup, oldest first."""
        rows = self._fetch(
            "SELECT record_json FROM lookup_executions WHERE lookup_name = ? ORDER BY rowid",
            (lookup_name,),
        )
        return [self._deserialize(r) for r in rows]

    def query_by_session(self, session_id: str) -> List[ExecutionRecord]:
        rows = self._fetch(
            "SELECT record_json FROM lookup_executions WHERE session_id = ? ORDER BY rowid",
            (session_id,),
        )
        return [self._deserialize(r) for r in rows]

    def query_failures(self) -> List[ExecutionRecord]:
        rows = self._fetch(
            "SELECT record_json FROM lookup_executions WHERE success = 0 ORDER BY rowid"
        )
        return [self._deserialize(r) for r in rows]

    def query_recent(self, limit: int = 50) -> List[ExecutionRecord]:
        rows = self._fetch(
            "SELECT record_json FROM lookup_executions ORDER BY rowid DESC LIMIT ?",
            (limit,),
        )
        return [self._deserialize(r) for r in reversed(rows)]

    def count(self) -> int:
        rows = self._fetch("SELECT COUNT(*) AS cnt FROM lookup_executions")
        return rows[0]["cnt"]

    def close(self) -> None:
        self._conn.close()
