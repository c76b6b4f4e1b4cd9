from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
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
        CREATE TABLE IF NOT EXISTS reconcile_passes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            message_id TEXT NOT NULL,
            uid TEXT NOT NULL,
            method TEXT NOT NULL,
            role TEXT NOT NULL,
            outcome TEXT NOT NULL,
            error_kind TEXT,
            fetch_downgraded INTEGER NOT NULL,
            duration_ms INTEGER NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_reconcile_passes_uid ON reconcile_passes(uid);
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def record_pass(
        self,
        *,
        message_id: str,
        uid: str,
        method: str,
        role: str,
        outcome: str,
        error_kind: str,
        fetch_downgraded: bool,
        duration_ms: int,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO reconcile_passes(
                        run_at, message_id, uid, method, role, outcome, error_kind, fetch_downgraded, duration_ms
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _utc_now(),
                        str(message_id),
                        str(uid),
                        str(method),
                        str(role),
                        str(outcome),
                        str(error_kind or ""),
                        1 if fetch_downgraded else 0,
                        max(0, int(duration_ms)),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_passes(self, limit: int = 50, uid: str = "") -> list[dict[str, Any]]:
        limit = max(1, int(limit))
        query = """
            SELECT id, run_at, message_id, uid, method, role, outcome, error_kind, fetch_downgraded, duration_ms
            FROM reconcile_passes
        """
        params: tuple[Any, ...] = ()
        if uid:
            query += " WHERE uid = ?"
            params = (uid,)
        query += " ORDER BY id DESC LIMIT ?"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params + (limit,)).fetchall()
        items: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["fetch_downgraded"] = bool(item["fetch_downgraded"])
            items.append(item)
        return items

    def downgrade_count(self) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) AS total FROM reconcile_passes WHERE fetch_downgraded = 1"
                ).fetchone()
        return int(row["total"]) if row else 0
