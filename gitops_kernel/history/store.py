"""
Sync History Store: append-only, hash-chained record of reconciliation attempts.

Behavioral Contract:
- Append-only. No record is ever modified or deleted.
- Each record is hashed and chained to the previous record (tamper-evident).
- Health snapshots are persisted only as part of a Sync Result.
- Queryable by application, status and recency.
"""

import hashlib
import json
import sqlite3
import threading
from typing import List, Optional

from gitops_kernel.models.sync import SyncResult, SyncStatus


def _signature(record: SyncResult) -> str:
    record_dict = record.model_dump(mode="json")
    # Zero out signature before hashing (it's what we're computing)
    record_dict["signature"] = ""
    record_bytes = json.dumps(record_dict, sort_keys=True, default=str).encode()
    return hashlib.sha256(record_bytes).hexdigest()


class SyncHistoryStore:
    """
    Append-only sync history.
    SQLite; `:memory:` by default.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the history table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_history (
                id TEXT PRIMARY KEY,
                application TEXT NOT NULL,
                revision TEXT,
                content_hash TEXT,
                status TEXT NOT NULL,
                health TEXT,
                manual INTEGER NOT NULL DEFAULT 0,
                started_at TEXT NOT NULL,
                finished_at TEXT NOT NULL,
                signature TEXT NOT NULL,
                prior_record_hash TEXT,
                record_json TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_history_application ON sync_history(application)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_history_status ON sync_history(status)
        """)
        self._conn.commit()

    def append(self, record: SyncResult) -> SyncResult:
        """
        Append a sync result. Computes its hash and chains it to the
        previous record.
        """
        with self._lock:
            record.prior_record_hash = self._get_latest_hash()
            record.signature = _signature(record)
            full_json = json.dumps(record.model_dump(mode="json"), default=str)

            self._conn.execute(
                """
                INSERT INTO sync_history (
                    id, application, revision, content_hash, status, health, manual,
                    started_at, finished_at, signature, prior_record_hash, record_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.application,
                    record.revision,
                    record.content_hash,
                    record.status.value,
                    record.health.status.value if record.health else None,
                    int(record.manual),
                    record.started_at.isoformat(),
                    record.finished_at.isoformat(),
                    record.signature,
                    record.prior_record_hash,
                    full_json,
                ),
            )
            self._conn.commit()
        return record

    def _get_latest_hash(self) -> Optional[str]:
        """Get the signature of the most recent record."""
        row = self._conn.execute(
            "SELECT signature FROM sync_history ORDER BY rowid DESC LIMIT 1"
        ).fetchone()
        return row["signature"] if row else None

    def _deserialize(self, row: sqlite3.Row) -> SyncResult:
        return SyncResult.model_validate_json(row["record_json"])

    def get_by_id(self, record_id: str) -> Optional[SyncResult]:
        row = self._conn.execute(
            "SELECT record_json FROM sync_history WHERE id = ?", (record_id,)
        ).fetchone()
        return self._deserialize(row) if row else None

    def latest(self, application: str) -> Optional[SyncResult]:
        """Most recent result for an application."""
        row = self._conn.execute(
            "SELECT record_json FROM sync_history WHERE application = ? "
            "ORDER BY rowid DESC LIMIT 1",
            (application,),
        ).fetchone()
        return self._deserialize(row) if row else None

    def query_by_application(self, application: str, limit: int = 50) -> List[SyncResult]:
        """Most recent results for an application, oldest first."""
        rows = self._conn.execute(
            "SELECT record_json FROM sync_history WHERE application = ? "
            "ORDER BY rowid DESC LIMIT ?",
            (application, limit),
        ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def query_by_status(self, status: SyncStatus) -> List[SyncResult]:
        rows = self._conn.execute(
            "SELECT record_json FROM sync_history WHERE status = ? ORDER BY rowid",
            (status.value,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_recent(self, limit: int = 50) -> List[SyncResult]:
        rows = self._conn.execute(
            "SELECT record_json FROM sync_history ORDER BY rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def verify_chain_integrity(self) -> bool:
        """Verify no records have been tampered with."""
        rows = self._conn.execute(
            "SELECT record_json, signature FROM sync_history ORDER BY rowid"
        ).fetchall()

        prior_sig = None
        for row in rows:
            record = self._deserialize(row)
            if record.signature != row["signature"]:
                return False
            if _signature(record) != record.signature:
                return False
            if record.prior_record_hash != prior_sig:
                return False
            prior_sig = record.signature
        return True

    def count(self, application: Optional[str] = None) -> int:
        if application is None:
            row = self._conn.execute("SELECT COUNT(*) AS cnt FROM sync_history").fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM sync_history WHERE application = ?",
                (application,),
            ).fetchone()
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
