"""Ledger anchoring queue repository for database operations."""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from orchestrator.database import connection_scope
from orchestrator.utils import generate_uuid, get_current_timestamp, parse_timestamp

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class LedgerQueueEntry:
    entry_id: str
    file_id: str
    payload: Dict[str, Any]
    queued_at: datetime
    attempts: int
    status: str
    last_error: Optional[str] = None


class LedgerRepository:
    @staticmethod
    def enqueue(file_id: str, payload: Dict[str, Any], conn=None) -> str:
        entry_id = generate_uuid()
        with connection_scope(conn) as scoped:
            scoped.execute(
                """
                INSERT INTO ledger_queue (entry_id, file_id, payload, queued_at, attempts, status)
                VALUES (?, ?, ?, ?, 0, ?)
                """,
                (entry_id, file_id, json.dumps(payload, default=str), get_current_timestamp(), STATUS_PENDING),
            )
        return entry_id

    @staticmethod
    def fetch_pending(limit: int, conn=None) -> List[LedgerQueueEntry]:
        with connection_scope(conn) as scoped:
            rows = scoped.execute(
                "SELECT * FROM ledger_queue WHERE status = ? ORDER BY queued_at ASC LIMIT ?",
                (STATUS_PENDING, limit),
            ).fetchall()

        return [
            LedgerQueueEntry(
                entry_id=row["entry_id"],
                file_id=row["file_id"],
                payload=json.loads(row["payload"]),
                queued_at=parse_timestamp(row["queued_at"]),
                attempts=row["attempts"],
                status=row["status"],
                last_error=row["last_error"],
            )
            for row in rows
        ]

    @staticmethod
    def mark_confirmed(entry_id: str, conn=None) -> None:
        with connection_scope(conn) as scoped:
            scoped.execute(
                "UPDATE ledger_queue SET status = ?, attempts = attempts + 1, last_error = NULL WHERE entry_id = ?",
                (STATUS_CONFIRMED, entry_id),
            )

    @staticmethod
    def record_failure(entry_id: str, error: str, max_attempts: int, conn=None) -> int:
        """
        Count a failed attempt. The entry becomes terminal once it reaches
        `max_attempts`. Returns the new attempt count.
        """
        with connection_scope(conn) as scoped:
            scoped.execute(
                """
                UPDATE ledger_queue
                SET attempts = attempts + 1,
                    last_error = ?,
                    status = CASE WHEN attempts + 1 >= ? THEN ? ELSE status END
                WHERE entry_id = ?
                """,
                (error, max_attempts, STATUS_FAILED, entry_id),
            )
            row = scoped.execute("SELECT attempts FROM ledger_queue WHERE entry_id = ?", (entry_id,)).fetchone()
            return row["attempts"] if row else max_attempts

    @staticmethod
    def count_by_status(conn=None) -> Dict[str, int]:
        with connection_scope(conn) as scoped:
            rows = scoped.execute(
                "SELECT status, COUNT(*) AS n FROM ledger_queue GROUP BY status"
            ).fetchall()
            return {row["status"]: row["n"] for row in rows}

    @staticmethod
    def delete_for_file(file_id: str, conn=None) -> None:
        with connection_scope(conn) as scoped:
            scoped.execute("DELETE FROM ledger_queue WHERE file_id = ?", (file_id,))
