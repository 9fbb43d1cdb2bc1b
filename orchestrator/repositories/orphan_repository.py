"""Repository for storage objects that could not be deleted."""

from dataclasses import dataclass
from typing import List, Optional

from orchestrator.database import connection_scope
from orchestrator.utils import generate_uuid, get_current_timestamp


@dataclass(frozen=True)
class OrphanedPlacement:
    orphan_id: str
    backend_name: str
    object_key: str
    file_id: Optional[str]
    recorded_at: str
    attempts: int
    last_error: Optional[str]


class OrphanRepository:
    @staticmethod
    def record(backend_name: str, object_key: str, file_id: Optional[str], error: str, conn=None) -> None:
        with connection_scope(conn) as scoped:
            scoped.execute(
                """
                INSERT INTO orphaned_placements (orphan_id, backend_name, object_key, file_id, recorded_at, attempts, last_error)
                VALUES (?, ?, ?, ?, ?, 0, ?)
                ON CONFLICT(backend_name, object_key) DO UPDATE SET last_error = excluded.last_error
                """,
                (generate_uuid(), backend_name, object_key, file_id, get_current_timestamp(), error),
            )

    @staticmethod
    def list_all(limit: int = 500, conn=None) -> List[OrphanedPlacement]:
        with connection_scope(conn) as scoped:
            rows = scoped.execute(
                "SELECT * FROM orphaned_placements ORDER BY recorded_at ASC LIMIT ?", (limit,)
            ).fetchall()
        return [
            OrphanedPlacement(
                orphan_id=row["orphan_id"],
                backend_name=row["backend_name"],
                object_key=row["object_key"],
                file_id=row["file_id"],
                recorded_at=row["recorded_at"],
                attempts=row["attempts"],
                last_error=row["last_error"],
            )
            for row in rows
        ]

    @staticmethod
    def remove(orphan_id: str, conn=None) -> None:
        with connection_scope(conn) as scoped:
            scoped.execute("DELETE FROM orphaned_placements WHERE orphan_id = ?", (orphan_id,))

    @staticmethod
    def record_attempt(orphan_id: str, error: str, conn=None) -> None:
        with connection_scope(conn) as scoped:
            scoped.execute(
                "UPDATE orphaned_placements SET attempts = attempts + 1, last_error = ? WHERE orphan_id = ?",
                (error, orphan_id),
            )

    @staticmethod
    def count_for_file(file_id: str, below_attempts: Optional[int] = None, conn=None) -> int:
        """Orphans left for `file_id`; with `below_attempts`, only those still eligible for retry."""
        with connection_scope(conn) as scoped:
            if below_attempts is None:
                return scoped.execute(
                    "SELECT COUNT(*) FROM orphaned_placements WHERE file_id = ?", (file_id,)
                ).fetchone()[0]
            return scoped.execute(
                "SELECT COUNT(*) FROM orphaned_placements WHERE file_id = ? AND attempts < ?",
                (file_id, below_attempts),
            ).fetchone()[0]
