"""Deduplication index repository: (owner, content hash) -> first file id."""

from typing import Optional

from orchestrator.database import connection_scope
from orchestrator.utils import get_current_timestamp


class DedupRepository:
    @staticmethod
    def lookup(owner: str, content_hash: str, conn=None) -> Optional[str]:
        with connection_scope(conn) as scoped:
            row = scoped.execute(
                "SELECT file_id FROM dedup_index WHERE owner = ? AND content_hash = ?", (owner, content_hash)
            ).fetchone()
            return row["file_id"] if row else None

    @staticmethod
    def register(owner: str, content_hash: str, file_id: str, conn=None) -> None:
        """Point the owner's hash at `file_id` unless another of their records already claimed it."""
        with connection_scope(conn) as scoped:
            scoped.execute(
                "INSERT OR IGNORE INTO dedup_index (owner, content_hash, file_id, created_at) VALUES (?, ?, ?, ?)",
                (owner, content_hash, file_id, get_current_timestamp()),
            )

    @staticmethod
    def remove(content_hash: str, file_id: str, conn=None) -> None:
        with connection_scope(conn) as scoped:
            scoped.execute(
                "DELETE FROM dedup_index WHERE content_hash = ? AND file_id = ?", (content_hash, file_id)
            )
