"""Encryption key repository. Keys are stored wrapped, never in plaintext."""

from typing import Optional

from orchestrator.database import connection_scope
from orchestrator.utils import get_current_timestamp


class EncryptionKeyRepository:
    @staticmethod
    def insert(key_ref: str, file_id: str, wrapped_key: str, conn=None) -> None:
        with connection_scope(conn) as scoped:
            scoped.execute(
                "INSERT INTO encryption_keys (key_ref, file_id, wrapped_key, created_at) VALUES (?, ?, ?, ?)",
                (key_ref, file_id, wrapped_key, get_current_timestamp()),
            )

    @staticmethod
    def get_wrapped(key_ref: str, conn=None) -> Optional[str]:
        with connection_scope(conn) as scoped:
            row = scoped.execute(
                "SELECT wrapped_key FROM encryption_keys WHERE key_ref = ?", (key_ref,)
            ).fetchone()
            return row["wrapped_key"] if row else None

    @staticmethod
    def delete_for_file(file_id: str, conn=None) -> None:
        with connection_scope(conn) as scoped:
            scoped.execute("DELETE FROM encryption_keys WHERE file_id = ?", (file_id,))
