"""Version history repository for database operations."""

import json
from typing import List

from orchestrator.database import connection_scope
from orchestrator.types import VersionEntry
from orchestrator.utils import parse_timestamp


class VersionRepository:
    @staticmethod
    def append(entry: VersionEntry, keep: int, conn=None) -> None:
        """
        Append an entry and drop all but the newest `keep` for the file.
        Existing entries are never rewritten.
        """
        with connection_scope(conn) as scoped:
            scoped.execute(
                """
                INSERT INTO file_versions (file_id, version, changed_at, changes, updated_by, previous_version)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.file_id,
                    entry.version,
                    entry.changed_at.isoformat(),
                    json.dumps(entry.changes, default=str),
                    entry.updated_by,
                    entry.previous_version,
                ),
            )
            scoped.execute(
                """
                DELETE FROM file_versions
                WHERE file_id = ? AND version NOT IN (
                    SELECT version FROM file_versions WHERE file_id = ?
                    ORDER BY version DESC LIMIT ?
                )
                """,
                (entry.file_id, entry.file_id, keep),
            )

    @staticmethod
    def list_for_file(file_id: str, conn=None) -> List[VersionEntry]:
        with connection_scope(conn) as scoped:
            rows = scoped.execute(
                "SELECT * FROM file_versions WHERE file_id = ? ORDER BY version ASC", (file_id,)
            ).fetchall()

        return [
            VersionEntry(
                file_id=row["file_id"],
                version=row["version"],
                changed_at=parse_timestamp(row["changed_at"]),
                changes=json.loads(row["changes"]),
                updated_by=row["updated_by"],
                previous_version=row["previous_version"],
            )
            for row in rows
        ]

    @staticmethod
    def delete_for_file(file_id: str, conn=None) -> None:
        with connection_scope(conn) as scoped:
            scoped.execute("DELETE FROM file_versions WHERE file_id = ?", (file_id,))
