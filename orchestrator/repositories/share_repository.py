"""Share grant repository for database operations."""

import json
from datetime import datetime
from typing import List

from orchestrator.database import connection_scope
from orchestrator.types import ShareGrant
from orchestrator.utils import parse_timestamp


class ShareRepository:
    @staticmethod
    def insert(file_id: str, grant: ShareGrant, conn=None) -> None:
        with connection_scope(conn) as scoped:
            scoped.execute(
                """
                INSERT INTO share_grants (share_id, file_id, grantee_id, permissions, granted_by,
                                          granted_at, expires_at, active, revoked_at, revoked_by)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    grant.share_id,
                    file_id,
                    grant.grantee_id,
                    json.dumps(list(grant.permissions)),
                    grant.granted_by,
                    grant.granted_at.isoformat(),
                    grant.expires_at.isoformat() if grant.expires_at else None,
                    1 if grant.active else 0,
                    None,
                    None,
                ),
            )

    @staticmethod
    def revoke(file_id: str, share_id: str, revoked_by: str, revoked_at: datetime, conn=None) -> bool:
        """
        Deactivate a grant. Returns False if no active grant matched.
        """
        with connection_scope(conn) as scoped:
            cursor = scoped.execute(
                """
                UPDATE share_grants SET active = 0, revoked_at = ?, revoked_by = ?
                WHERE file_id = ? AND share_id = ? AND active = 1
                """,
                (revoked_at.isoformat(), revoked_by, file_id, share_id),
            )
            return cursor.rowcount > 0

    @staticmethod
    def list_for_file(file_id: str, conn=None) -> List[ShareGrant]:
        with connection_scope(conn) as scoped:
            rows = scoped.execute(
                "SELECT * FROM share_grants WHERE file_id = ? ORDER BY granted_at, share_id",
                (file_id,),
            ).fetchall()

        return [
            ShareGrant(
                share_id=row["share_id"],
                grantee_id=row["grantee_id"],
                permissions=tuple(json.loads(row["permissions"])),
                granted_by=row["granted_by"],
                granted_at=parse_timestamp(row["granted_at"]),
                expires_at=parse_timestamp(row["expires_at"]),
                active=bool(row["active"]),
                revoked_at=parse_timestamp(row["revoked_at"]),
                revoked_by=row["revoked_by"],
            )
            for row in rows
        ]

    @staticmethod
    def delete_for_file(file_id: str, conn=None) -> None:
        with connection_scope(conn) as scoped:
            scoped.execute("DELETE FROM share_grants WHERE file_id = ?", (file_id,))
