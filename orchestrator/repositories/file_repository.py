"""File record repository for database operations."""

import json
import sqlite3
from typing import Any, Dict, List, Optional, Sequence, Tuple

from common.logging_config import get_logger
from orchestrator.database import connection_scope, get_db_connection
from orchestrator.types import (
    AccessInfo,
    AccessLevel,
    FileRecord,
    FileSummary,
    LedgerStatus,
    LedgerSyncState,
    ProcessingProvenance,
    SearchCriteria,
    ShareGrant,
    StoragePlacement,
)
from orchestrator.utils import parse_timestamp

logger = get_logger(__name__)

SORTABLE_COLUMNS = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "size": "size_bytes",
    "size_bytes": "size_bytes",
    "name": "original_name",
    "original_name": "original_name",
    "download_count": "download_count",
}

_COLUMNS = (
    "file_id", "version", "original_name", "declared_type", "detected_type", "size_bytes",
    "content_hash", "final_hash", "strategy", "owner", "access_level", "download_count",
    "last_accessed_at", "last_downloaded_by", "description", "tags", "category",
    "primary_backend", "placements", "provenance", "ledger_status", "ledger_ref",
    "ledger_attempts", "ledger_synced_at", "created_at", "updated_at",
)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _contains_pattern(text: str) -> str:
    """LIKE pattern matching `text` literally anywhere, for use with ESCAPE '\\'."""
    escaped = text.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _record_values(record: FileRecord) -> Tuple[Any, ...]:
    return (
        record.file_id,
        record.version,
        record.original_name,
        record.declared_type,
        record.detected_type,
        record.size_bytes,
        record.content_hash,
        record.final_hash,
        record.strategy,
        record.access.owner,
        record.access.access_level.value,
        record.access.download_count,
        _iso(record.access.last_accessed_at),
        record.access.last_downloaded_by,
        record.description,
        json.dumps(list(record.tags)),
        record.category,
        record.primary_placement.backend_name,
        json.dumps([p.to_dict() for p in record.placements]),
        json.dumps(record.provenance.to_dict()),
        record.ledger_sync.status.value,
        record.ledger_sync.external_ref,
        record.ledger_sync.attempts,
        _iso(record.ledger_sync.synced_at),
        _iso(record.created_at),
        _iso(record.updated_at),
    )


def row_to_record(row: sqlite3.Row, shares: Sequence[ShareGrant] = ()) -> FileRecord:
    return FileRecord(
        file_id=row["file_id"],
        version=row["version"],
        original_name=row["original_name"],
        declared_type=row["declared_type"],
        detected_type=row["detected_type"],
        size_bytes=row["size_bytes"],
        content_hash=row["content_hash"],
        final_hash=row["final_hash"],
        strategy=row["strategy"],
        placements=tuple(StoragePlacement.from_dict(p) for p in json.loads(row["placements"])),
        provenance=ProcessingProvenance.from_dict(json.loads(row["provenance"])),
        access=AccessInfo(
            owner=row["owner"],
            access_level=AccessLevel(row["access_level"]),
            download_count=row["download_count"],
            last_accessed_at=parse_timestamp(row["last_accessed_at"]),
            last_downloaded_by=row["last_downloaded_by"],
            shares=tuple(shares),
        ),
        ledger_sync=LedgerSyncState(
            status=LedgerStatus(row["ledger_status"]),
            external_ref=row["ledger_ref"],
            attempts=row["ledger_attempts"],
            synced_at=parse_timestamp(row["ledger_synced_at"]),
        ),
        description=row["description"],
        tags=tuple(json.loads(row["tags"])),
        category=row["category"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def row_to_summary(row: sqlite3.Row) -> FileSummary:
    return FileSummary(
        file_id=row["file_id"],
        original_name=row["original_name"],
        size_bytes=row["size_bytes"],
        detected_type=row["detected_type"],
        owner=row["owner"],
        category=row["category"],
        tags=tuple(json.loads(row["tags"])),
        version=row["version"],
        download_count=row["download_count"],
        primary_backend=row["primary_backend"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


class FileRecordRepository:
    @staticmethod
    def insert(record: FileRecord, conn=None) -> None:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with connection_scope(conn) as scoped:
            scoped.execute(
                f"INSERT INTO file_records ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                _record_values(record),
            )

    @staticmethod
    def update(record: FileRecord, conn=None) -> None:
        """Rewrite every column of an existing, non-deleted record."""
        assignments = ", ".join(f"{column} = ?" for column in _COLUMNS[1:])
        values = _record_values(record)
        with connection_scope(conn) as scoped:
            cursor = scoped.execute(
                f"UPDATE file_records SET {assignments} WHERE file_id = ? AND deleted = 0",
                values[1:] + (record.file_id,),
            )
            if cursor.rowcount == 0:
                raise KeyError(record.file_id)

    @staticmethod
    def get_row(file_id: str, include_deleted: bool = False, conn=None) -> Optional[sqlite3.Row]:
        query = "SELECT * FROM file_records WHERE file_id = ?"
        if not include_deleted:
            query += " AND deleted = 0"
        with connection_scope(conn) as scoped:
            return scoped.execute(query, (file_id,)).fetchone()

    @staticmethod
    def exists(file_id: str, conn=None) -> bool:
        with connection_scope(conn) as scoped:
            row = scoped.execute(
                "SELECT 1 FROM file_records WHERE file_id = ? AND deleted = 0", (file_id,)
            ).fetchone()
            return row is not None

    @staticmethod
    def mark_deleted(file_id: str, conn=None) -> None:
        """
        Tombstone a record whose placements could not all be deleted.
        """
        logger.debug(f"Tombstoning file record [file_id={file_id}]")
        with connection_scope(conn) as scoped:
            scoped.execute("UPDATE file_records SET deleted = 1 WHERE file_id = ?", (file_id,))

    @staticmethod
    def delete(file_id: str, conn=None) -> bool:
        with connection_scope(conn) as scoped:
            cursor = scoped.execute("DELETE FROM file_records WHERE file_id = ?", (file_id,))
            return cursor.rowcount > 0

    @staticmethod
    def list_ids(conn=None) -> List[str]:
        with connection_scope(conn) as scoped:
            rows = scoped.execute(
                "SELECT file_id FROM file_records WHERE deleted = 0 ORDER BY created_at, file_id"
            ).fetchall()
            return [row["file_id"] for row in rows]

    @staticmethod
    def list_tombstoned(conn=None) -> List[str]:
        with connection_scope(conn) as scoped:
            rows = scoped.execute("SELECT file_id FROM file_records WHERE deleted = 1").fetchall()
            return [row["file_id"] for row in rows]

    @staticmethod
    def search(criteria: SearchCriteria) -> Tuple[List[FileSummary], int]:
        clauses = ["deleted = 0"]
        params: List[Any] = []

        if criteria.text:
            like = _contains_pattern(criteria.text)
            clauses.append(
                "(LOWER(original_name) LIKE ? ESCAPE '\\' OR LOWER(description) LIKE ? ESCAPE '\\' "
                "OR LOWER(tags) LIKE ? ESCAPE '\\' OR LOWER(category) LIKE ? ESCAPE '\\')"
            )
            params.extend([like, like, like, like])
        if criteria.owner:
            clauses.append("owner = ?")
            params.append(criteria.owner)
        if criteria.category:
            clauses.append("category = ?")
            params.append(criteria.category)
        if criteria.file_type:
            clauses.append(
                "(LOWER(detected_type) LIKE ? ESCAPE '\\' OR LOWER(declared_type) LIKE ? ESCAPE '\\')"
            )
            params.extend([_contains_pattern(criteria.file_type)] * 2)
        if criteria.min_size is not None:
            clauses.append("size_bytes >= ?")
            params.append(criteria.min_size)
        if criteria.max_size is not None:
            clauses.append("size_bytes <= ?")
            params.append(criteria.max_size)
        if criteria.date_from is not None:
            clauses.append("created_at >= ?")
            params.append(criteria.date_from.isoformat())
        if criteria.date_to is not None:
            clauses.append("created_at <= ?")
            params.append(criteria.date_to.isoformat())
        if criteria.public_only:
            clauses.append("access_level = ?")
            params.append(AccessLevel.PUBLIC.value)

        sort_column = SORTABLE_COLUMNS.get(criteria.sort_by)
        if sort_column is None:
            raise ValueError(f"Cannot sort by {criteria.sort_by!r}")
        direction = "ASC" if criteria.sort_order.lower() == "asc" else "DESC"
        where = " AND ".join(clauses)

        with get_db_connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM file_records WHERE {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM file_records WHERE {where} "
                f"ORDER BY {sort_column} {direction}, file_id ASC LIMIT ? OFFSET ?",
                params + [criteria.limit, criteria.offset],
            ).fetchall()

        return [row_to_summary(row) for row in rows], total

    @staticmethod
    def stats(since_iso: str) -> Dict[str, Any]:
        """Aggregate counts and byte totals over live records."""
        with get_db_connection() as conn:
            totals = conn.execute(
                "SELECT COUNT(*) AS files, COALESCE(SUM(size_bytes), 0) AS bytes, "
                "COALESCE(SUM(download_count), 0) AS downloads FROM file_records WHERE deleted = 0"
            ).fetchone()
            recent = conn.execute(
                "SELECT COUNT(*) FROM file_records WHERE deleted = 0 AND created_at >= ?", (since_iso,)
            ).fetchone()[0]

            def grouped(column: str) -> Dict[str, Dict[str, int]]:
                rows = conn.execute(
                    f"SELECT {column} AS name, COUNT(*) AS files, COALESCE(SUM(size_bytes), 0) AS bytes "
                    f"FROM file_records WHERE deleted = 0 GROUP BY {column}"
                ).fetchall()
                return {
                    (row["name"] or "unknown"): {"files": row["files"], "bytes": row["bytes"]}
                    for row in rows
                }

            return {
                "total_files": totals["files"],
                "total_bytes": totals["bytes"],
                "total_downloads": totals["downloads"],
                "uploads_last_24h": recent,
                "by_type": grouped("detected_type"),
                "by_category": grouped("category"),
                "by_owner": grouped("owner"),
                "by_backend": grouped("primary_backend"),
                "by_ledger_status": grouped("ledger_status"),
            }
