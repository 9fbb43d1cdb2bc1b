"""Metadata store: durable file records with a write-through cache."""

import re
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from common.logging_config import get_logger
from orchestrator.config import MAX_VERSIONS
from orchestrator.crypto import KeyWrapper
from orchestrator.database import get_db_connection
from orchestrator.exceptions import NotFoundError, ValidationError
from orchestrator.locks import KeyedLock
from orchestrator.repositories import (
    DedupRepository,
    EncryptionKeyRepository,
    FileRecordRepository,
    LedgerRepository,
    OrphanRepository,
    ShareRepository,
    VersionRepository,
)
from orchestrator.repositories.file_repository import row_to_record
from orchestrator.types import (
    AccessLevel,
    FileRecord,
    LedgerStatus,
    SearchCriteria,
    SearchPage,
    ShareGrant,
    VersionEntry,
)
from orchestrator.utils import generate_uuid, utcnow

logger = get_logger(__name__)

UPDATABLE_FIELDS = frozenset({"original_name", "description", "tags", "category", "access_level"})
MAX_SEARCH_LIMIT = 1000
EXPORT_FORMAT_VERSION = "1.0.0"
SHA256_HEX = re.compile(r"[0-9a-f]{64}")


def _ledger_payload(record: FileRecord, action: str) -> Dict[str, Any]:
    return {
        "action": action,
        "file_id": record.file_id,
        "version": record.version,
        "content_hash": record.content_hash,
        "final_hash": record.final_hash,
        "owner": record.owner,
        "size_bytes": record.size_bytes,
        "timestamp": utcnow().isoformat(),
    }


class MetadataStore:
    """
    Owns every FileRecord.

    Reads are served from the cache and fall back to sqlite. Writes to one
    record are serialised by a per-file lock, committed to sqlite first,
    then published to the cache as a new immutable record.
    """

    def __init__(
        self,
        key_wrapper: KeyWrapper,
        max_versions: int = MAX_VERSIONS,
        ledger_enabled: bool = True,
    ):
        self.key_wrapper = key_wrapper
        self.max_versions = max_versions
        self.ledger_enabled = ledger_enabled
        self._cache: Dict[str, FileRecord] = {}
        self._locks = KeyedLock()

    async def create(
        self,
        record: FileRecord,
        encryption_key: Optional[bytes] = None,
        register_dedup: bool = True,
    ) -> FileRecord:
        """
        Persist a new record with its first version entry, its wrapped data
        key, its dedup index entry and its ledger queue entry, atomically.
        """
        async with self._locks.hold(record.file_id):
            with get_db_connection() as conn:
                try:
                    FileRecordRepository.insert(record, conn=conn)
                    VersionRepository.append(
                        VersionEntry(
                            file_id=record.file_id,
                            version=record.version,
                            changed_at=record.created_at or utcnow(),
                            changes={"action": "created"},
                            updated_by=record.owner,
                            previous_version=None,
                        ),
                        keep=self.max_versions,
                        conn=conn,
                    )
                    if encryption_key is not None:
                        key_ref = record.provenance.encryption_key_ref
                        if not key_ref:
                            raise ValueError("Encrypted record is missing its key reference")
                        EncryptionKeyRepository.insert(
                            key_ref, record.file_id, self.key_wrapper.wrap(encryption_key), conn=conn
                        )
                    if register_dedup:
                        DedupRepository.register(record.owner, record.content_hash, record.file_id, conn=conn)
                    if self.ledger_enabled:
                        LedgerRepository.enqueue(record.file_id, _ledger_payload(record, "created"), conn=conn)
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise

            self._cache[record.file_id] = record
        logger.info(f"Created file record [file_id={record.file_id}] [strategy={record.strategy}]")
        return record

    async def get(self, file_id: str) -> FileRecord:
        cached = self._cache.get(file_id)
        if cached is not None:
            return cached

        record = self._load(file_id)
        self._cache[file_id] = record
        return record

    def _load(self, file_id: str) -> FileRecord:
        with get_db_connection() as conn:
            row = FileRecordRepository.get_row(file_id, conn=conn)
            if row is None:
                raise NotFoundError(f"File {file_id} not found")
            shares = ShareRepository.list_for_file(file_id, conn=conn)
        return row_to_record(row, shares)

    async def _current(self, file_id: str) -> FileRecord:
        """Latest record for a writer already holding the file's lock."""
        return await self.get(file_id)

    async def update(self, file_id: str, changes: Dict[str, Any], updated_by: Optional[str] = None) -> FileRecord:
        """
        Apply attribute changes, bump the version and append a history
        entry. Older history entries are never rewritten.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                "Cannot update fields: " + ", ".join(sorted(unknown)),
                reasons=[f"Field {name} is not updatable" for name in sorted(unknown)],
            )
        normalized = dict(changes)
        if "tags" in normalized:
            normalized["tags"] = tuple(normalized["tags"])
        if "original_name" in normalized and not str(normalized["original_name"]).strip():
            raise ValidationError("Filename is required", reasons=["Filename is required"])

        async with self._locks.hold(file_id):
            current = await self._current(file_id)
            now = utcnow()
            access = current.access
            if "access_level" in normalized:
                access = replace(access, access_level=AccessLevel(normalized.pop("access_level")))
            updated = replace(
                current,
                **normalized,
                access=access,
                version=current.version + 1,
                updated_at=now,
            )

            with get_db_connection() as conn:
                try:
                    FileRecordRepository.update(updated, conn=conn)
                    VersionRepository.append(
                        VersionEntry(
                            file_id=file_id,
                            version=updated.version,
                            changed_at=now,
                            changes={k: (list(v) if isinstance(v, tuple) else v) for k, v in changes.items()},
                            updated_by=updated_by,
                            previous_version=current.version,
                        ),
                        keep=self.max_versions,
                        conn=conn,
                    )
                    if self.ledger_enabled:
                        LedgerRepository.enqueue(file_id, _ledger_payload(updated, "updated"), conn=conn)
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise

            self._cache[file_id] = updated
        logger.info(f"Updated file record [file_id={file_id}] version={updated.version}")
        return updated

    async def record_access(self, file_id: str, accessed_by: Optional[str] = None) -> FileRecord:
        async with self._locks.hold(file_id):
            current = await self._current(file_id)
            updated = replace(
                current,
                access=replace(
                    current.access,
                    download_count=current.access.download_count + 1,
                    last_accessed_at=utcnow(),
                    last_downloaded_by=accessed_by,
                ),
            )
            FileRecordRepository.update(updated)
            self._cache[file_id] = updated
        return updated

    async def share(
        self,
        file_id: str,
        grantee_id: str,
        permissions: Iterable[str],
        granted_by: str,
        expires_at: Optional[datetime] = None,
    ) -> ShareGrant:
        grant = ShareGrant(
            share_id=generate_uuid(),
            grantee_id=grantee_id,
            permissions=tuple(permissions) or ("read",),
            granted_by=granted_by,
            granted_at=utcnow(),
            expires_at=expires_at,
        )
        async with self._locks.hold(file_id):
            current = await self._current(file_id)
            access_level = current.access.access_level
            if access_level == AccessLevel.PRIVATE:
                access_level = AccessLevel.SHARED
            updated = replace(
                current,
                access=replace(current.access, access_level=access_level, shares=current.access.shares + (grant,)),
            )
            with get_db_connection() as conn:
                try:
                    ShareRepository.insert(file_id, grant, conn=conn)
                    FileRecordRepository.update(updated, conn=conn)
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
            self._cache[file_id] = updated
        logger.info(f"Shared file [file_id={file_id}] with [user_id={grantee_id}] [share_id={grant.share_id}]")
        return grant

    async def revoke_share(self, file_id: str, share_id: str, revoked_by: str) -> ShareGrant:
        """Deactivate a grant. The grant itself is kept for audit."""
        async with self._locks.hold(file_id):
            current = await self._current(file_id)
            now = utcnow()
            if not ShareRepository.revoke(file_id, share_id, revoked_by, now):
                raise NotFoundError(f"Active share {share_id} not found for file {file_id}")

            revoked = None
            shares = []
            for grant in current.access.shares:
                if grant.share_id == share_id:
                    grant = replace(grant, active=False, revoked_at=now, revoked_by=revoked_by)
                    revoked = grant
                shares.append(grant)
            updated = replace(current, access=replace(current.access, shares=tuple(shares)))
            self._cache[file_id] = updated
        logger.info(f"Revoked share [file_id={file_id}] [share_id={share_id}]")
        return revoked

    async def search(self, criteria: SearchCriteria) -> SearchPage:
        if not 1 <= criteria.limit <= MAX_SEARCH_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_SEARCH_LIMIT}")
        if criteria.offset < 0:
            raise ValidationError("offset must not be negative")
        try:
            results, total = FileRecordRepository.search(criteria)
        except ValueError as e:
            raise ValidationError(str(e), reasons=[str(e)]) from e
        return SearchPage(results=results, total=total, limit=criteria.limit, offset=criteria.offset)

    async def version_history(self, file_id: str) -> List[VersionEntry]:
        await self.get(file_id)
        return VersionRepository.list_for_file(file_id)

    async def update_ledger_sync(
        self,
        file_id: str,
        status: LedgerStatus,
        external_ref: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> Optional[FileRecord]:
        """Record an anchoring outcome. Returns None if the file is gone."""
        async with self._locks.hold(file_id):
            try:
                current = await self._current(file_id)
            except NotFoundError:
                return None
            ledger = replace(
                current.ledger_sync,
                status=status,
                external_ref=external_ref or current.ledger_sync.external_ref,
                attempts=attempts if attempts is not None else current.ledger_sync.attempts,
                synced_at=utcnow() if status == LedgerStatus.CONFIRMED else current.ledger_sync.synced_at,
            )
            updated = replace(current, ledger_sync=ledger)
            FileRecordRepository.update(updated)
            self._cache[file_id] = updated
        return updated

    def get_encryption_key(self, key_ref: str) -> Optional[bytes]:
        wrapped = EncryptionKeyRepository.get_wrapped(key_ref)
        if wrapped is None:
            return None
        return self.key_wrapper.unwrap(wrapped)

    async def delete(self, file_id: str) -> None:
        """
        Remove a record and everything hanging off it. Callers delete the
        storage placements first.
        """
        async with self._locks.hold(file_id):
            self._purge(file_id)
        logger.info(f"Deleted file record [file_id={file_id}]")

    def _purge(self, file_id: str) -> None:
        with get_db_connection() as conn:
            try:
                row = FileRecordRepository.get_row(file_id, include_deleted=True, conn=conn)
                if row is None:
                    raise NotFoundError(f"File {file_id} not found")
                DedupRepository.remove(row["content_hash"], file_id, conn=conn)
                ShareRepository.delete_for_file(file_id, conn=conn)
                VersionRepository.delete_for_file(file_id, conn=conn)
                EncryptionKeyRepository.delete_for_file(file_id, conn=conn)
                LedgerRepository.delete_for_file(file_id, conn=conn)
                FileRecordRepository.delete(file_id, conn=conn)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        self._cache.pop(file_id, None)

    async def tombstone(self, file_id: str) -> None:
        """
        Hide a record whose placements could not all be deleted. It stops
        being readable and releases its dedup entry; the row is purged once
        the orphan cleaner has removed the remaining placements.
        """
        async with self._locks.hold(file_id):
            current = await self._current(file_id)
            with get_db_connection() as conn:
                try:
                    FileRecordRepository.mark_deleted(file_id, conn=conn)
                    DedupRepository.remove(current.content_hash, file_id, conn=conn)
                    LedgerRepository.delete_for_file(file_id, conn=conn)
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
            self._cache.pop(file_id, None)
        logger.info(f"Tombstoned file record [file_id={file_id}]")

    async def purge_tombstones(self, max_attempts: Optional[int] = None) -> int:
        """
        Drop tombstoned records with no orphan left to retry. With
        `max_attempts`, orphans that used up their retries no longer hold the
        record back; they stay queued for an operator.
        """
        purged = 0
        for file_id in FileRecordRepository.list_tombstoned():
            if OrphanRepository.count_for_file(file_id, below_attempts=max_attempts) > 0:
                continue
            abandoned = OrphanRepository.count_for_file(file_id)
            if abandoned:
                logger.error(
                    f"Purging tombstoned file record [file_id={file_id}] with {abandoned} "
                    f"abandoned placements still in storage"
                )
            async with self._locks.hold(file_id):
                self._purge(file_id)
            purged += 1
        if purged:
            logger.info(f"Purged {purged} tombstoned file records")
        return purged

    async def stats(self) -> Dict[str, Any]:
        since = (utcnow() - timedelta(hours=24)).isoformat()
        stats = FileRecordRepository.stats(since)
        stats["ledger_queue"] = LedgerRepository.count_by_status()
        return stats

    async def export_metadata(
        self, file_ids: Optional[Iterable[str]] = None, include_versions: bool = True
    ) -> Dict[str, Any]:
        """
        Snapshot live records, their share grants and optionally their
        version history. Unknown or deleted ids are left out. Records keep
        their encryption key reference; wrapped keys are never exported.
        """
        ids = list(file_ids) if file_ids is not None else FileRecordRepository.list_ids()
        records = []
        for file_id in ids:
            try:
                record = await self.get(file_id)
            except NotFoundError:
                continue
            entry = record.to_dict()
            entry["provenance"]["encryption_key_ref"] = record.provenance.encryption_key_ref
            if include_versions:
                entry["versions"] = [v.to_dict() for v in VersionRepository.list_for_file(file_id)]
            records.append(entry)

        logger.info(f"Exported {len(records)} file records")
        return {
            "exported_at": utcnow().isoformat(),
            "version": EXPORT_FORMAT_VERSION,
            "total_files": len(records),
            "records": records,
        }

    async def import_metadata(
        self, data: Dict[str, Any], overwrite: bool = False, validate_hashes: bool = True
    ) -> Dict[str, int]:
        """
        Load records produced by `export_metadata`. Existing records are
        skipped unless `overwrite`; a record that fails to parse or check is
        counted as an error and does not stop the rest.
        """
        items = data.get("records") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise ValidationError("Import data must contain a list of records")

        imported = skipped = errors = 0
        for item in items:
            file_id = item.get("file_id") if isinstance(item, dict) else None
            try:
                record = FileRecord.from_dict(item)
                versions = [VersionEntry.from_dict(record.file_id, v) for v in item.get("versions", ())]
                self._check_importable(record, validate_hashes)
                async with self._locks.hold(record.file_id):
                    stored = self._import_record(record, versions, overwrite)
            except Exception as e:
                logger.error(f"Failed to import file record [file_id={file_id}]: {e}")
                errors += 1
                continue
            if stored:
                imported += 1
            else:
                skipped += 1

        logger.info(f"Metadata import completed [imported={imported}] [skipped={skipped}] [errors={errors}]")
        return {"imported": imported, "skipped": skipped, "errors": errors}

    @staticmethod
    def _check_importable(record: FileRecord, validate_hashes: bool) -> None:
        if validate_hashes:
            hashes = [record.content_hash, record.final_hash] + [p.sha256 for p in record.placements]
            if not all(SHA256_HEX.fullmatch(value or "") for value in hashes):
                raise ValidationError(f"File {record.file_id} carries a malformed SHA-256 hash")
        if record.provenance.encrypted:
            key_ref = record.provenance.encryption_key_ref
            if not key_ref or EncryptionKeyRepository.get_wrapped(key_ref) is None:
                raise ValidationError(f"Encryption key for file {record.file_id} is not in this store")

    def _import_record(self, record: FileRecord, versions: List[VersionEntry], overwrite: bool) -> bool:
        with get_db_connection() as conn:
            try:
                row = FileRecordRepository.get_row(record.file_id, include_deleted=True, conn=conn)
                if row is not None and row["deleted"]:
                    raise ValidationError(f"File {record.file_id} is being deleted")
                if row is not None and not overwrite:
                    return False

                if row is None:
                    FileRecordRepository.insert(record, conn=conn)
                else:
                    FileRecordRepository.update(record, conn=conn)
                    DedupRepository.remove(row["content_hash"], record.file_id, conn=conn)
                    ShareRepository.delete_for_file(record.file_id, conn=conn)
                    VersionRepository.delete_for_file(record.file_id, conn=conn)
                    LedgerRepository.delete_for_file(record.file_id, conn=conn)

                for grant in record.access.shares:
                    ShareRepository.insert(record.file_id, grant, conn=conn)
                for entry in sorted(versions, key=lambda v: v.version):
                    VersionRepository.append(entry, keep=self.max_versions, conn=conn)
                DedupRepository.register(record.owner, record.content_hash, record.file_id, conn=conn)
                if self.ledger_enabled and record.ledger_sync.status != LedgerStatus.CONFIRMED:
                    LedgerRepository.enqueue(record.file_id, _ledger_payload(record, "imported"), conn=conn)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        self._cache[record.file_id] = record
        return True
