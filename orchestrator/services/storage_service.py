"""Storage service: the upload/retrieve/remove/query facade."""

import asyncio
import io
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import BinaryIO, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from backends.base import StorageBackend
from common.logging_config import get_logger
from orchestrator.cleanup_task import record_orphan
from orchestrator.config import ENCRYPT_BY_DEFAULT, STRICT_TYPE_CHECK
from orchestrator.dedup_index import DeduplicationIndex
from orchestrator.exceptions import StrataError, UnauthorizedAccessError, ValidationError
from orchestrator.health import HealthTable
from orchestrator.metadata_store import MetadataStore
from orchestrator.observers import StorageObserver
from orchestrator.placement import STRATEGY_PERMANENT, PlacementEngine
from orchestrator.retrieval import RetrievalRouter
from orchestrator.security import Principal
from orchestrator.transform import TransformOptions, TransformPipeline
from orchestrator.types import (
    AccessInfo,
    AccessLevel,
    BatchItemResult,
    FileRecord,
    RemovalResult,
    SearchCriteria,
    SearchPage,
    ShareGrant,
    UploadFlags,
    UploadMetadata,
    UploadOutcome,
    VersionEntry,
)
from orchestrator.utils import generate_uuid, utcnow
from orchestrator.validation import FileValidator, sanitize_filename

logger = get_logger(__name__)

STREAM_DOWNLOAD_PIECE = 1024 * 1024

UploadSource = Union[BinaryIO, bytes]


@dataclass(frozen=True)
class RetrievedFile:
    record: FileRecord
    data: bytes
    served_by: str

    def iter_bytes(self, piece_size: int = STREAM_DOWNLOAD_PIECE) -> Iterable[bytes]:
        for offset in range(0, len(self.data), piece_size):
            yield self.data[offset:offset + piece_size]


def _read_all(stream: UploadSource) -> bytes:
    if isinstance(stream, (bytes, bytearray, memoryview)):
        return bytes(stream)
    if stream.seekable():
        stream.seek(0)
    return stream.read()


class StorageService:
    """
    Orchestrates validation, transforms, placement and metadata.

    Every method is safe to call concurrently. Uploads of identical content
    are serialised on the content hash so the bytes are stored once.
    """

    def __init__(
        self,
        backends: Mapping[str, StorageBackend],
        health_table: HealthTable,
        metadata_store: MetadataStore,
        placement_engine: PlacementEngine,
        pipeline: TransformPipeline,
        dedup_index: DeduplicationIndex,
        validator: Optional[FileValidator] = None,
        retrieval_router: Optional[RetrievalRouter] = None,
        observer: Optional[StorageObserver] = None,
        encrypt_by_default: bool = ENCRYPT_BY_DEFAULT,
        strict_type_check: bool = STRICT_TYPE_CHECK,
    ):
        self.backends = backends
        self.health_table = health_table
        self.metadata_store = metadata_store
        self.placement_engine = placement_engine
        self.pipeline = pipeline
        self.dedup_index = dedup_index
        self.validator = validator or FileValidator()
        self.observer = observer or StorageObserver()
        self.retrieval_router = retrieval_router or RetrievalRouter(
            backends, metadata_store, pipeline, observer=self.observer
        )
        self.encrypt_by_default = encrypt_by_default
        self.strict_type_check = strict_type_check

    async def process_upload(
        self,
        stream: UploadSource,
        metadata: UploadMetadata,
        flags: Optional[UploadFlags] = None,
    ) -> UploadOutcome:
        """
        Validate, transform, place and record one upload.

        Raises:
            ValidationError: The upload was rejected; nothing was stored
            TransformError: A transform stage failed; nothing was stored
            BackendUnavailableError: No healthy backend; nothing was sent
            UploadFailedError: Primary and failover both failed
        """
        flags = flags or UploadFlags()
        started = time.perf_counter()

        if isinstance(stream, (bytes, bytearray, memoryview)):
            stream = io.BytesIO(bytes(stream))
        elif not stream.seekable():
            stream = io.BytesIO(await asyncio.to_thread(stream.read))

        strict = self.strict_type_check if flags.strict_type_check is None else flags.strict_type_check
        validation = await asyncio.to_thread(
            self.validator.validate,
            stream,
            metadata.original_name,
            metadata.size_hint,
            metadata.allowed_types,
            strict,
        )
        if not validation.accepted:
            raise ValidationError(
                f"File {metadata.original_name} failed validation: {'; '.join(validation.reasons)}",
                reasons=validation.reasons,
            )

        data = await asyncio.to_thread(_read_all, stream)
        content_hash = validation.hash

        options = TransformOptions(
            compress=True if flags.compress is None else flags.compress,
            encrypt=self.encrypt_by_default if flags.encrypt is None else flags.encrypt,
            allow_dedup=flags.allow_dedup,
            encryption_key=flags.encryption_key,
            owner=metadata.owner,
        )

        async with self.dedup_index.lock(metadata.owner, content_hash):
            transformed = await self.pipeline.transform(data, content_hash, options)

            if transformed.deduplicated:
                existing = await self.metadata_store.get(transformed.existing_file_id)
                self.observer.on_upload_completed(existing.file_id, True)
                return UploadOutcome(
                    file_id=existing.file_id,
                    final_hash=existing.final_hash,
                    placements=existing.placements,
                    processing_summary={
                        "deduplicated": True,
                        "original_size": len(data),
                        "processing_ms": round((time.perf_counter() - started) * 1000, 3),
                    },
                    deduplicated=True,
                    warnings=tuple(validation.warnings),
                )

            file_id = generate_uuid()
            provenance = transformed.provenance
            strategy, _, _ = self.placement_engine.classify(len(transformed.final_blob), flags)
            prefix = "permanent" if strategy == STRATEGY_PERMANENT else "uploads"
            key = f"{prefix}/{file_id}-{sanitize_filename(metadata.original_name)}"

            placement_result = await self.placement_engine.upload(
                key=key,
                blob=transformed.final_blob,
                final_hash=transformed.final_hash,
                flags=flags,
                parts=transformed.parts() if provenance.chunked else None,
                content_type="application/octet-stream" if provenance.encrypted else validation.mime_type,
                attributes={
                    "file-id": file_id,
                    "content-hash": content_hash,
                    "original-size": str(len(data)),
                },
            )

            if provenance.encrypted:
                provenance = replace(provenance, encryption_key_ref=generate_uuid())
            provenance = replace(provenance, processing_ms=round((time.perf_counter() - started) * 1000, 3))

            now = utcnow()
            record = FileRecord(
                file_id=file_id,
                version=1,
                original_name=metadata.original_name,
                declared_type=metadata.declared_type,
                detected_type=validation.mime_type,
                size_bytes=len(data),
                content_hash=content_hash,
                final_hash=transformed.final_hash,
                placements=placement_result.placements,
                provenance=provenance,
                access=AccessInfo(owner=metadata.owner, access_level=metadata.access_level),
                strategy=placement_result.strategy,
                description=metadata.description,
                tags=tuple(metadata.tags),
                category=metadata.category,
                created_at=now,
                updated_at=now,
            )

            try:
                await self.metadata_store.create(
                    record,
                    encryption_key=transformed.encryption_key,
                    register_dedup=self.pipeline.enable_deduplication,
                )
            except Exception:
                logger.error(f"Failed to record upload [file_id={file_id}], releasing placements", exc_info=True)
                await self._release_placements(file_id, record.placements)
                raise

        self.observer.on_upload_completed(file_id, False)
        logger.info(
            f"Stored file [file_id={file_id}] [strategy={record.strategy}] "
            f"backends={[p.backend_name for p in record.placements]}"
        )
        return UploadOutcome(
            file_id=file_id,
            final_hash=record.final_hash,
            placements=record.placements,
            processing_summary={
                "strategy": record.strategy,
                "original_size": provenance.original_size,
                "final_size": provenance.final_size,
                "compressed": provenance.compressed,
                "compression_ratio": provenance.compression_ratio,
                "encrypted": provenance.encrypted,
                "chunked": provenance.chunked,
                "chunk_count": len(provenance.chunk_manifest),
                "failed_over": placement_result.failed_over,
                "processing_ms": provenance.processing_ms,
            },
            deduplicated=False,
            warnings=tuple(validation.warnings),
            backup_error=placement_result.backup_error,
        )

    async def process_batch(
        self,
        items: Sequence[Tuple[UploadSource, UploadMetadata, Optional[UploadFlags]]],
    ) -> List[BatchItemResult]:
        """Upload several files independently. One failure never affects the others."""

        async def run(source, metadata, flags) -> BatchItemResult:
            try:
                outcome = await self.process_upload(source, metadata, flags)
            except StrataError as e:
                logger.warning(f"Batch item failed [name={metadata.original_name}]: {e}")
                return BatchItemResult(
                    original_name=metadata.original_name, success=False, error=str(e), error_code=e.code
                )
            except Exception as e:
                logger.error(f"Batch item failed unexpectedly [name={metadata.original_name}]: {e}", exc_info=True)
                return BatchItemResult(
                    original_name=metadata.original_name,
                    success=False,
                    error="Internal error while processing file",
                    error_code=StrataError.code,
                )
            return BatchItemResult(original_name=metadata.original_name, success=True, outcome=outcome)

        return list(await asyncio.gather(*(run(*item) for item in items)))

    async def retrieve_file(self, file_id: str, principal: Optional[Principal] = None) -> RetrievedFile:
        if principal is not None:
            record = await self.metadata_store.get(file_id)
            self._require_read(record, principal)
        result = await self.retrieval_router.download(
            file_id, accessed_by=principal.user_id if principal else None
        )
        return RetrievedFile(record=result.record, data=result.data, served_by=result.placement.backend_name)

    async def remove_file(self, file_id: str, principal: Optional[Principal] = None) -> RemovalResult:
        """
        Delete every placement, then the record. Placements that could not
        be deleted are queued for the cleanup task and the record is
        tombstoned until they are gone.
        """
        record = await self.metadata_store.get(file_id)
        if principal is not None:
            self._require_owner(record, principal)

        deleted: List[str] = []
        failed: Dict[str, str] = {}
        for placement in record.placements:
            backend = self.backends.get(placement.backend_name)
            try:
                if backend is None:
                    raise LookupError(f"backend {placement.backend_name} is not configured")
                await backend.delete(placement.key)
                deleted.append(placement.backend_name)
            except Exception as e:
                failed[placement.backend_name] = str(e) or type(e).__name__
                record_orphan(placement.backend_name, placement.key, file_id, failed[placement.backend_name])

        if failed:
            await self.metadata_store.tombstone(file_id)
            logger.warning(f"Partially deleted file [file_id={file_id}] failed={sorted(failed)}")
        else:
            await self.metadata_store.delete(file_id)
            logger.info(f"Deleted file [file_id={file_id}] from {deleted}")
        return RemovalResult(file_id=file_id, deleted=tuple(deleted), failed=failed)

    async def query_files(self, criteria: SearchCriteria, principal: Optional[Principal] = None) -> SearchPage:
        if principal is not None and not principal.is_admin and not criteria.public_only:
            criteria = replace(criteria, owner=principal.user_id)
        return await self.metadata_store.search(criteria)

    async def get_file_record(
        self,
        file_id: str,
        include_secrets: bool = False,
        principal: Optional[Principal] = None,
    ) -> Tuple[FileRecord, Optional[str]]:
        """
        Return the record and, when requested by the owner or an admin, the
        hex-encoded data key.
        """
        record = await self.metadata_store.get(file_id)
        if principal is not None:
            self._require_read(record, principal)

        if not include_secrets:
            return record, None
        if principal is None or not (principal.is_admin or principal.user_id == record.owner):
            raise UnauthorizedAccessError("Only the owner or an administrator may view encryption keys")
        key_ref = record.provenance.encryption_key_ref
        key = self.metadata_store.get_encryption_key(key_ref) if key_ref else None
        return record, key.hex() if key else None

    async def update_file(self, file_id: str, changes: Dict, principal: Optional[Principal] = None) -> FileRecord:
        if principal is not None:
            record = await self.metadata_store.get(file_id)
            self._require_write(record, principal)
        return await self.metadata_store.update(
            file_id, changes, updated_by=principal.user_id if principal else None
        )

    async def share_file(
        self,
        file_id: str,
        grantee_id: str,
        permissions: Iterable[str],
        principal: Principal,
        expires_at: Optional[datetime] = None,
    ) -> ShareGrant:
        record = await self.metadata_store.get(file_id)
        self._require_owner(record, principal)
        return await self.metadata_store.share(file_id, grantee_id, permissions, principal.user_id, expires_at)

    async def revoke_share(self, file_id: str, share_id: str, principal: Principal) -> ShareGrant:
        record = await self.metadata_store.get(file_id)
        self._require_owner(record, principal)
        return await self.metadata_store.revoke_share(file_id, share_id, principal.user_id)

    async def get_version_history(self, file_id: str, principal: Optional[Principal] = None) -> List[VersionEntry]:
        if principal is not None:
            self._require_read(await self.metadata_store.get(file_id), principal)
        return await self.metadata_store.version_history(file_id)

    async def get_stats(self) -> Dict:
        return await self.metadata_store.stats()

    async def export_metadata(
        self,
        principal: Principal,
        file_ids: Optional[List[str]] = None,
        include_versions: bool = True,
    ) -> Dict:
        self._require_admin(principal, "export metadata")
        return await self.metadata_store.export_metadata(file_ids, include_versions=include_versions)

    async def import_metadata(self, data: Dict, principal: Principal, overwrite: bool = False) -> Dict[str, int]:
        self._require_admin(principal, "import metadata")
        return await self.metadata_store.import_metadata(data, overwrite=overwrite)

    def backend_health(self) -> Dict[str, Dict]:
        return {
            name: {
                "healthy": entry.healthy,
                "detail": entry.detail,
                "checked_at": entry.checked_at.isoformat() if entry.checked_at else None,
            }
            for name, entry in self.health_table.snapshot().items()
        }

    async def _release_placements(self, file_id: str, placements) -> None:
        for placement in placements:
            backend = self.backends.get(placement.backend_name)
            try:
                if backend is None:
                    raise LookupError(f"backend {placement.backend_name} is not configured")
                await backend.delete(placement.key)
            except Exception as e:
                record_orphan(placement.backend_name, placement.key, None, str(e))

    def _require_read(self, record: FileRecord, principal: Principal) -> None:
        if self._has_access(record, principal, "read"):
            return
        raise UnauthorizedAccessError(f"User {principal.user_id} may not read file {record.file_id}")

    def _require_write(self, record: FileRecord, principal: Principal) -> None:
        if self._has_access(record, principal, "write"):
            return
        raise UnauthorizedAccessError(f"User {principal.user_id} may not modify file {record.file_id}")

    def _require_owner(self, record: FileRecord, principal: Principal) -> None:
        if principal.is_admin or principal.user_id == record.owner:
            return
        raise UnauthorizedAccessError(f"Only the owner may manage file {record.file_id}")

    @staticmethod
    def _require_admin(principal: Principal, action: str) -> None:
        if not principal.is_admin:
            raise UnauthorizedAccessError(f"Only an admin may {action}")

    @staticmethod
    def _has_access(record: FileRecord, principal: Principal, permission: str) -> bool:
        if principal.is_admin or principal.user_id == record.owner:
            return True
        if permission == "read" and record.access.access_level == AccessLevel.PUBLIC:
            return True
        now = utcnow()
        return any(
            grant.grantee_id == principal.user_id and permission in grant.permissions and grant.is_effective(now)
            for grant in record.access.shares
        )
