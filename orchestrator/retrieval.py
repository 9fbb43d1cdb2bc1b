"""Retrieval router: fetch, verify and restore a stored file."""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from backends.base import StorageBackend
from common.checksum import compute_checksum
from common.constants import ROLE_BACKUP
from common.logging_config import get_logger
from orchestrator.exceptions import IntegrityError, RetrievalFailedError, TransformError
from orchestrator.metadata_store import MetadataStore
from orchestrator.observers import StorageObserver
from orchestrator.transform import TransformPipeline
from orchestrator.types import FileRecord, StoragePlacement

logger = get_logger(__name__)


@dataclass(frozen=True)
class DownloadResult:
    record: FileRecord
    placement: StoragePlacement
    data: bytes


class RetrievalRouter:
    """
    Tries the primary placement, then each backup in order.

    A candidate only succeeds when its bytes match the placement hash, the
    reverse transforms succeed and the restored bytes match the original
    content hash. Every failed candidate is recorded as a cause.
    """

    def __init__(
        self,
        backends: Mapping[str, StorageBackend],
        metadata_store: MetadataStore,
        pipeline: TransformPipeline,
        observer: Optional[StorageObserver] = None,
    ):
        self.backends = backends
        self.metadata_store = metadata_store
        self.pipeline = pipeline
        self.observer = observer or StorageObserver()

    async def download(self, file_id: str, accessed_by: Optional[str] = None) -> DownloadResult:
        record = await self.metadata_store.get(file_id)
        key = self._encryption_key(record)
        causes: Dict[str, str] = {}

        for placement in record.placements:
            label = f"{placement.backend_name}:{placement.role}"
            started = time.perf_counter()
            try:
                data = await self._fetch_verified(record, placement, key)
            except Exception as e:
                causes[label] = str(e) or type(e).__name__
                self.observer.on_download_attempt(
                    placement.backend_name, file_id, 0, (time.perf_counter() - started) * 1000, causes[label]
                )
                logger.warning(f"Retrieval candidate failed [file_id={file_id}] [backend={label}]: {e}")
                continue

            self.observer.on_download_attempt(
                placement.backend_name, file_id, placement.size_bytes, (time.perf_counter() - started) * 1000, None
            )
            if placement.role == ROLE_BACKUP:
                logger.info(f"Served file from backup [file_id={file_id}] [backend={placement.backend_name}]")
            updated = await self.metadata_store.record_access(file_id, accessed_by)
            return DownloadResult(record=updated, placement=placement, data=data)

        logger.error(f"All placements failed for file {file_id}: {causes}")
        raise RetrievalFailedError(f"File {file_id} could not be retrieved from any placement", causes)

    async def _fetch_verified(self, record: FileRecord, placement: StoragePlacement, key: Optional[bytes]) -> bytes:
        backend = self.backends.get(placement.backend_name)
        if backend is None:
            raise IntegrityError(f"Backend {placement.backend_name} is not configured")

        result = await backend.get(placement.key)
        stored_hash = await asyncio.to_thread(compute_checksum, result.data)
        if stored_hash != placement.sha256:
            raise IntegrityError(f"Stored bytes hash mismatch on {placement.backend_name}")

        data = await self.pipeline.restore(result.data, record.provenance, key)
        restored_hash = await asyncio.to_thread(compute_checksum, data)
        if restored_hash != record.content_hash:
            raise IntegrityError(f"Restored content hash mismatch on {placement.backend_name}")
        return data

    def _encryption_key(self, record: FileRecord) -> Optional[bytes]:
        if not record.provenance.encrypted:
            return None
        key_ref = record.provenance.encryption_key_ref
        key = self.metadata_store.get_encryption_key(key_ref) if key_ref else None
        if key is None:
            raise TransformError(f"Encryption key for file {record.file_id} is missing")
        return key
