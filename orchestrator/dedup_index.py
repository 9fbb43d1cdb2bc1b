"""Content-hash deduplication index with per-hash locking."""

from typing import AsyncContextManager, Optional

from common.logging_config import get_logger
from orchestrator.locks import KeyedLock
from orchestrator.repositories import DedupRepository, FileRecordRepository

logger = get_logger(__name__)


class DeduplicationIndex:
    """
    Maps an owner's content hash to the first of their records that stored it.

    Entries are scoped per owner so a duplicate never resolves to a record
    the uploader cannot read. The index is a hint: an entry whose record no
    longer exists is treated as a miss and removed. Callers hold
    `lock(owner, content_hash)` across lookup, upload and registration so
    concurrent identical uploads store the bytes once.
    """

    def __init__(self):
        self._locks = KeyedLock()

    def lock(self, owner: str, content_hash: str) -> AsyncContextManager[None]:
        return self._locks.hold(f"{owner}:{content_hash}")

    async def lookup(self, owner: str, content_hash: str) -> Optional[str]:
        file_id = DedupRepository.lookup(owner, content_hash)
        if file_id is None:
            return None
        if not FileRecordRepository.exists(file_id):
            logger.info(f"Dropping stale dedup entry [hash={content_hash[:12]}] [file_id={file_id}]")
            DedupRepository.remove(content_hash, file_id)
            return None
        return file_id

    def register(self, owner: str, content_hash: str, file_id: str, conn=None) -> None:
        DedupRepository.register(owner, content_hash, file_id, conn=conn)
