"""Repository layer for data access."""

from orchestrator.repositories.dedup_repository import DedupRepository
from orchestrator.repositories.file_repository import FileRecordRepository
from orchestrator.repositories.key_repository import EncryptionKeyRepository
from orchestrator.repositories.ledger_repository import LedgerQueueEntry, LedgerRepository
from orchestrator.repositories.orphan_repository import OrphanedPlacement, OrphanRepository
from orchestrator.repositories.share_repository import ShareRepository
from orchestrator.repositories.version_repository import VersionRepository

__all__ = [
    "DedupRepository",
    "EncryptionKeyRepository",
    "FileRecordRepository",
    "LedgerQueueEntry",
    "LedgerRepository",
    "OrphanedPlacement",
    "OrphanRepository",
    "ShareRepository",
    "VersionRepository",
]
