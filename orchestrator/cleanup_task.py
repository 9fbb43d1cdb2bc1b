"""Background task for cleaning up orphaned storage placements."""

from typing import Mapping, Optional

from backends.base import StorageBackend
from common.logging_config import get_logger
from orchestrator.config import ORPHAN_CLEANUP_INTERVAL, ORPHAN_MAX_ATTEMPTS
from orchestrator.metadata_store import MetadataStore
from orchestrator.periodic import PeriodicTask
from orchestrator.repositories import OrphanRepository

logger = get_logger(__name__)


class OrphanedPlacementCleaner(PeriodicTask):
    """
    Periodically retries deleting storage objects whose removal failed,
    then purges tombstoned records that no longer own any objects.
    """

    name = "orphaned placement cleanup task"

    def __init__(
        self,
        backends: Mapping[str, StorageBackend],
        metadata_store: MetadataStore,
        interval_seconds: float = ORPHAN_CLEANUP_INTERVAL,
        max_attempts: int = ORPHAN_MAX_ATTEMPTS,
    ):
        super().__init__(interval_seconds)
        self.backends = backends
        self.metadata_store = metadata_store
        self.max_attempts = max_attempts

    async def run_once(self) -> int:
        """Execute one cleanup cycle. Returns the number of objects removed."""
        orphans = OrphanRepository.list_all()
        if not orphans:
            logger.debug("No orphaned placements to clean")
            await self.metadata_store.purge_tombstones(self.max_attempts)
            return 0

        logger.info(f"Starting cleanup cycle for {len(orphans)} orphaned placements")
        cleaned_count = 0

        for orphan in orphans:
            if orphan.attempts >= self.max_attempts:
                continue

            backend = self.backends.get(orphan.backend_name)
            if backend is None:
                OrphanRepository.record_attempt(orphan.orphan_id, f"unknown backend {orphan.backend_name}")
                continue

            try:
                await backend.delete(orphan.object_key)
            except Exception as e:
                logger.warning(
                    f"Error cleaning orphaned placement [backend={orphan.backend_name}] [key={orphan.object_key}]: {e}"
                )
                OrphanRepository.record_attempt(orphan.orphan_id, str(e))
                if orphan.attempts + 1 >= self.max_attempts:
                    logger.error(
                        f"Giving up on orphaned placement [backend={orphan.backend_name}] [key={orphan.object_key}]"
                    )
                continue

            OrphanRepository.remove(orphan.orphan_id)
            cleaned_count += 1
            logger.info(f"Cleaned orphaned placement [backend={orphan.backend_name}] [key={orphan.object_key}]")

        await self.metadata_store.purge_tombstones(self.max_attempts)
        logger.info(f"Cleanup cycle complete: {cleaned_count} cleaned, {len(orphans) - cleaned_count} remaining")
        return cleaned_count


def record_orphan(backend_name: str, object_key: str, file_id: Optional[str], error: str) -> None:
    """Queue a storage object for deletion by the cleanup task."""
    logger.warning(f"Recording orphaned placement [backend={backend_name}] [key={object_key}]: {error}")
    OrphanRepository.record(backend_name, object_key, file_id, error)
