"""Builds every orchestrator component from configuration and owns their lifecycle."""

from typing import Dict, Mapping, Optional

from backends.base import StorageBackend
from backends.factory import create_backend
from common.logging_config import get_logger
from orchestrator import config
from orchestrator.cleanup_task import OrphanedPlacementCleaner
from orchestrator.crypto import KeyWrapper
from orchestrator.dedup_index import DeduplicationIndex
from orchestrator.health import BackendHealthMonitor, HealthTable
from orchestrator.ledger_sync import LedgerClient, LedgerSyncWorker
from orchestrator.metadata_store import MetadataStore
from orchestrator.metrics import BackendMetricsCollector, MetricsRollup
from orchestrator.observers import CompositeObserver, StorageObserver
from orchestrator.periodic import PeriodicTask
from orchestrator.placement import PlacementEngine
from orchestrator.retrieval import RetrievalRouter
from orchestrator.security import AccessTokenManager, DownloadSigner, RateLimiter
from orchestrator.services.storage_service import StorageService
from orchestrator.transform import TransformPipeline
from orchestrator.validation import FileValidator

logger = get_logger(__name__)


class RateLimitPruner(PeriodicTask):
    name = "rate limit pruner"

    def __init__(self, rate_limiter: RateLimiter, interval_seconds: float = 60):
        super().__init__(interval_seconds)
        self.rate_limiter = rate_limiter

    async def run_once(self) -> None:
        self.rate_limiter.prune()


def build_backends() -> Dict[str, StorageBackend]:
    options = {
        "multipart_part_size": config.MULTIPART_PART_SIZE,
        "multipart_concurrency": config.MULTIPART_CONCURRENCY,
    }
    return {
        config.PRIMARY_BACKEND_NAME: create_backend(config.PRIMARY_BACKEND_NAME, config.PRIMARY_BACKEND_URL, **options),
        config.ARCHIVAL_BACKEND_NAME: create_backend(config.ARCHIVAL_BACKEND_NAME, config.ARCHIVAL_BACKEND_URL, **options),
    }


class StorageRuntime:
    """
    The assembled orchestrator: backends, health, metadata, pipeline,
    placement, retrieval, security and background tasks.
    """

    def __init__(
        self,
        backends: Optional[Mapping[str, StorageBackend]] = None,
        observer: Optional[StorageObserver] = None,
        ledger_client: Optional[LedgerClient] = None,
        primary_backend: str = config.PRIMARY_BACKEND_NAME,
        archival_backend: str = config.ARCHIVAL_BACKEND_NAME,
    ):
        self.backends = dict(backends) if backends is not None else build_backends()
        self.metrics = BackendMetricsCollector()
        self.observer = CompositeObserver(observer, self.metrics)

        self.health_table = HealthTable(self.backends)
        self.health_monitor = BackendHealthMonitor(
            self.backends,
            self.health_table,
            interval_seconds=config.HEALTH_CHECK_INTERVAL,
            timeout_seconds=config.HEALTH_CHECK_TIMEOUT,
            observer=self.observer,
        )

        self.metadata_store = MetadataStore(
            key_wrapper=KeyWrapper(config.KEY_WRAPPING_SECRET),
            max_versions=config.MAX_VERSIONS,
            ledger_enabled=config.LEDGER_SYNC_ENABLED,
        )
        self.dedup_index = DeduplicationIndex()
        self.pipeline = TransformPipeline(
            dedup_index=self.dedup_index,
            chunk_size=config.CHUNK_SIZE,
            compression_threshold=config.COMPRESSION_THRESHOLD,
            compression_ratio_limit=config.COMPRESSION_RATIO_LIMIT,
            compression_level=config.COMPRESSION_LEVEL,
            enable_deduplication=config.ENABLE_DEDUPLICATION,
            enable_compression=config.ENABLE_COMPRESSION,
            enable_encryption=config.ENABLE_ENCRYPTION,
            enable_chunking=config.ENABLE_CHUNKING,
        )
        self.placement_engine = PlacementEngine(
            self.backends,
            self.health_table,
            primary_backend=primary_backend,
            archival_backend=archival_backend,
            small_file_ceiling=config.SMALL_FILE_CEILING,
            large_file_ceiling=config.LARGE_FILE_CEILING,
            critical_size_ceiling=config.CRITICAL_SIZE_CEILING,
            failover_enabled=config.FAILOVER_ENABLED,
            upload_timeout=config.UPLOAD_TIMEOUT_SECONDS,
            observer=self.observer,
        )
        self.retrieval_router = RetrievalRouter(
            self.backends, self.metadata_store, self.pipeline, observer=self.observer
        )
        self.storage_service = StorageService(
            backends=self.backends,
            health_table=self.health_table,
            metadata_store=self.metadata_store,
            placement_engine=self.placement_engine,
            pipeline=self.pipeline,
            dedup_index=self.dedup_index,
            validator=FileValidator(
                max_file_size=config.MAX_FILE_SIZE,
                max_filename_length=config.FILENAME_MAX_LENGTH,
            ),
            retrieval_router=self.retrieval_router,
            observer=self.observer,
        )

        self.token_manager = AccessTokenManager()
        self.download_signer = DownloadSigner()
        self.rate_limiter = RateLimiter()

        self.ledger_worker = LedgerSyncWorker(self.metadata_store, client=ledger_client, observer=self.observer)
        self.orphan_cleaner = OrphanedPlacementCleaner(self.backends, self.metadata_store)
        self.rate_limit_pruner = RateLimitPruner(self.rate_limiter)
        self.metrics_rollup = MetricsRollup(self.metrics, interval_seconds=config.METRICS_ROLLUP_INTERVAL)

    def background_tasks(self):
        tasks = [self.health_monitor, self.orphan_cleaner, self.rate_limit_pruner, self.metrics_rollup]
        if config.LEDGER_SYNC_ENABLED:
            tasks.append(self.ledger_worker)
        return tasks

    async def start(self) -> None:
        await self.health_monitor.check_all()
        for task in self.background_tasks():
            await task.start()
        logger.info(f"Storage runtime started with backends {sorted(self.backends)}")

    async def stop(self) -> None:
        for task in reversed(self.background_tasks()):
            await task.stop()
        logger.info("Storage runtime stopped")
