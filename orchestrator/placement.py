"""Placement strategy engine: choose backends for a blob and upload to them."""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from backends.base import PutResult, StorageBackend, UploadTimeoutError
from common.constants import (
    CRITICAL_SIZE_CEILING_BYTES,
    LARGE_FILE_CEILING_BYTES,
    ROLE_BACKUP,
    ROLE_PRIMARY,
    SMALL_FILE_CEILING_BYTES,
)
from common.logging_config import get_logger
from orchestrator.exceptions import BackendUnavailableError, UploadFailedError
from orchestrator.health import HealthTable
from orchestrator.observers import StorageObserver
from orchestrator.types import StoragePlacement, UploadFlags
from orchestrator.utils import utcnow

logger = get_logger(__name__)

STRATEGY_PERMANENT = "permanent"
STRATEGY_CRITICAL = "critical"
STRATEGY_SMALL = "small"
STRATEGY_MEDIUM = "medium"
STRATEGY_LARGE = "large"


@dataclass(frozen=True)
class Placement:
    """Backends chosen for one upload after health gating."""
    strategy: str
    primary: str
    backup: Optional[str] = None


@dataclass(frozen=True)
class PlacementResult:
    strategy: str
    placements: Tuple[StoragePlacement, ...]
    backup_error: Optional[str] = None
    failed_over: bool = False


class PlacementEngine:
    """
    Maps (final size, flags) to a primary and optional backup backend.

    Rules, first match wins:
        permanent                      -> archival, backup primary
        critical and size < critical   -> primary, backup archival
        size < small ceiling           -> primary, backup archival
        size < large ceiling           -> primary, no backup
        otherwise                      -> primary, no backup

    Only backends the health table reports as healthy are chosen.
    """

    def __init__(
        self,
        backends: Mapping[str, StorageBackend],
        health_table: HealthTable,
        primary_backend: str,
        archival_backend: str,
        small_file_ceiling: int = SMALL_FILE_CEILING_BYTES,
        large_file_ceiling: int = LARGE_FILE_CEILING_BYTES,
        critical_size_ceiling: int = CRITICAL_SIZE_CEILING_BYTES,
        failover_enabled: bool = True,
        upload_timeout: Optional[float] = None,
        observer: Optional[StorageObserver] = None,
    ):
        for name in (primary_backend, archival_backend):
            if name not in backends:
                raise ValueError(f"Unknown backend {name!r}")
        self.backends = backends
        self.health_table = health_table
        self.primary_backend = primary_backend
        self.archival_backend = archival_backend
        self.small_file_ceiling = small_file_ceiling
        self.large_file_ceiling = large_file_ceiling
        self.critical_size_ceiling = critical_size_ceiling
        self.failover_enabled = failover_enabled
        self.upload_timeout = upload_timeout
        self.observer = observer or StorageObserver()

    def classify(self, size_bytes: int, flags: UploadFlags) -> Tuple[str, str, Optional[str]]:
        """Return (strategy, nominal primary, nominal backup) ignoring health."""
        if flags.permanent:
            return STRATEGY_PERMANENT, self.archival_backend, self.primary_backend
        if flags.critical and size_bytes < self.critical_size_ceiling:
            return STRATEGY_CRITICAL, self.primary_backend, self.archival_backend
        if size_bytes < self.small_file_ceiling:
            return STRATEGY_SMALL, self.primary_backend, self.archival_backend
        if size_bytes < self.large_file_ceiling:
            return STRATEGY_MEDIUM, self.primary_backend, None
        return STRATEGY_LARGE, self.primary_backend, None

    def select_placement(self, size_bytes: int, flags: UploadFlags) -> Placement:
        strategy, primary, backup = self.classify(size_bytes, flags)
        if backup == primary:
            backup = None
        healthy = self.health_table.is_healthy

        if healthy(primary):
            return Placement(strategy=strategy, primary=primary, backup=backup if backup and healthy(backup) else None)

        if backup and healthy(backup):
            logger.warning(f"Primary backend {primary} unhealthy, placing on {backup} [strategy={strategy}]")
            return Placement(strategy=strategy, primary=backup)

        for name in self.backends:
            if healthy(name):
                logger.warning(f"Nominal backends unhealthy, falling back to {name} [strategy={strategy}]")
                return Placement(strategy=strategy, primary=name)

        raise BackendUnavailableError("No healthy storage backend is available")

    async def upload(
        self,
        key: str,
        blob: bytes,
        final_hash: str,
        flags: UploadFlags,
        parts: Optional[Sequence[bytes]] = None,
        content_type: Optional[str] = None,
        attributes: Optional[Dict[str, str]] = None,
    ) -> PlacementResult:
        """
        Store `blob` on the selected primary, failing over to the backup,
        then copy it to the backup best-effort.

        Raises:
            BackendUnavailableError: No healthy backend, nothing was sent
            UploadFailedError: Primary and failover both failed
        """
        placement = self.select_placement(len(blob), flags)
        causes: Dict[str, str] = {}
        backup = placement.backup
        failed_over = False

        try:
            result = await self._put(placement.primary, key, blob, parts, content_type, attributes)
            primary_name = placement.primary
        except Exception as e:
            causes[placement.primary] = str(e) or type(e).__name__
            logger.warning(f"Primary placement failed [backend={placement.primary}] [key={key}]: {e}")
            self.observer.on_placement_failed(placement.primary, key, causes[placement.primary])
            if not (backup and self.failover_enabled):
                raise UploadFailedError(f"Upload to {placement.primary} failed", causes) from e
            try:
                result = await self._put(backup, key, blob, parts, content_type, attributes)
            except Exception as backup_error:
                causes[backup] = str(backup_error) or type(backup_error).__name__
                self.observer.on_placement_failed(backup, key, causes[backup])
                raise UploadFailedError(
                    f"Upload failed on {placement.primary} and failover {backup}", causes
                ) from backup_error
            logger.info(f"Failed over to {backup} [key={key}]")
            primary_name, backup, failed_over = backup, None, True

        placements: List[StoragePlacement] = [
            self._placement(primary_name, key, result, ROLE_PRIMARY, final_hash)
        ]

        backup_error = None
        if backup and flags.create_backup:
            try:
                backup_result = await self._put(backup, key, blob, parts, content_type, attributes)
                placements.append(self._placement(backup, key, backup_result, ROLE_BACKUP, final_hash))
            except Exception as e:
                backup_error = str(e) or type(e).__name__
                logger.warning(f"Backup copy failed [backend={backup}] [key={key}]: {e}")
                self.observer.on_backup_failed(backup, key, backup_error)

        return PlacementResult(
            strategy=placement.strategy,
            placements=tuple(placements),
            backup_error=backup_error,
            failed_over=failed_over,
        )

    async def _put(
        self,
        backend_name: str,
        key: str,
        blob: bytes,
        parts: Optional[Sequence[bytes]],
        content_type: Optional[str],
        attributes: Optional[Dict[str, str]],
    ) -> PutResult:
        backend = self.backends[backend_name]
        chunked = parts is not None and len(parts) > 1

        if chunked or len(blob) > backend.max_object_size:
            part_list = list(parts) if chunked else backend.split_for_multipart(blob)

            def progress(done: int, total: int) -> None:
                self.observer.on_upload_progress(backend_name, key, done, total)

            operation = backend.put_multipart(
                key, part_list, content_type=content_type, attributes=attributes, progress_callback=progress
            )
        else:
            operation = backend.put(key, blob, content_type=content_type, attributes=attributes)

        started = time.perf_counter()
        try:
            if self.upload_timeout:
                result = await asyncio.wait_for(operation, timeout=self.upload_timeout)
            else:
                result = await operation
        except asyncio.TimeoutError as e:
            raise UploadTimeoutError(
                f"Upload to {backend_name} timed out after {self.upload_timeout}s", backend_name=backend_name
            ) from e
        elapsed_ms = (time.perf_counter() - started) * 1000
        self.observer.on_placement_stored(backend_name, key, result.size_bytes, elapsed_ms)
        return result

    @staticmethod
    def _placement(backend_name: str, key: str, result: PutResult, role: str, final_hash: str) -> StoragePlacement:
        return StoragePlacement(
            backend_name=backend_name,
            key=key,
            location_uri=result.location_uri,
            size_bytes=result.size_bytes,
            etag=result.etag,
            role=role,
            sha256=final_hash,
            stored_at=utcnow(),
        )
