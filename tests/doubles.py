"""Backend, observer and ledger doubles plus a service builder for tests."""

import asyncio
import os
from typing import Dict, List, Optional, Tuple

from backends.base import BackendError, GetResult
from backends.memory_backend import MemoryBackend
from common.constants import KIB, MIB
from orchestrator.crypto import KeyWrapper
from orchestrator.dedup_index import DeduplicationIndex
from orchestrator.exceptions import LedgerSyncError
from orchestrator.health import HealthTable
from orchestrator.ledger_sync import LedgerClient
from orchestrator.metadata_store import MetadataStore
from orchestrator.observers import StorageObserver
from orchestrator.placement import PlacementEngine
from orchestrator.services.storage_service import StorageService
from orchestrator.transform import TransformPipeline
from orchestrator.validation import FileValidator

PRIMARY = "primary"
ARCHIVAL = "archival"


class FailingBackend(MemoryBackend):
    """Memory backend whose operations can be told to fail or corrupt data."""

    def __init__(self, name: str, **kwargs):
        super().__init__(name, **kwargs)
        self.fail_put = False
        self.fail_get = False
        self.fail_delete = False
        self.fail_part: Optional[int] = None
        self.part_delay = 0.0
        self.corrupt_reads = False
        self.put_calls = 0
        self.aborted: List[str] = []

    async def put(self, key, data, content_type=None, attributes=None):
        self.put_calls += 1
        if self.fail_put:
            raise BackendError(f"{self.name} refused put", backend_name=self.name)
        return await super().put(key, data, content_type, attributes)

    async def get(self, key):
        if self.fail_get:
            raise BackendError(f"{self.name} refused get", backend_name=self.name)
        result = await super().get(key)
        if self.corrupt_reads:
            corrupted = bytes([result.data[0] ^ 0xFF]) + result.data[1:]
            return GetResult(data=corrupted, attributes=result.attributes, content_type=result.content_type)
        return result

    async def delete(self, key):
        if self.fail_delete:
            raise BackendError(f"{self.name} refused delete", backend_name=self.name)
        return await super().delete(key)

    async def upload_part(self, key, upload_id, part_number, data, checksum):
        if self.part_delay:
            await asyncio.sleep(self.part_delay)
        if self.fail_part is not None and part_number == self.fail_part:
            raise BackendError(f"{self.name} refused part {part_number}", backend_name=self.name)
        return await super().upload_part(key, upload_id, part_number, data, checksum)

    async def abort_multipart(self, key, upload_id):
        self.aborted.append(upload_id)
        await super().abort_multipart(key, upload_id)


class RecordingObserver(StorageObserver):
    """Collects every hook call for assertions."""

    def __init__(self):
        self.events: List[Tuple] = []

    def on_health_changed(self, backend_name, healthy, detail):
        self.events.append(("health", backend_name, healthy))

    def on_upload_progress(self, backend_name, key, parts_done, parts_total):
        self.events.append(("progress", backend_name, parts_done, parts_total))

    def on_placement_failed(self, backend_name, key, error):
        self.events.append(("placement_failed", backend_name))

    def on_backup_failed(self, backend_name, key, error):
        self.events.append(("backup_failed", backend_name))

    def on_upload_completed(self, file_id, deduplicated):
        self.events.append(("completed", file_id, deduplicated))

    def on_ledger_synced(self, file_id, external_ref, success):
        self.events.append(("ledger", file_id, success))

    def on_placement_stored(self, backend_name, key, size_bytes, elapsed_ms):
        self.events.append(("stored", backend_name, size_bytes))

    def on_download_attempt(self, backend_name, file_id, size_bytes, elapsed_ms, error):
        self.events.append(("download", backend_name, error is None))

    def of_kind(self, kind: str) -> List[Tuple]:
        return [event for event in self.events if event[0] == kind]


class FailingLedgerClient(LedgerClient):
    """Ledger client that rejects the first `failures` anchors."""

    def __init__(self, failures: int = 1_000_000):
        self.failures = failures
        self.calls = 0

    async def anchor(self, payload):
        self.calls += 1
        if self.calls <= self.failures:
            raise LedgerSyncError("ledger unreachable")
        return f"0xref{self.calls}"


def mark_all_healthy(health_table: HealthTable, backends: Dict) -> None:
    for name in backends:
        health_table.mark(name, True, "ok")


def build_service(
    backends: Optional[Dict] = None,
    observer: Optional[StorageObserver] = None,
    chunk_size: int = 256 * KIB,
    compression_threshold: int = 1 * KIB,
    small_file_ceiling: int = 10 * MIB,
    large_file_ceiling: int = 100 * MIB,
    critical_size_ceiling: int = 200 * MIB,
    encrypt_by_default: bool = False,
    failover_enabled: bool = True,
    healthy: bool = True,
):
    """
    Assemble a StorageService over memory backends. Requires `test_db`.

    Returns (service, backends, health_table).
    """
    if backends is None:
        backends = {
            PRIMARY: FailingBackend(PRIMARY, multipart_part_size=64 * KIB),
            ARCHIVAL: FailingBackend(ARCHIVAL, multipart_part_size=64 * KIB),
        }
    observer = observer or StorageObserver()
    health_table = HealthTable(backends)
    if healthy:
        mark_all_healthy(health_table, backends)

    metadata_store = MetadataStore(key_wrapper=KeyWrapper("test-wrapping-secret"), max_versions=10)
    dedup_index = DeduplicationIndex()
    pipeline = TransformPipeline(
        dedup_index=dedup_index,
        chunk_size=chunk_size,
        compression_threshold=compression_threshold,
    )
    placement_engine = PlacementEngine(
        backends,
        health_table,
        primary_backend=PRIMARY,
        archival_backend=ARCHIVAL,
        small_file_ceiling=small_file_ceiling,
        large_file_ceiling=large_file_ceiling,
        critical_size_ceiling=critical_size_ceiling,
        failover_enabled=failover_enabled,
        upload_timeout=30,
        observer=observer,
    )
    service = StorageService(
        backends=backends,
        health_table=health_table,
        metadata_store=metadata_store,
        placement_engine=placement_engine,
        pipeline=pipeline,
        dedup_index=dedup_index,
        validator=FileValidator(),
        observer=observer,
        encrypt_by_default=encrypt_by_default,
    )
    return service, backends, health_table


def random_payload(size: int) -> bytes:
    """Incompressible bytes that never start with a recognised file signature."""
    return b"\x00" + os.urandom(size - 1)
