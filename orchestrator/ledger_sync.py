"""Background anchoring of file records to an external ledger."""

import asyncio
import hashlib
import json
import random
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from common.logging_config import get_logger
from orchestrator.config import LEDGER_BATCH_SIZE, LEDGER_MAX_ATTEMPTS, LEDGER_SYNC_INTERVAL
from orchestrator.exceptions import LedgerSyncError
from orchestrator.metadata_store import MetadataStore
from orchestrator.observers import StorageObserver
from orchestrator.periodic import PeriodicTask
from orchestrator.repositories import LedgerQueueEntry, LedgerRepository
from orchestrator.types import LedgerStatus

logger = get_logger(__name__)


class LedgerClient(ABC):
    """Anchors a payload somewhere external and returns a confirmation reference."""

    @abstractmethod
    async def anchor(self, payload: Dict[str, Any]) -> str:
        """Return the external reference. Raise LedgerSyncError on failure."""


class SimulatedLedgerClient(LedgerClient):
    """
    Produces a deterministic transaction-style reference from the payload.
    There is no real ledger behind it.
    """

    def __init__(self, latency_seconds: float = 0.0, failure_rate: float = 0.0):
        self.latency_seconds = latency_seconds
        self.failure_rate = failure_rate

    async def anchor(self, payload: Dict[str, Any]) -> str:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        if self.failure_rate and random.random() < self.failure_rate:
            raise LedgerSyncError("simulated ledger rejected the transaction")
        digest = hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()
        return f"0x{digest}"


class LedgerSyncWorker(PeriodicTask):
    """
    Drains the ledger queue in small batches.

    Each entry gets at most `max_attempts` tries; after that it is marked
    failed with a terminal error log. Foreground operations only enqueue.
    """

    name = "ledger sync worker"

    def __init__(
        self,
        metadata_store: MetadataStore,
        client: Optional[LedgerClient] = None,
        interval_seconds: float = LEDGER_SYNC_INTERVAL,
        batch_size: int = LEDGER_BATCH_SIZE,
        max_attempts: int = LEDGER_MAX_ATTEMPTS,
        observer: Optional[StorageObserver] = None,
    ):
        super().__init__(interval_seconds)
        self.metadata_store = metadata_store
        self.client = client or SimulatedLedgerClient()
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.observer = observer or StorageObserver()

    async def run_once(self) -> int:
        """Process one batch. Returns the number of entries confirmed."""
        entries = LedgerRepository.fetch_pending(self.batch_size)
        if not entries:
            return 0

        logger.debug(f"Ledger sync batch of {len(entries)} entries")
        results = await asyncio.gather(*(self._sync_entry(entry) for entry in entries))
        return sum(1 for confirmed in results if confirmed)

    async def _sync_entry(self, entry: LedgerQueueEntry) -> bool:
        try:
            external_ref = await self.client.anchor(entry.payload)
        except Exception as e:
            error = str(e) or type(e).__name__
            attempts = LedgerRepository.record_failure(entry.entry_id, error, self.max_attempts)
            if attempts >= self.max_attempts:
                logger.error(
                    f"Ledger sync gave up after {attempts} attempts [file_id={entry.file_id}]: {error}"
                )
                await self.metadata_store.update_ledger_sync(
                    entry.file_id, LedgerStatus.FAILED, attempts=attempts
                )
                self.observer.on_ledger_synced(entry.file_id, None, False)
            else:
                logger.warning(
                    f"Ledger sync attempt {attempts}/{self.max_attempts} failed [file_id={entry.file_id}]: {error}"
                )
            return False

        LedgerRepository.mark_confirmed(entry.entry_id)
        await self.metadata_store.update_ledger_sync(
            entry.file_id, LedgerStatus.CONFIRMED, external_ref=external_ref, attempts=entry.attempts + 1
        )
        self.observer.on_ledger_synced(entry.file_id, external_ref, True)
        logger.info(f"Ledger sync confirmed [file_id={entry.file_id}] ref={external_ref[:18]}")
        return True

