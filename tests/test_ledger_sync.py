"""Tests for the ledger sync worker."""

import asyncio

import pytest

from orchestrator.ledger_sync import LedgerSyncWorker, SimulatedLedgerClient
from orchestrator.repositories import LedgerRepository
from orchestrator.types import LedgerStatus, UploadMetadata
from tests.doubles import FailingLedgerClient, RecordingObserver


async def upload(service, data=b"hello", name="hello.txt"):
    outcome = await service.process_upload(data, UploadMetadata(original_name=name, owner="alice"))
    return outcome.file_id


class TestLedgerSyncWorker:
    """Test queue draining, retries and terminal failure."""

    @pytest.mark.asyncio
    async def test_confirms_pending_entry(self, storage):
        service, _, _ = storage
        file_id = await upload(service)
        observer = RecordingObserver()
        worker = LedgerSyncWorker(service.metadata_store, SimulatedLedgerClient(), observer=observer)

        assert await worker.run_once() == 1

        record = await service.metadata_store.get(file_id)
        assert record.ledger_sync.status == LedgerStatus.CONFIRMED
        assert record.ledger_sync.external_ref.startswith("0x")
        assert record.ledger_sync.synced_at is not None
        assert record.version == 1
        assert LedgerRepository.count_by_status() == {"confirmed": 1}
        assert observer.of_kind("ledger") == [("ledger", file_id, True)]

    @pytest.mark.asyncio
    async def test_empty_queue(self, storage):
        service, _, _ = storage
        client = FailingLedgerClient()

        assert await LedgerSyncWorker(service.metadata_store, client).run_once() == 0
        assert client.calls == 0

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, storage):
        service, _, _ = storage
        file_id = await upload(service)
        worker = LedgerSyncWorker(service.metadata_store, FailingLedgerClient(failures=1))

        assert await worker.run_once() == 0
        assert (await service.metadata_store.get(file_id)).ledger_sync.status == LedgerStatus.PENDING

        assert await worker.run_once() == 1
        record = await service.metadata_store.get(file_id)
        assert record.ledger_sync.status == LedgerStatus.CONFIRMED
        assert record.ledger_sync.external_ref == "0xref2"
        assert record.ledger_sync.attempts == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, storage):
        service, _, _ = storage
        file_id = await upload(service)
        client = FailingLedgerClient()
        observer = RecordingObserver()
        worker = LedgerSyncWorker(service.metadata_store, client, max_attempts=3, observer=observer)

        for _ in range(3):
            assert await worker.run_once() == 0

        record = await service.metadata_store.get(file_id)
        assert record.ledger_sync.status == LedgerStatus.FAILED
        assert record.ledger_sync.attempts == 3
        assert LedgerRepository.count_by_status() == {"failed": 1}
        assert observer.of_kind("ledger") == [("ledger", file_id, False)]

        await worker.run_once()
        assert client.calls == 3

    @pytest.mark.asyncio
    async def test_batches_are_bounded(self, storage):
        service, _, _ = storage
        for i in range(7):
            await upload(service, data=f"file {i}".encode(), name=f"f{i}.txt")
        worker = LedgerSyncWorker(service.metadata_store, SimulatedLedgerClient(), batch_size=5)

        assert await worker.run_once() == 5
        assert await worker.run_once() == 2
        assert await worker.run_once() == 0

    @pytest.mark.asyncio
    async def test_updates_are_anchored_too(self, storage):
        service, _, _ = storage
        file_id = await upload(service)
        await service.update_file(file_id, {"description": "signed copy"})

        pending = LedgerRepository.fetch_pending(10)

        assert [entry.payload["action"] for entry in pending] == ["created", "updated"]
        assert pending[1].payload["version"] == 2

    @pytest.mark.asyncio
    async def test_background_loop_drains_queue(self, storage):
        service, _, _ = storage
        await upload(service)
        worker = LedgerSyncWorker(service.metadata_store, SimulatedLedgerClient(), interval_seconds=0.01)

        await worker.start()
        try:
            for _ in range(200):
                if LedgerRepository.count_by_status() == {"confirmed": 1}:
                    break
                await asyncio.sleep(0.01)
        finally:
            await worker.stop()

        assert LedgerRepository.count_by_status() == {"confirmed": 1}
        assert not worker.running
