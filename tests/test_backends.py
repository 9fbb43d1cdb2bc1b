"""Tests for the storage backend adapters and multipart sessions."""

import asyncio

import pytest

from backends.base import BackendError, ChecksumMismatchError, ObjectNotFoundError
from backends.factory import create_backend
from backends.local_backend import LocalDiskBackend
from backends.memory_backend import MemoryBackend
from backends.multipart import MultipartState, MultipartUpload
from common.checksum import compute_checksum
from tests.doubles import FailingBackend


@pytest.fixture(params=["memory", "local"])
def backend(request, tmp_path):
    """Each generic test runs against both self-contained backends."""
    if request.param == "memory":
        return MemoryBackend("store", multipart_part_size=4)
    return LocalDiskBackend("store", tmp_path / "store", multipart_part_size=4)


class TestObjectOperations:
    """Test put/get/delete/list on every backend."""

    @pytest.mark.asyncio
    async def test_put_then_get(self, backend):
        result = await backend.put("uploads/a.txt", b"hello", content_type="text/plain", attributes={"owner": "u1"})
        fetched = await backend.get("uploads/a.txt")

        assert result.size_bytes == 5
        assert result.etag == compute_checksum(b"hello")
        assert fetched.data == b"hello"
        assert fetched.content_type == "text/plain"
        assert fetched.attributes == {"owner": "u1"}

    @pytest.mark.asyncio
    async def test_get_missing_raises(self, backend):
        with pytest.raises(ObjectNotFoundError):
            await backend.get("missing")

    @pytest.mark.asyncio
    async def test_delete_reports_existence(self, backend):
        await backend.put("k", b"v")

        assert await backend.delete("k") is True
        assert await backend.delete("k") is False

    @pytest.mark.asyncio
    async def test_list_with_prefix_and_pagination(self, backend):
        for name in ("uploads/a", "uploads/b", "uploads/c", "permanent/x"):
            await backend.put(name, b"data")

        first = await backend.list(prefix="uploads/", max_keys=2)
        second = await backend.list(prefix="uploads/", max_keys=2, continuation_token=first.next_token)

        assert [o.key for o in first.objects] == ["uploads/a", "uploads/b"]
        assert first.next_token == "uploads/b"
        assert [o.key for o in second.objects] == ["uploads/c"]
        assert second.next_token is None

    @pytest.mark.asyncio
    async def test_health_check(self, backend):
        status = await backend.health_check()

        assert status.healthy
        assert status.checked_at is not None


class TestMultipart:
    """Test multipart uploads through put_multipart."""

    @pytest.mark.asyncio
    async def test_parts_are_assembled_in_order(self, backend):
        parts = [b"aaaa", b"bbbb", b"cc"]
        result = await backend.put_multipart("big", parts)

        assert (await backend.get("big")).data == b"aaaabbbbcc"
        assert result.size_bytes == 10
        assert result.etag.endswith("-3")
        assert backend.open_upload_count() == 0

    def test_split_for_multipart(self, backend):
        assert backend.split_for_multipart(b"abcdefghij") == [b"abcd", b"efgh", b"ij"]

    @pytest.mark.asyncio
    async def test_bad_part_checksum_rejected(self, backend):
        upload_id = await backend.create_multipart("k")

        with pytest.raises(ChecksumMismatchError):
            await backend.upload_part("k", upload_id, 1, b"data", compute_checksum(b"other"))

    @pytest.mark.asyncio
    async def test_progress_callback_reports_every_part(self, backend):
        progress = []
        await backend.put_multipart("k", [b"a", b"b", b"c"], progress_callback=lambda done, total: progress.append((done, total)))

        assert sorted(progress) == [(1, 3), (2, 3), (3, 3)]


class TestMultipartUpload:
    """Test the multipart state machine."""

    @pytest.mark.asyncio
    async def test_failed_part_aborts_session(self):
        backend = FailingBackend("store")
        backend.fail_part = 2
        upload = MultipartUpload(backend, "k", concurrency=2)

        with pytest.raises(BackendError):
            await upload.run([b"one", b"two", b"three"])

        assert upload.state == MultipartState.ABORTED
        assert len(backend.aborted) == 1
        assert backend.open_upload_count() == 0
        with pytest.raises(ObjectNotFoundError):
            await backend.get("k")

    @pytest.mark.asyncio
    async def test_cancellation_aborts_session(self):
        class SlowBackend(FailingBackend):
            async def upload_part(self, key, upload_id, part_number, data, checksum):
                await asyncio.sleep(10)
                return await super().upload_part(key, upload_id, part_number, data, checksum)

        backend = SlowBackend("store")
        upload = MultipartUpload(backend, "k")

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(upload.run([b"a", b"b"]), timeout=0.1)

        assert upload.state == MultipartState.ABORTED
        assert backend.open_upload_count() == 0

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        in_flight = 0
        peak = 0

        class CountingBackend(MemoryBackend):
            async def upload_part(self, key, upload_id, part_number, data, checksum):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1
                return await super().upload_part(key, upload_id, part_number, data, checksum)

        upload = MultipartUpload(CountingBackend("store"), "k", concurrency=2)
        await upload.run([bytes([i]) for i in range(8)])

        assert peak == 2
        assert upload.state == MultipartState.COMPLETED

    @pytest.mark.asyncio
    async def test_receipts_sorted_even_when_parts_finish_out_of_order(self):
        class ReversedBackend(MemoryBackend):
            async def upload_part(self, key, upload_id, part_number, data, checksum):
                await asyncio.sleep(0.01 * (5 - part_number))
                return await super().upload_part(key, upload_id, part_number, data, checksum)

        backend = ReversedBackend("store")
        upload = MultipartUpload(backend, "k", concurrency=4)
        await upload.run([b"1", b"2", b"3", b"4"])

        assert (await backend.get("k")).data == b"1234"

    @pytest.mark.asyncio
    async def test_complete_twice_is_illegal(self):
        backend = MemoryBackend("store")
        upload = MultipartUpload(backend, "k")
        await upload.run([b"a"])

        with pytest.raises(BackendError):
            await upload.complete(list(upload.receipts.values()))

    def test_zero_concurrency_rejected(self):
        with pytest.raises(ValueError):
            MultipartUpload(MemoryBackend("store"), "k", concurrency=0)


class TestLocalDiskBackend:
    """Test behaviour specific to the filesystem backend."""

    @pytest.mark.asyncio
    async def test_rejects_escaping_keys(self, tmp_path):
        backend = LocalDiskBackend("disk", tmp_path)

        with pytest.raises(BackendError):
            await backend.put("../outside", b"data")
        with pytest.raises(BackendError):
            await backend.put("/absolute", b"data")

    @pytest.mark.asyncio
    async def test_abort_removes_staged_parts(self, tmp_path):
        backend = LocalDiskBackend("disk", tmp_path)
        upload_id = await backend.create_multipart("k")
        await backend.upload_part("k", upload_id, 1, b"data", compute_checksum(b"data"))

        assert backend.open_upload_count() == 1
        await backend.abort_multipart("k", upload_id)
        assert backend.open_upload_count() == 0

    @pytest.mark.asyncio
    async def test_location_uri_is_file_uri(self, tmp_path):
        backend = LocalDiskBackend("disk", tmp_path)
        result = await backend.put("uploads/a.txt", b"data")

        assert result.location_uri.startswith("file://")
        assert (tmp_path / "objects" / "uploads" / "a.txt").read_bytes() == b"data"


class TestBackendFactory:
    """Test create_backend URL parsing."""

    def test_memory_url(self):
        backend = create_backend("m", "memory://")

        assert isinstance(backend, MemoryBackend)
        assert backend.name == "m"

    def test_file_url(self, tmp_path):
        backend = create_backend("d", f"file://{tmp_path}/store", multipart_part_size=1024)

        assert isinstance(backend, LocalDiskBackend)
        assert backend.root == tmp_path / "store"
        assert backend.multipart_part_size == 1024

    def test_unknown_scheme(self):
        with pytest.raises(ValueError):
            create_backend("x", "ftp://host/path")
