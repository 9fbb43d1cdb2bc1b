"""Tests for the S3 backend against moto."""

import boto3
import pytest
from moto import mock_aws

from backends.base import BackendError, ObjectNotFoundError
from backends.s3_backend import S3Backend
from common.constants import MIB

TEST_BUCKET_NAME = "strata-test-bucket"


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so boto3 never looks for real ones."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def s3_backend(aws_credentials):
    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket=TEST_BUCKET_NAME)
        yield S3Backend("s3", bucket=TEST_BUCKET_NAME, client=client, multipart_part_size=5 * MIB)


class TestS3Backend:
    """Test S3Backend object and multipart operations."""

    @pytest.mark.asyncio
    async def test_put_get_round_trip(self, s3_backend):
        result = await s3_backend.put(
            "uploads/a.txt", b"hello", content_type="text/plain", attributes={"file-id": "f1"}
        )
        fetched = await s3_backend.get("uploads/a.txt")

        assert result.location_uri == f"s3://{TEST_BUCKET_NAME}/uploads/a.txt"
        assert result.size_bytes == 5
        assert fetched.data == b"hello"
        assert fetched.content_type == "text/plain"
        assert fetched.attributes == {"file-id": "f1"}

    @pytest.mark.asyncio
    async def test_missing_object(self, s3_backend):
        with pytest.raises(ObjectNotFoundError):
            await s3_backend.get("nope")

    @pytest.mark.asyncio
    async def test_delete(self, s3_backend):
        await s3_backend.put("k", b"v")

        assert await s3_backend.delete("k") is True
        assert await s3_backend.delete("k") is False

    @pytest.mark.asyncio
    async def test_list_paginates(self, s3_backend):
        for name in ("uploads/a", "uploads/b", "uploads/c"):
            await s3_backend.put(name, b"data")

        first = await s3_backend.list(prefix="uploads/", max_keys=2)
        second = await s3_backend.list(prefix="uploads/", max_keys=2, continuation_token=first.next_token)

        assert [o.key for o in first.objects] == ["uploads/a", "uploads/b"]
        assert first.next_token is not None
        assert [o.key for o in second.objects] == ["uploads/c"]
        assert second.next_token is None

    @pytest.mark.asyncio
    async def test_multipart_upload(self, s3_backend):
        parts = [b"a" * (5 * MIB), b"b" * (5 * MIB), b"c" * 1024]
        result = await s3_backend.put_multipart("big.bin", parts)
        fetched = await s3_backend.get("big.bin")

        assert result.size_bytes == 10 * MIB + 1024
        assert fetched.data == b"".join(parts)

    @pytest.mark.asyncio
    async def test_failed_multipart_is_aborted(self, s3_backend):
        # every part but the last must be at least 5 MiB, so completion fails
        with pytest.raises(BackendError):
            await s3_backend.put_multipart("small-parts.bin", [b"a" * 1024, b"b" * 1024])

        uploads = s3_backend.client.list_multipart_uploads(Bucket=TEST_BUCKET_NAME)
        assert uploads.get("Uploads", []) == []

    @pytest.mark.asyncio
    async def test_health_check(self, s3_backend):
        assert (await s3_backend.health_check()).healthy

        missing = S3Backend("other", bucket="does-not-exist", client=s3_backend.client)
        status = await missing.health_check()
        assert not status.healthy
