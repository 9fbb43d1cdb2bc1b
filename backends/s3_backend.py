"""S3-compatible storage backend built on boto3."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from backends.base import (
    BackendError,
    GetResult,
    HealthStatus,
    ListPage,
    ObjectInfo,
    ObjectNotFoundError,
    PartReceipt,
    PutResult,
    StorageBackend,
    attributes_with_defaults,
)
from common.logging_config import get_logger

logger = get_logger(__name__)

NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class S3Backend(StorageBackend):
    """
    Talks to any S3-compatible endpoint (AWS, Storj gateway, MinIO, moto).

    boto3 is synchronous, so every call runs in a worker thread.
    """

    def __init__(
        self,
        name: str,
        bucket: str,
        client: Any = None,
        endpoint_url: Optional[str] = None,
        region_name: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(name, **kwargs)
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            region_name=region_name,
            endpoint_url=endpoint_url,
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
        )

    def _uri(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    async def _call(self, method: str, **params) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(getattr(self.client, method), **params)
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                raise ObjectNotFoundError(
                    f"Object not found: {params.get('Key')}", backend_name=self.name
                ) from e
            raise BackendError(f"S3 {method} failed: {_error_code(e) or e}", backend_name=self.name) from e
        except BotoCoreError as e:
            raise BackendError(f"S3 {method} failed: {e}", backend_name=self.name) from e

    async def put(self, key, data, content_type=None, attributes=None) -> PutResult:
        response = await self._call(
            "put_object",
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type or "application/octet-stream",
            Metadata=attributes_with_defaults(attributes),
        )
        return PutResult(
            location_uri=self._uri(key),
            etag=response.get("ETag", "").strip('"'),
            size_bytes=len(data),
        )

    async def get(self, key) -> GetResult:
        response = await self._call("get_object", Bucket=self.bucket, Key=key)
        data = await asyncio.to_thread(response["Body"].read)
        return GetResult(
            data=data,
            attributes=dict(response.get("Metadata", {})),
            content_type=response.get("ContentType"),
        )

    async def delete(self, key) -> bool:
        try:
            await self._call("head_object", Bucket=self.bucket, Key=key)
        except ObjectNotFoundError:
            return False
        await self._call("delete_object", Bucket=self.bucket, Key=key)
        return True

    async def list(self, prefix="", max_keys=1000, continuation_token=None) -> ListPage:
        params = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": max_keys}
        if continuation_token:
            params["ContinuationToken"] = continuation_token
        response = await self._call("list_objects_v2", **params)
        objects = [
            ObjectInfo(
                key=item["Key"],
                size_bytes=item["Size"],
                last_modified=item["LastModified"],
                etag=item.get("ETag", "").strip('"'),
            )
            for item in response.get("Contents", [])
        ]
        next_token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return ListPage(objects=objects, next_token=next_token)

    async def create_multipart(self, key, content_type=None, attributes=None) -> str:
        response = await self._call(
            "create_multipart_upload",
            Bucket=self.bucket,
            Key=key,
            ContentType=content_type or "application/octet-stream",
            Metadata=attributes_with_defaults(attributes),
        )
        return response["UploadId"]

    async def upload_part(self, key, upload_id, part_number, data, checksum) -> PartReceipt:
        self._verify_part(data, checksum, part_number)
        response = await self._call(
            "upload_part",
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=data,
        )
        return PartReceipt(
            part_number=part_number,
            etag=response["ETag"],
            checksum=checksum,
            size_bytes=len(data),
        )

    async def complete_multipart(self, key, upload_id, receipts: Sequence[PartReceipt]) -> PutResult:
        response = await self._call(
            "complete_multipart_upload",
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [
                    {"ETag": receipt.etag, "PartNumber": receipt.part_number}
                    for receipt in receipts
                ]
            },
        )
        return PutResult(
            location_uri=self._uri(key),
            etag=response.get("ETag", "").strip('"'),
            size_bytes=sum(receipt.size_bytes for receipt in receipts),
        )

    async def abort_multipart(self, key, upload_id) -> None:
        await self._call("abort_multipart_upload", Bucket=self.bucket, Key=key, UploadId=upload_id)

    async def health_check(self) -> HealthStatus:
        now = datetime.now(timezone.utc)
        try:
            await self._call("head_bucket", Bucket=self.bucket)
        except BackendError as e:
            logger.warning(f"Health check failed [backend={self.name}]: {e}")
            return HealthStatus(healthy=False, detail=str(e), checked_at=now)
        return HealthStatus(healthy=True, detail="ok", checked_at=now)
