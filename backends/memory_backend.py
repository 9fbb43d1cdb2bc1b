"""In-process storage backend for development and tests."""

import uuid
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence, Tuple

from backends.base import (
    GetResult,
    HealthStatus,
    ListPage,
    MultipartStateError,
    ObjectInfo,
    ObjectNotFoundError,
    PartReceipt,
    PutResult,
    StorageBackend,
    attributes_with_defaults,
    multipart_etag,
)
from common.checksum import compute_checksum


class MemoryBackend(StorageBackend):
    """Keeps objects in a dict. Not shared between processes."""

    def __init__(self, name: str, **kwargs):
        super().__init__(name, **kwargs)
        self._objects: Dict[str, Tuple[bytes, Dict[str, str], Optional[str], datetime]] = {}
        self._uploads: Dict[str, Dict[int, bytes]] = {}
        self._upload_meta: Dict[str, Tuple[str, Optional[str], Dict[str, str]]] = {}
        self.healthy = True

    def _uri(self, key: str) -> str:
        return f"memory://{self.name}/{key}"

    async def put(self, key, data, content_type=None, attributes=None) -> PutResult:
        self._objects[key] = (
            bytes(data),
            attributes_with_defaults(attributes),
            content_type,
            datetime.now(timezone.utc),
        )
        return PutResult(location_uri=self._uri(key), etag=compute_checksum(data), size_bytes=len(data))

    async def get(self, key) -> GetResult:
        if key not in self._objects:
            raise ObjectNotFoundError(f"Object not found: {key}", backend_name=self.name)
        data, attributes, content_type, _ = self._objects[key]
        return GetResult(data=data, attributes=dict(attributes), content_type=content_type)

    async def delete(self, key) -> bool:
        return self._objects.pop(key, None) is not None

    async def list(self, prefix="", max_keys=1000, continuation_token=None) -> ListPage:
        keys = sorted(k for k in self._objects if k.startswith(prefix))
        if continuation_token:
            keys = [k for k in keys if k > continuation_token]
        page = keys[:max_keys]
        objects = [
            ObjectInfo(
                key=k,
                size_bytes=len(self._objects[k][0]),
                last_modified=self._objects[k][3],
                etag=compute_checksum(self._objects[k][0]),
            )
            for k in page
        ]
        next_token = page[-1] if len(keys) > max_keys else None
        return ListPage(objects=objects, next_token=next_token)

    async def create_multipart(self, key, content_type=None, attributes=None) -> str:
        upload_id = uuid.uuid4().hex
        self._uploads[upload_id] = {}
        self._upload_meta[upload_id] = (key, content_type, attributes_with_defaults(attributes))
        return upload_id

    async def upload_part(self, key, upload_id, part_number, data, checksum) -> PartReceipt:
        parts = self._session(key, upload_id)
        self._verify_part(data, checksum, part_number)
        parts[part_number] = bytes(data)
        return PartReceipt(part_number=part_number, etag=checksum, checksum=checksum, size_bytes=len(data))

    async def complete_multipart(self, key, upload_id, receipts: Sequence[PartReceipt]) -> PutResult:
        parts = self._session(key, upload_id)
        _, content_type, attributes = self._upload_meta[upload_id]
        data = b"".join(parts[receipt.part_number] for receipt in receipts)
        self._objects[key] = (data, attributes, content_type, datetime.now(timezone.utc))
        del self._uploads[upload_id]
        del self._upload_meta[upload_id]
        return PutResult(location_uri=self._uri(key), etag=multipart_etag(receipts), size_bytes=len(data))

    async def abort_multipart(self, key, upload_id) -> None:
        self._uploads.pop(upload_id, None)
        self._upload_meta.pop(upload_id, None)

    async def health_check(self) -> HealthStatus:
        detail = "ok" if self.healthy else "marked unhealthy"
        return HealthStatus(healthy=self.healthy, detail=detail, checked_at=datetime.now(timezone.utc))

    def open_upload_count(self) -> int:
        return len(self._uploads)

    def _session(self, key: str, upload_id: str) -> Dict[int, bytes]:
        if upload_id not in self._uploads or self._upload_meta[upload_id][0] != key:
            raise MultipartStateError(f"Unknown multipart upload {upload_id}", backend_name=self.name)
        return self._uploads[upload_id]
