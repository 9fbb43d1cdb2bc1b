"""Filesystem storage backend: objects are files under a root directory."""

import asyncio
import json
import os
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from backends.base import (
    BackendError,
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
from common.constants import STREAM_PIECE_SIZE
from common.logging_config import get_logger

logger = get_logger(__name__)

OBJECTS_DIR = "objects"
METADATA_DIR = "meta"
STAGING_DIR = "multipart"


class LocalDiskBackend(StorageBackend):
    """
    Stores each object as a file, with a JSON sidecar for content type,
    attributes and etag. Multipart parts are staged in their own directory
    and concatenated on completion.
    """

    def __init__(self, name: str, root: Path, **kwargs):
        super().__init__(name, **kwargs)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _object_path(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in Path(key).parts:
            raise BackendError(f"Invalid object key: {key!r}", backend_name=self.name)
        return self.root / OBJECTS_DIR / key

    def _metadata_path(self, key: str) -> Path:
        return self.root / METADATA_DIR / f"{key}.json"

    def _staging_path(self, upload_id: str) -> Path:
        return self.root / STAGING_DIR / upload_id

    def _uri(self, key: str) -> str:
        return self._object_path(key).resolve().as_uri()

    async def put(self, key, data, content_type=None, attributes=None) -> PutResult:
        return await asyncio.to_thread(self._write_object, key, [data], content_type, attributes, None)

    def _write_object(
        self,
        key: str,
        pieces: List[bytes],
        content_type: Optional[str],
        attributes: Optional[Dict[str, str]],
        etag: Optional[str],
    ) -> PutResult:
        path = self._object_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        size = 0
        with open(tmp_path, "wb") as f:
            for piece in pieces:
                f.write(piece)
                size += len(piece)
        if etag is None:
            etag = compute_checksum(b"".join(pieces))
        tmp_path.replace(path)

        meta_path = self._metadata_path(key)
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        meta_path.write_text(json.dumps({
            "content_type": content_type,
            "attributes": attributes_with_defaults(attributes),
            "etag": etag,
        }))
        return PutResult(location_uri=self._uri(key), etag=etag, size_bytes=size)

    async def get(self, key) -> GetResult:
        return await asyncio.to_thread(self._read_object, key)

    def _read_object(self, key: str) -> GetResult:
        path = self._object_path(key)
        if not path.is_file():
            raise ObjectNotFoundError(f"Object not found: {key}", backend_name=self.name)
        meta = self._read_metadata(key)
        return GetResult(
            data=path.read_bytes(),
            attributes=meta.get("attributes", {}),
            content_type=meta.get("content_type"),
        )

    def _read_metadata(self, key: str) -> Dict:
        meta_path = self._metadata_path(key)
        if not meta_path.exists():
            return {}
        return json.loads(meta_path.read_text())

    async def delete(self, key) -> bool:
        return await asyncio.to_thread(self._delete_object, key)

    def _delete_object(self, key: str) -> bool:
        path = self._object_path(key)
        self._metadata_path(key).unlink(missing_ok=True)
        if path.exists():
            path.unlink()
            return True
        return False

    async def list(self, prefix="", max_keys=1000, continuation_token=None) -> ListPage:
        return await asyncio.to_thread(self._list_objects, prefix, max_keys, continuation_token)

    def _list_objects(self, prefix: str, max_keys: int, continuation_token: Optional[str]) -> ListPage:
        base = self.root / OBJECTS_DIR
        if not base.exists():
            return ListPage(objects=[])
        keys = sorted(
            p.relative_to(base).as_posix()
            for p in base.rglob("*")
            if p.is_file() and not p.name.endswith(".tmp")
        )
        keys = [k for k in keys if k.startswith(prefix)]
        if continuation_token:
            keys = [k for k in keys if k > continuation_token]
        page = keys[:max_keys]
        objects = []
        for key in page:
            stat = (base / key).stat()
            objects.append(ObjectInfo(
                key=key,
                size_bytes=stat.st_size,
                last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                etag=self._read_metadata(key).get("etag", ""),
            ))
        next_token = page[-1] if len(keys) > max_keys else None
        return ListPage(objects=objects, next_token=next_token)

    async def create_multipart(self, key, content_type=None, attributes=None) -> str:
        self._object_path(key)
        upload_id = uuid.uuid4().hex
        await asyncio.to_thread(self._create_staging, key, upload_id, content_type, attributes)
        return upload_id

    def _create_staging(self, key, upload_id, content_type, attributes) -> None:
        staging = self._staging_path(upload_id)
        staging.mkdir(parents=True, exist_ok=False)
        (staging / "session.json").write_text(json.dumps({
            "key": key,
            "content_type": content_type,
            "attributes": attributes_with_defaults(attributes),
        }))

    def _load_session(self, key: str, upload_id: str) -> Dict:
        session_path = self._staging_path(upload_id) / "session.json"
        if not session_path.exists():
            raise MultipartStateError(f"Unknown multipart upload {upload_id}", backend_name=self.name)
        session = json.loads(session_path.read_text())
        if session["key"] != key:
            raise MultipartStateError(
                f"Multipart upload {upload_id} does not belong to key {key}", backend_name=self.name
            )
        return session

    async def upload_part(self, key, upload_id, part_number, data, checksum) -> PartReceipt:
        self._verify_part(data, checksum, part_number)
        await asyncio.to_thread(self._write_part, key, upload_id, part_number, data)
        return PartReceipt(part_number=part_number, etag=checksum, checksum=checksum, size_bytes=len(data))

    def _write_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> None:
        self._load_session(key, upload_id)
        (self._staging_path(upload_id) / f"{part_number:05d}.part").write_bytes(data)

    async def complete_multipart(self, key, upload_id, receipts: Sequence[PartReceipt]) -> PutResult:
        return await asyncio.to_thread(self._assemble, key, upload_id, list(receipts))

    def _assemble(self, key: str, upload_id: str, receipts: List[PartReceipt]) -> PutResult:
        session = self._load_session(key, upload_id)
        staging = self._staging_path(upload_id)
        path = self._object_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{upload_id}.tmp")
        size = 0
        with open(tmp_path, "wb") as out:
            for receipt in receipts:
                part_path = staging / f"{receipt.part_number:05d}.part"
                if not part_path.exists():
                    raise MultipartStateError(
                        f"Part {receipt.part_number} missing for upload {upload_id}", backend_name=self.name
                    )
                with open(part_path, "rb") as part:
                    shutil.copyfileobj(part, out, STREAM_PIECE_SIZE)
                size += receipt.size_bytes
        tmp_path.replace(path)

        etag = multipart_etag(receipts)
        meta_path = self._metadata_path(key)
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        meta_path.write_text(json.dumps({
            "content_type": session.get("content_type"),
            "attributes": session.get("attributes", {}),
            "etag": etag,
        }))
        shutil.rmtree(staging, ignore_errors=True)
        return PutResult(location_uri=self._uri(key), etag=etag, size_bytes=size)

    async def abort_multipart(self, key, upload_id) -> None:
        await asyncio.to_thread(shutil.rmtree, self._staging_path(upload_id), True)

    async def health_check(self) -> HealthStatus:
        now = datetime.now(timezone.utc)
        writable = await asyncio.to_thread(os.access, self.root, os.W_OK)
        if not self.root.is_dir() or not writable:
            return HealthStatus(healthy=False, detail=f"{self.root} is not a writable directory", checked_at=now)
        return HealthStatus(healthy=True, detail="ok", checked_at=now)

    def open_upload_count(self) -> int:
        staging = self.root / STAGING_DIR
        if not staging.exists():
            return 0
        return sum(1 for p in staging.iterdir() if p.is_dir())
