"""Storage backend capability interface and its value types."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from common.checksum import compute_checksum
from common.constants import GIB, MIB


class BackendError(Exception):
    """
    Base exception for storage backend failures.
    """

    def __init__(self, message: str, backend_name: Optional[str] = None):
        super().__init__(message)
        self.backend_name = backend_name


class ObjectNotFoundError(BackendError):
    """
    Raised when the requested key does not exist on the backend.
    """
    pass


class ChecksumMismatchError(BackendError):
    """
    Raised when a part or object checksum does not match the uploaded bytes.
    """
    pass


class UploadTimeoutError(BackendError):
    """
    Raised when a put or multipart session exceeds its deadline.
    """
    pass


class MultipartStateError(BackendError):
    """
    Raised when a multipart operation is attempted in the wrong state.
    """
    pass


@dataclass(frozen=True)
class PutResult:
    location_uri: str
    etag: str
    size_bytes: int


@dataclass(frozen=True)
class GetResult:
    data: bytes
    attributes: Dict[str, str] = field(default_factory=dict)
    content_type: Optional[str] = None


@dataclass(frozen=True)
class PartReceipt:
    part_number: int
    etag: str
    checksum: str
    size_bytes: int


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size_bytes: int
    last_modified: datetime
    etag: str


@dataclass(frozen=True)
class ListPage:
    objects: List[ObjectInfo]
    next_token: Optional[str] = None


@dataclass(frozen=True)
class HealthStatus:
    healthy: bool
    detail: str = ""
    checked_at: Optional[datetime] = None


ProgressCallback = Callable[[int, int], None]


class StorageBackend(ABC):
    """
    Generic object store: put, get, list, delete and multipart upload.

    Subclasses implement the primitive operations; `put_multipart` drives a
    `MultipartUpload` session on top of them.
    """

    def __init__(
        self,
        name: str,
        max_object_size: int = 5 * GIB,
        multipart_part_size: int = 50 * MIB,
        multipart_concurrency: int = 3,
    ):
        self.name = name
        self.max_object_size = max_object_size
        self.multipart_part_size = multipart_part_size
        self.multipart_concurrency = multipart_concurrency

    @abstractmethod
    async def put(
        self,
        key: str,
        data: bytes,
        content_type: Optional[str] = None,
        attributes: Optional[Dict[str, str]] = None,
    ) -> PutResult:
        """Store `data` under `key` in a single request."""

    @abstractmethod
    async def get(self, key: str) -> GetResult:
        """Fetch an object. Raises ObjectNotFoundError if it is missing."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete an object. Returns False if it did not exist."""

    @abstractmethod
    async def list(
        self,
        prefix: str = "",
        max_keys: int = 1000,
        continuation_token: Optional[str] = None,
    ) -> ListPage:
        """List objects whose key starts with `prefix`."""

    @abstractmethod
    async def create_multipart(
        self,
        key: str,
        content_type: Optional[str] = None,
        attributes: Optional[Dict[str, str]] = None,
    ) -> str:
        """Open a multipart session and return its upload id."""

    @abstractmethod
    async def upload_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        data: bytes,
        checksum: str,
    ) -> PartReceipt:
        """Upload one part. Part numbers start at 1."""

    @abstractmethod
    async def complete_multipart(
        self,
        key: str,
        upload_id: str,
        receipts: Sequence[PartReceipt],
    ) -> PutResult:
        """Assemble the acknowledged parts, in the order given."""

    @abstractmethod
    async def abort_multipart(self, key: str, upload_id: str) -> None:
        """Discard a multipart session and every part uploaded to it."""

    @abstractmethod
    async def health_check(self) -> HealthStatus:
        """Cheap, side-effect free reachability probe."""

    async def put_multipart(
        self,
        key: str,
        parts: Sequence[bytes],
        content_type: Optional[str] = None,
        attributes: Optional[Dict[str, str]] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> PutResult:
        """
        Upload `parts` as one object through a multipart session.

        The session is aborted if any part fails, or if the caller times out
        or cancels.
        """
        from backends.multipart import MultipartUpload

        upload = MultipartUpload(
            backend=self,
            key=key,
            concurrency=self.multipart_concurrency,
            progress_callback=progress_callback,
        )
        return await upload.run(parts, content_type=content_type, attributes=attributes)

    def split_for_multipart(self, data: bytes) -> List[bytes]:
        """Split a blob into parts of `multipart_part_size` bytes."""
        size = self.multipart_part_size
        return [data[offset:offset + size] for offset in range(0, len(data), size)] or [b""]

    def _verify_part(self, data: bytes, checksum: str, part_number: int) -> None:
        if compute_checksum(data) != checksum:
            raise ChecksumMismatchError(
                f"Part {part_number} checksum mismatch", backend_name=self.name
            )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


def multipart_etag(receipts: Sequence[PartReceipt]) -> str:
    """ETag for an assembled object: hash of the part etags plus the part count."""
    joined = "".join(receipt.etag for receipt in receipts)
    return f"{compute_checksum(joined.encode())}-{len(receipts)}"


def attributes_with_defaults(attributes: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Stringify user attributes for backends that only store text values."""
    return {str(k): str(v) for k, v in (attributes or {}).items()}
