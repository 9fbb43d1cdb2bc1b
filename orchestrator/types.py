"""Orchestrator data type definitions (FileRecord and its parts)."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from common.constants import ROLE_BACKUP, ROLE_PRIMARY
from common.types import ChunkDescriptor
from orchestrator.utils import parse_timestamp


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class LedgerStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class AccessLevel(str, Enum):
    PRIVATE = "private"
    SHARED = "shared"
    PUBLIC = "public"


@dataclass(frozen=True)
class UploadFlags:
    """
    Per-upload switches. `None` means "use the configured default".
    """
    permanent: bool = False
    critical: bool = False
    encrypt: Optional[bool] = None
    compress: Optional[bool] = None
    allow_dedup: bool = True
    create_backup: bool = True
    strict_type_check: Optional[bool] = None
    encryption_key: Optional[bytes] = None


@dataclass(frozen=True)
class UploadMetadata:
    """
    Caller-supplied description of an upload.
    """
    original_name: str
    owner: str
    declared_type: Optional[str] = None
    size_hint: Optional[int] = None
    description: str = ""
    tags: Tuple[str, ...] = ()
    category: str = "general"
    access_level: AccessLevel = AccessLevel.PRIVATE
    allowed_types: Tuple[str, ...] = ("*",)


@dataclass(frozen=True)
class StoragePlacement:
    backend_name: str
    key: str
    location_uri: str
    size_bytes: int
    etag: str
    role: str
    sha256: str
    stored_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backend_name": self.backend_name,
            "key": self.key,
            "location_uri": self.location_uri,
            "size_bytes": self.size_bytes,
            "etag": self.etag,
            "role": self.role,
            "sha256": self.sha256,
            "stored_at": self.stored_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoragePlacement":
        return cls(
            backend_name=data["backend_name"],
            key=data["key"],
            location_uri=data["location_uri"],
            size_bytes=data["size_bytes"],
            etag=data["etag"],
            role=data["role"],
            sha256=data["sha256"],
            stored_at=parse_timestamp(data["stored_at"]),
        )


@dataclass(frozen=True)
class ProcessingProvenance:
    original_size: int
    final_size: int
    compressed: bool = False
    compression_ratio: Optional[float] = None
    encrypted: bool = False
    encryption_key_ref: Optional[str] = None
    chunked: bool = False
    chunk_manifest: Tuple[ChunkDescriptor, ...] = ()
    processing_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_size": self.original_size,
            "final_size": self.final_size,
            "compressed": self.compressed,
            "compression_ratio": self.compression_ratio,
            "encrypted": self.encrypted,
            "encryption_key_ref": self.encryption_key_ref,
            "chunked": self.chunked,
            "chunk_manifest": [chunk.to_dict() for chunk in self.chunk_manifest],
            "processing_ms": self.processing_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingProvenance":
        return cls(
            original_size=data["original_size"],
            final_size=data["final_size"],
            compressed=data.get("compressed", False),
            compression_ratio=data.get("compression_ratio"),
            encrypted=data.get("encrypted", False),
            encryption_key_ref=data.get("encryption_key_ref"),
            chunked=data.get("chunked", False),
            chunk_manifest=tuple(ChunkDescriptor.from_dict(c) for c in data.get("chunk_manifest", [])),
            processing_ms=data.get("processing_ms", 0.0),
        )


@dataclass(frozen=True)
class ShareGrant:
    share_id: str
    grantee_id: str
    permissions: Tuple[str, ...]
    granted_by: str
    granted_at: datetime
    expires_at: Optional[datetime] = None
    active: bool = True
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    def is_effective(self, now: datetime) -> bool:
        return self.active and (self.expires_at is None or self.expires_at > now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "share_id": self.share_id,
            "grantee_id": self.grantee_id,
            "permissions": list(self.permissions),
            "granted_by": self.granted_by,
            "granted_at": self.granted_at.isoformat(),
            "expires_at": _iso(self.expires_at),
            "active": self.active,
            "revoked_at": _iso(self.revoked_at),
            "revoked_by": self.revoked_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShareGrant":
        return cls(
            share_id=data["share_id"],
            grantee_id=data["grantee_id"],
            permissions=tuple(data.get("permissions", ())),
            granted_by=data["granted_by"],
            granted_at=parse_timestamp(data["granted_at"]),
            expires_at=parse_timestamp(data.get("expires_at")),
            active=data.get("active", True),
            revoked_at=parse_timestamp(data.get("revoked_at")),
            revoked_by=data.get("revoked_by"),
        )


@dataclass(frozen=True)
class AccessInfo:
    owner: str
    access_level: AccessLevel = AccessLevel.PRIVATE
    download_count: int = 0
    last_accessed_at: Optional[datetime] = None
    last_downloaded_by: Optional[str] = None
    shares: Tuple[ShareGrant, ...] = ()


@dataclass(frozen=True)
class LedgerSyncState:
    status: LedgerStatus = LedgerStatus.PENDING
    external_ref: Optional[str] = None
    attempts: int = 0
    synced_at: Optional[datetime] = None


@dataclass(frozen=True)
class FileRecord:
    """
    Authoritative description of one stored file.

    Instances are immutable; every mutation produces a new record through
    `dataclasses.replace`.
    """
    file_id: str
    version: int
    original_name: str
    declared_type: Optional[str]
    detected_type: Optional[str]
    size_bytes: int
    content_hash: str
    final_hash: str
    placements: Tuple[StoragePlacement, ...]
    provenance: ProcessingProvenance
    access: AccessInfo
    ledger_sync: LedgerSyncState = field(default_factory=LedgerSyncState)
    strategy: str = ""
    description: str = ""
    tags: Tuple[str, ...] = ()
    category: str = "general"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        primaries = [p for p in self.placements if p.role == ROLE_PRIMARY]
        if len(primaries) != 1 or self.placements[0].role != ROLE_PRIMARY:
            raise ValueError(f"File {self.file_id} must have exactly one primary placement, listed first")

    @property
    def primary_placement(self) -> StoragePlacement:
        return self.placements[0]

    @property
    def backup_placements(self) -> Tuple[StoragePlacement, ...]:
        return tuple(p for p in self.placements if p.role == ROLE_BACKUP)

    @property
    def owner(self) -> str:
        return self.access.owner

    def with_changes(self, **changes: Any) -> "FileRecord":
        return replace(self, **changes)

    def to_dict(self, include_secrets: bool = False, encryption_key: Optional[str] = None) -> Dict[str, Any]:
        provenance = self.provenance.to_dict()
        if include_secrets and encryption_key is not None:
            provenance["encryption_key"] = encryption_key
        elif not include_secrets:
            provenance.pop("encryption_key_ref", None)
        return {
            "file_id": self.file_id,
            "version": self.version,
            "original_name": self.original_name,
            "declared_type": self.declared_type,
            "detected_type": self.detected_type,
            "size_bytes": self.size_bytes,
            "content_hash": self.content_hash,
            "final_hash": self.final_hash,
            "strategy": self.strategy,
            "placements": [p.to_dict() for p in self.placements],
            "provenance": provenance,
            "access": {
                "owner": self.access.owner,
                "access_level": self.access.access_level.value,
                "download_count": self.access.download_count,
                "last_accessed_at": _iso(self.access.last_accessed_at),
                "last_downloaded_by": self.access.last_downloaded_by,
                "shares": [s.to_dict() for s in self.access.shares],
            },
            "ledger_sync": {
                "status": self.ledger_sync.status.value,
                "external_ref": self.ledger_sync.external_ref,
                "attempts": self.ledger_sync.attempts,
                "synced_at": _iso(self.ledger_sync.synced_at),
            },
            "description": self.description,
            "tags": list(self.tags),
            "category": self.category,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        access = data["access"]
        ledger = data.get("ledger_sync") or {}
        return cls(
            file_id=data["file_id"],
            version=data["version"],
            original_name=data["original_name"],
            declared_type=data.get("declared_type"),
            detected_type=data.get("detected_type"),
            size_bytes=data["size_bytes"],
            content_hash=data["content_hash"],
            final_hash=data["final_hash"],
            strategy=data.get("strategy", ""),
            placements=tuple(StoragePlacement.from_dict(p) for p in data["placements"]),
            provenance=ProcessingProvenance.from_dict(data["provenance"]),
            access=AccessInfo(
                owner=access["owner"],
                access_level=AccessLevel(access.get("access_level", AccessLevel.PRIVATE.value)),
                download_count=access.get("download_count", 0),
                last_accessed_at=parse_timestamp(access.get("last_accessed_at")),
                last_downloaded_by=access.get("last_downloaded_by"),
                shares=tuple(ShareGrant.from_dict(s) for s in access.get("shares", ())),
            ),
            ledger_sync=LedgerSyncState(
                status=LedgerStatus(ledger.get("status", LedgerStatus.PENDING.value)),
                external_ref=ledger.get("external_ref"),
                attempts=ledger.get("attempts", 0),
                synced_at=parse_timestamp(ledger.get("synced_at")),
            ),
            description=data.get("description", ""),
            tags=tuple(data.get("tags", ())),
            category=data.get("category", "general"),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


@dataclass(frozen=True)
class FileSummary:
    """Search result row. Never carries key material."""
    file_id: str
    original_name: str
    size_bytes: int
    detected_type: Optional[str]
    owner: str
    category: str
    tags: Tuple[str, ...]
    version: int
    download_count: int
    primary_backend: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class SearchCriteria:
    text: Optional[str] = None
    owner: Optional[str] = None
    category: Optional[str] = None
    file_type: Optional[str] = None
    min_size: Optional[int] = None
    max_size: Optional[int] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    public_only: bool = False
    sort_by: str = "created_at"
    sort_order: str = "desc"
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True)
class SearchPage:
    results: List[FileSummary]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.results) < self.total


@dataclass(frozen=True)
class VersionEntry:
    file_id: str
    version: int
    changed_at: datetime
    changes: Dict[str, Any]
    updated_by: Optional[str]
    previous_version: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "changed_at": self.changed_at.isoformat(),
            "changes": self.changes,
            "updated_by": self.updated_by,
            "previous_version": self.previous_version,
        }

    @classmethod
    def from_dict(cls, file_id: str, data: Dict[str, Any]) -> "VersionEntry":
        return cls(
            file_id=file_id,
            version=data["version"],
            changed_at=parse_timestamp(data["changed_at"]),
            changes=data.get("changes", {}),
            updated_by=data.get("updated_by"),
            previous_version=data.get("previous_version"),
        )


@dataclass(frozen=True)
class UploadOutcome:
    file_id: str
    final_hash: str
    placements: Tuple[StoragePlacement, ...]
    processing_summary: Dict[str, Any]
    deduplicated: bool = False
    warnings: Tuple[str, ...] = ()
    backup_error: Optional[str] = None


@dataclass(frozen=True)
class BatchItemResult:
    original_name: str
    success: bool
    outcome: Optional[UploadOutcome] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass(frozen=True)
class RemovalResult:
    file_id: str
    deleted: Tuple[str, ...]
    failed: Dict[str, str]

    @property
    def partial(self) -> bool:
        return bool(self.failed)
