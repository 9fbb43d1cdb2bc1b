"""Pydantic schemas for file operation endpoints."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from orchestrator.types import (
    FileRecord,
    FileSummary,
    ShareGrant,
    StoragePlacement,
    UploadOutcome,
    VersionEntry,
)


class PlacementResponse(BaseModel):
    """Where one copy of a file is stored."""
    backend_name: str
    key: str
    location_uri: str
    size_bytes: int
    role: str
    sha256: str
    stored_at: datetime

    @classmethod
    def from_placement(cls, placement: StoragePlacement) -> "PlacementResponse":
        return cls(
            backend_name=placement.backend_name,
            key=placement.key,
            location_uri=placement.location_uri,
            size_bytes=placement.size_bytes,
            role=placement.role,
            sha256=placement.sha256,
            stored_at=placement.stored_at,
        )


class UploadResponse(BaseModel):
    """Response model for one uploaded file."""
    file_id: str
    final_hash: str
    deduplicated: bool
    placements: List[PlacementResponse]
    processing_summary: Dict[str, Any]
    warnings: List[str] = []
    backup_error: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: UploadOutcome) -> "UploadResponse":
        return cls(
            file_id=outcome.file_id,
            final_hash=outcome.final_hash,
            deduplicated=outcome.deduplicated,
            placements=[PlacementResponse.from_placement(p) for p in outcome.placements],
            processing_summary=outcome.processing_summary,
            warnings=list(outcome.warnings),
            backup_error=outcome.backup_error,
        )


class BatchItemResponse(BaseModel):
    """Outcome of one file in a batch upload."""
    original_name: str
    success: bool
    result: Optional[UploadResponse] = None
    error: Optional[str] = None
    code: Optional[str] = None


class BatchUploadResponse(BaseModel):
    """Response model for a batch upload."""
    uploaded: int
    failed: int
    results: List[BatchItemResponse]


class FileSummaryResponse(BaseModel):
    """Search result entry."""
    file_id: str
    original_name: str
    size_bytes: int
    detected_type: Optional[str]
    owner: str
    category: str
    tags: List[str]
    version: int
    download_count: int
    primary_backend: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_summary(cls, summary: FileSummary) -> "FileSummaryResponse":
        return cls(
            file_id=summary.file_id,
            original_name=summary.original_name,
            size_bytes=summary.size_bytes,
            detected_type=summary.detected_type,
            owner=summary.owner,
            category=summary.category,
            tags=list(summary.tags),
            version=summary.version,
            download_count=summary.download_count,
            primary_backend=summary.primary_backend,
            created_at=summary.created_at,
            updated_at=summary.updated_at,
        )


class SearchResponse(BaseModel):
    """Response model for file search."""
    results: List[FileSummaryResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class FileRecordResponse(BaseModel):
    """Full file record. Key material only appears when explicitly requested."""
    record: Dict[str, Any]

    @classmethod
    def from_record(cls, record: FileRecord, include_secrets: bool = False,
                    encryption_key: Optional[str] = None) -> "FileRecordResponse":
        return cls(record=record.to_dict(include_secrets=include_secrets, encryption_key=encryption_key))


class UpdateFileRequest(BaseModel):
    """Request model for metadata updates. Omitted fields are left unchanged."""
    original_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    category: Optional[str] = None
    access_level: Optional[str] = Field(default=None, pattern="^(private|shared|public)$")

    def changes(self) -> Dict[str, Any]:
        return {name: value for name, value in self.model_dump().items() if value is not None}


class ShareRequest(BaseModel):
    """Request model for sharing a file."""
    grantee_id: str = Field(min_length=1)
    permissions: List[str] = ["read"]
    expires_at: Optional[datetime] = None


class ShareResponse(BaseModel):
    """A share grant."""
    share_id: str
    grantee_id: str
    permissions: List[str]
    granted_by: str
    granted_at: datetime
    expires_at: Optional[datetime] = None
    active: bool
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    @classmethod
    def from_grant(cls, grant: ShareGrant) -> "ShareResponse":
        return cls(**grant.to_dict())


class RemovalResponse(BaseModel):
    """Response model for file deletion."""
    file_id: str
    deleted: List[str]
    failed: Dict[str, str]
    partial: bool


class VersionResponse(BaseModel):
    """One entry of a file's version history."""
    version: int
    changed_at: datetime
    changes: Dict[str, Any]
    updated_by: Optional[str]
    previous_version: Optional[int]

    @classmethod
    def from_entry(cls, entry: VersionEntry) -> "VersionResponse":
        return cls(
            version=entry.version,
            changed_at=entry.changed_at,
            changes=entry.changes,
            updated_by=entry.updated_by,
            previous_version=entry.previous_version,
        )


class DownloadLinkResponse(BaseModel):
    """A signed, time-limited download path."""
    url: str
    expires_in: int
