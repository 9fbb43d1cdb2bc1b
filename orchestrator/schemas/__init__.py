"""Pydantic schemas for API requests and responses."""

from orchestrator.schemas.common import ErrorResponse
from orchestrator.schemas.files import (
    BatchItemResponse,
    BatchUploadResponse,
    DownloadLinkResponse,
    FileRecordResponse,
    FileSummaryResponse,
    PlacementResponse,
    RemovalResponse,
    SearchResponse,
    ShareRequest,
    ShareResponse,
    UpdateFileRequest,
    UploadResponse,
    VersionResponse,
)

__all__ = [
    "BatchItemResponse",
    "BatchUploadResponse",
    "DownloadLinkResponse",
    "ErrorResponse",
    "FileRecordResponse",
    "FileSummaryResponse",
    "PlacementResponse",
    "RemovalResponse",
    "SearchResponse",
    "ShareRequest",
    "ShareResponse",
    "UpdateFileRequest",
    "UploadResponse",
    "VersionResponse",
]
