"""File operation API routes."""

import re
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Body, Depends, File, Form, Query, Response, UploadFile, status
from fastapi.responses import StreamingResponse

from orchestrator.auth import get_current_principal, get_download_principal, get_rate_limited_principal
from orchestrator.exceptions import ValidationError
from orchestrator.schemas.files import (
    BatchItemResponse,
    BatchUploadResponse,
    DownloadLinkResponse,
    FileRecordResponse,
    FileSummaryResponse,
    RemovalResponse,
    SearchResponse,
    ShareRequest,
    ShareResponse,
    UpdateFileRequest,
    UploadResponse,
    VersionResponse,
)
from orchestrator.security import Principal
from orchestrator.service_locator import get_runtime
from orchestrator.types import AccessLevel, SearchCriteria, UploadFlags, UploadMetadata
from orchestrator.utils import parse_tags
from orchestrator.validation import guess_mime_type

router = APIRouter(prefix="/files", tags=["Files"])


def _service():
    return get_runtime().storage_service


def attachment_disposition(filename: str) -> str:
    """Content-Disposition with an ASCII fallback name and the exact UTF-8 name (RFC 6266)."""
    fallback = re.sub(r'[^\x20-\x7e]|["\\]', "_", filename)
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


@router.post("", response_model=BatchUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_files(
    response: Response,
    files: List[UploadFile] = File(...),
    tags: str = Form(default=""),
    description: str = Form(default=""),
    category: str = Form(default="general"),
    access_level: AccessLevel = Form(default=AccessLevel.PRIVATE),
    permanent: bool = Form(default=False),
    critical: bool = Form(default=False),
    encrypt: Optional[bool] = Form(default=None),
    compress: Optional[bool] = Form(default=None),
    allow_dedup: bool = Form(default=True),
    create_backup: bool = Form(default=True),
    strict_type_check: Optional[bool] = Form(default=None),
    principal: Principal = Depends(get_rate_limited_principal),
):
    """
    Upload one or more files (multipart/form-data).

    Every file is validated, transformed and placed independently; the
    response lists one result per file. Returns 201 when every file was
    stored and 207 when some failed.

    Raises:
        - 401: Invalid or missing token
        - 429: Rate limit exceeded
    """
    flags = UploadFlags(
        permanent=permanent,
        critical=critical,
        encrypt=encrypt,
        compress=compress,
        allow_dedup=allow_dedup,
        create_backup=create_backup,
        strict_type_check=strict_type_check,
    )
    tag_list = tuple(parse_tags(tags))

    items = []
    for upload in files:
        content = await upload.read()
        metadata = UploadMetadata(
            original_name=upload.filename or "",
            owner=principal.user_id,
            declared_type=upload.content_type,
            size_hint=len(content),
            description=description,
            tags=tag_list,
            category=category,
            access_level=access_level,
        )
        items.append((content, metadata, flags))

    results = await _service().process_batch(items)

    responses = [
        BatchItemResponse(
            original_name=item.original_name,
            success=item.success,
            result=UploadResponse.from_outcome(item.outcome) if item.outcome else None,
            error=item.error,
            code=item.error_code,
        )
        for item in results
    ]
    uploaded = sum(1 for item in results if item.success)
    if uploaded < len(results):
        response.status_code = status.HTTP_207_MULTI_STATUS
    return BatchUploadResponse(uploaded=uploaded, failed=len(results) - uploaded, results=responses)


@router.get("", response_model=SearchResponse)
async def search_files(
    text: Optional[str] = Query(default=None, description="Substring of name, description or tags"),
    category: Optional[str] = None,
    file_type: Optional[str] = Query(default=None, description="Detected MIME type prefix"),
    min_size: Optional[int] = Query(default=None, ge=0),
    max_size: Optional[int] = Query(default=None, ge=0),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    public_only: bool = False,
    sort_by: str = "created_at",
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_current_principal),
):
    """
    Search file records. Non-admin callers only see their own files unless
    `public_only` is set.
    """
    criteria = SearchCriteria(
        text=text,
        category=category,
        file_type=file_type,
        min_size=min_size,
        max_size=max_size,
        date_from=date_from,
        date_to=date_to,
        public_only=public_only,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )
    page = await _service().query_files(criteria, principal)
    return SearchResponse(
        results=[FileSummaryResponse.from_summary(summary) for summary in page.results],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more,
    )


@router.get("/stats")
async def file_stats(principal: Principal = Depends(get_current_principal)):
    """Aggregate file counts and sizes over live records."""
    return await _service().get_stats()


@router.get("/export")
async def export_metadata(
    file_ids: Optional[List[str]] = Query(default=None, description="Limit the export to these files"),
    include_versions: bool = True,
    principal: Principal = Depends(get_current_principal),
):
    """Admin only. Records, share grants and version history, without key material."""
    return await _service().export_metadata(principal, file_ids, include_versions=include_versions)


@router.post("/import")
async def import_metadata(
    data: Dict[str, Any] = Body(...),
    overwrite: bool = False,
    principal: Principal = Depends(get_current_principal),
):
    """
    Admin only. Load an export document.

    Returns:
        - imported, skipped, errors: record counts
    """
    return await _service().import_metadata(data, principal, overwrite=overwrite)


@router.get("/{file_id}", response_model=FileRecordResponse)
async def get_file(
    file_id: str,
    include_secrets: bool = False,
    principal: Principal = Depends(get_current_principal),
):
    """
    Return the full record of a file.

    `include_secrets` adds the hex data key of an encrypted file; only the
    owner or an admin may ask for it.
    """
    record, key_hex = await _service().get_file_record(file_id, include_secrets, principal)
    return FileRecordResponse.from_record(record, include_secrets=include_secrets, encryption_key=key_hex)


@router.patch("/{file_id}", response_model=FileRecordResponse)
async def update_file(
    file_id: str,
    request: UpdateFileRequest,
    principal: Principal = Depends(get_current_principal),
):
    """Update descriptive attributes. Each call creates a new version."""
    changes = request.changes()
    if not changes:
        raise ValidationError("No changes supplied", reasons=["No changes supplied"])
    record = await _service().update_file(file_id, changes, principal)
    return FileRecordResponse.from_record(record)


@router.delete("/{file_id}", response_model=RemovalResponse)
async def delete_file(file_id: str, principal: Principal = Depends(get_current_principal)):
    """
    Delete a file from every backend. If some backend refuses, the file is
    hidden immediately and the leftover copies are retried in the background.
    """
    result = await _service().remove_file(file_id, principal)
    return RemovalResponse(
        file_id=result.file_id,
        deleted=list(result.deleted),
        failed=result.failed,
        partial=result.partial,
    )


@router.get("/{file_id}/download")
async def download_file(file_id: str, principal: Principal = Depends(get_download_principal)):
    """
    Download a file, verified against its stored hashes.

    Accepts a bearer token or a signed link from `POST /files/{file_id}/download-link`.
    """
    retrieved = await _service().retrieve_file(file_id, principal)
    record = retrieved.record
    return StreamingResponse(
        retrieved.iter_bytes(),
        media_type=record.detected_type or guess_mime_type(record.original_name),
        headers={
            "Content-Disposition": attachment_disposition(record.original_name),
            "Content-Length": str(len(retrieved.data)),
            "X-Served-By": retrieved.served_by,
        },
    )


@router.post("/{file_id}/download-link", response_model=DownloadLinkResponse)
async def create_download_link(
    file_id: str,
    expires_in: Optional[int] = Query(default=None, ge=1, le=7 * 24 * 3600),
    principal: Principal = Depends(get_current_principal),
):
    """Create a time-limited signed download path for the caller."""
    await _service().get_file_record(file_id, principal=principal)
    signer = get_runtime().download_signer
    return DownloadLinkResponse(
        url=signer.download_path(file_id, principal.user_id, expires_in),
        expires_in=expires_in or signer.default_expiry_seconds,
    )


@router.get("/{file_id}/versions", response_model=List[VersionResponse])
async def list_versions(file_id: str, principal: Principal = Depends(get_current_principal)):
    """Version history, oldest first."""
    entries = await _service().get_version_history(file_id, principal)
    return [VersionResponse.from_entry(entry) for entry in entries]


@router.post("/{file_id}/shares", response_model=ShareResponse, status_code=status.HTTP_201_CREATED)
async def share_file(
    file_id: str,
    request: ShareRequest,
    principal: Principal = Depends(get_current_principal),
):
    """Grant another user access to a file. Only the owner may share."""
    grant = await _service().share_file(
        file_id, request.grantee_id, request.permissions, principal, expires_at=request.expires_at
    )
    return ShareResponse.from_grant(grant)


@router.delete("/{file_id}/shares/{share_id}", response_model=ShareResponse)
async def revoke_share(file_id: str, share_id: str, principal: Principal = Depends(get_current_principal)):
    """Revoke a share grant. The grant is kept for audit."""
    grant = await _service().revoke_share(file_id, share_id, principal)
    return ShareResponse.from_grant(grant)
