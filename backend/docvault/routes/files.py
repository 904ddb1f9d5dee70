"""Files API routes."""
import json
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File as FastAPIFile, Form, HTTPException, Query, UploadFile
from fastapi.responses import Response

from docvault.deps import get_coordinator, get_owner_id
from docvault.schemas.common import DeleteResponse, ErrorDetail
from docvault.schemas.file import (
    FileDetailResponse,
    FileListResponse,
    ServiceStatsResponse,
    UploadResponse,
)
from docvault.services.errors import (
    ForbiddenError,
    IntegrityError,
    NotAccessibleError,
    NotFoundError,
    PreviewNotSupportedError,
    QuotaExceededError,
    RepositoryError,
    StorageAccessDeniedError,
    StorageError,
    UploadError,
    ValidationFailedError,
)
from docvault.services.records import FileStatus
from docvault.services.upload_coordinator import MAX_PAGE_SIZE, FileContent, UploadCoordinator

router = APIRouter(prefix="/api/files", tags=["files"])

_NO_CACHE_HEADERS = {
    "Cache-Control": "private, no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "X-Content-Type-Options": "nosniff",
}


def _error(status_code: int, headers: Optional[dict] = None, **fields) -> HTTPException:
    return HTTPException(status_code=status_code, detail=ErrorDetail(**fields).to_json_dict(), headers=headers)


def _http_error(e: UploadError) -> HTTPException:
    """Map a core error to a response. Paths and OS messages never leave here."""
    if isinstance(e, ValidationFailedError):
        return _error(400, code=e.code, message=e.message, details=e.errors, warnings=e.warnings)
    if isinstance(e, QuotaExceededError):
        return _error(
            429, headers={"Retry-After": str(e.retry_after)},
            code=e.code, message=e.message, retry_after=e.retry_after,
        )
    if isinstance(e, (NotFoundError, ForbiddenError)):
        # Same answer for both so non-owners cannot probe for ids
        return _error(404, code=NotFoundError.code, message="File not found")
    if isinstance(e, NotAccessibleError):
        return _error(409, code=e.code, message=e.message)
    if isinstance(e, PreviewNotSupportedError):
        return _error(400, code=e.code, message=e.message)
    if isinstance(e, StorageAccessDeniedError):
        return _error(403, code=e.code, message="Access denied")
    if isinstance(e, IntegrityError):
        return _error(500, code=e.code, message="File integrity check failed")
    if isinstance(e, StorageError):
        return _error(500, code=e.code, message=e.message)
    if isinstance(e, RepositoryError):
        return _error(503, code=e.code, message="Metadata store unavailable")
    return _error(500, code="INTERNAL_ERROR", message="Internal server error")


def _parse_metadata(raw: Optional[str]) -> dict:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        raise _error(400, code="INVALID_METADATA", message="metadata must be JSON")
    if not isinstance(value, dict):
        raise _error(400, code="INVALID_METADATA", message="metadata must be a JSON object")
    return value


def _file_response(content: FileContent, disposition: str) -> Response:
    quoted = quote(content.display_name)
    headers = {
        **_NO_CACHE_HEADERS,
        "Content-Disposition": f"{disposition}; filename*=UTF-8''{quoted}",
    }
    return Response(content=content.data, media_type=content.content_type, headers=headers)


@router.post("/upload", response_model=UploadResponse, status_code=201)
async def upload_file(
    file: UploadFile = FastAPIFile(...),
    metadata: Optional[str] = Form(None),
    owner_id: str = Depends(get_owner_id),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """Validate and store a file for the calling user."""
    extra = _parse_metadata(metadata)
    # One byte past the limit is enough for the size check to reject it
    contents = await file.read(coordinator.validator.max_file_size + 1)
    try:
        receipt = await coordinator.upload(
            contents, file.filename or "", file.content_type, owner_id, extra,
        )
    except UploadError as e:
        raise _http_error(e)
    return UploadResponse.model_validate(receipt)


@router.get("", response_model=FileListResponse)
async def list_files(
    status: FileStatus = Query(FileStatus.ACTIVE, description="Record status filter"),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    owner_id: str = Depends(get_owner_id),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """List the caller's files, newest first."""
    page = coordinator.list_for_owner(owner_id, status=status, limit=limit, offset=offset)
    return FileListResponse.model_validate(page)


@router.get("/stats", response_model=ServiceStatsResponse)
async def get_stats(
    owner_id: str = Depends(get_owner_id),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """Service-wide record and storage totals."""
    try:
        stats = await coordinator.service_stats()
    except UploadError as e:
        raise _http_error(e)
    return ServiceStatsResponse.model_validate(stats)


@router.get("/{file_id}")
async def download_file(
    file_id: str,
    owner_id: str = Depends(get_owner_id),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """Download a file as an attachment."""
    try:
        content = await coordinator.fetch(file_id, owner_id)
    except UploadError as e:
        raise _http_error(e)
    return _file_response(content, "attachment")


@router.get("/{file_id}/preview")
async def preview_file(
    file_id: str,
    owner_id: str = Depends(get_owner_id),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """Inline display for image files."""
    try:
        content = await coordinator.preview(file_id, owner_id)
    except UploadError as e:
        raise _http_error(e)
    return _file_response(content, "inline")


@router.get("/{file_id}/metadata", response_model=FileDetailResponse)
async def get_file_metadata(
    file_id: str,
    owner_id: str = Depends(get_owner_id),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """Get file metadata by ID."""
    try:
        detail = coordinator.get_record_metadata(file_id, owner_id)
    except UploadError as e:
        raise _http_error(e)
    return FileDetailResponse.model_validate(detail)


@router.delete("/{file_id}", response_model=DeleteResponse)
async def delete_file(
    file_id: str,
    owner_id: str = Depends(get_owner_id),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """Delete a file's bytes and mark its record deleted."""
    try:
        await coordinator.remove(file_id, owner_id)
    except UploadError as e:
        raise _http_error(e)
    return {"deleted": True, "id": file_id}
