"""File request/response schemas.

Nothing here exposes a storage key or a filesystem path.
"""
from datetime import datetime
from typing import List, Optional

from docvault.schemas.base import CamelORMModel
from docvault.services.records import FileStatus, ScanStatus


class UploadResponse(CamelORMModel):
    id: str
    display_name: str
    byte_size: int
    content_type: str
    created_at: datetime
    status: FileStatus
    warnings: List[str] = []


class FileSummaryResponse(CamelORMModel):
    id: str
    display_name: str
    byte_size: int
    content_type: str
    created_at: datetime
    last_accessed_at: Optional[datetime] = None
    access_count: int = 0
    status: FileStatus
    scan_status: ScanStatus


class FileDetailResponse(FileSummaryResponse):
    extension: str
    checksum: str
    scanned_at: Optional[datetime] = None


class FileListResponse(CamelORMModel):
    records: List[FileSummaryResponse]
    total: int
    limit: int
    offset: int


class StorageStatsResponse(CamelORMModel):
    file_count: int
    total_bytes: int


class ServiceStatsResponse(CamelORMModel):
    total_files: int
    active_files: int
    deleted_files: int
    quarantined_files: int
    storage: StorageStatsResponse
