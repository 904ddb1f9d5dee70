"""Upload coordinator.

Owns the in-memory record index and sequences every operation:

    upload: reserve quota -> validate -> store -> scan -> record -> persist -> commit quota
    fetch:  lookup -> ownership -> accessible? -> read -> verify checksum -> bump access -> persist
    remove: lookup -> ownership -> unlink -> mark deleted -> persist

Only this layer decides what is a security event; the validator and the
store just return results or raise.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from docvault.config import Settings
from docvault.logging_config import log_security_event
from docvault.services.content_validator import ContentValidator, compute_checksum
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
    ValidationFailedError,
)
from docvault.services.file_storage import SecureFileStore, StorageStats
from docvault.services.rate_limiter import UploadRateLimiter
from docvault.services.record_repository import RecordRepository, build_repository
from docvault.services.records import FileRecord, FileStatus, ScanStatus, is_owner, utcnow
from docvault.services.scanner import ContentScanner, PassthroughScanner

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

# Keys the coordinator writes into record.metadata; callers cannot override them
_SYSTEM_METADATA_KEYS = ("upload_id", "processing_ms", "validation_warnings")


# ─── Results ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class UploadReceipt:
    id: str
    display_name: str
    byte_size: int
    content_type: str
    created_at: datetime
    status: FileStatus
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class FileContent:
    data: bytes
    display_name: str
    content_type: str
    byte_size: int
    checksum: str
    modified_at: datetime


@dataclass(frozen=True)
class RecordSummary:
    id: str
    display_name: str
    byte_size: int
    content_type: str
    created_at: datetime
    last_accessed_at: Optional[datetime]
    access_count: int
    status: FileStatus
    scan_status: ScanStatus


@dataclass(frozen=True)
class RecordDetail(RecordSummary):
    extension: str = ""
    checksum: str = ""
    scanned_at: Optional[datetime] = None


@dataclass(frozen=True)
class RecordPage:
    records: List[RecordSummary]
    total: int
    limit: int
    offset: int


@dataclass(frozen=True)
class ServiceStats:
    total_files: int
    active_files: int
    deleted_files: int
    quarantined_files: int
    storage: StorageStats


@dataclass(frozen=True)
class CleanupReport:
    cleaned_count: int
    errors: List[str]


def _summary(record: FileRecord) -> RecordSummary:
    return RecordSummary(
        id=record.id,
        display_name=record.display_name,
        byte_size=record.byte_size,
        content_type=record.content_type,
        created_at=record.created_at,
        last_accessed_at=record.last_accessed_at,
        access_count=record.access_count,
        status=record.status,
        scan_status=record.scan_status,
    )


def _detail(record: FileRecord) -> RecordDetail:
    return RecordDetail(
        id=record.id,
        display_name=record.display_name,
        byte_size=record.byte_size,
        content_type=record.content_type,
        created_at=record.created_at,
        last_accessed_at=record.last_accessed_at,
        access_count=record.access_count,
        status=record.status,
        scan_status=record.scan_status,
        extension=record.extension,
        checksum=record.checksum,
        scanned_at=record.scanned_at,
    )


# ─── Coordinator ──────────────────────────────────────────────────

class UploadCoordinator:
    def __init__(
        self,
        validator: ContentValidator,
        store: SecureFileStore,
        repository: RecordRepository,
        rate_limiter: UploadRateLimiter,
        scanner: Optional[ContentScanner] = None,
    ):
        self.validator = validator
        self.store = store
        self.repository = repository
        self.rate_limiter = rate_limiter
        self.scanner = scanner or PassthroughScanner()
        self._records: Dict[str, FileRecord] = {}
        self._persist_lock = asyncio.Lock()

    async def load(self) -> int:
        """Populate the index from the repository. Returns the record count."""
        records = await self.repository.load()
        self._records = {r.id: r for r in records}
        if isinstance(self.scanner, PassthroughScanner):
            logger.warning("No content scanner configured: new uploads are marked clean without scanning")
        return len(self._records)

    async def close(self) -> None:
        await self.repository.close()

    async def _persist(self) -> None:
        # Snapshot is taken under the lock so the last writer always saves the newest state
        async with self._persist_lock:
            await self.repository.save_all(list(self._records.values()))

    def _authorize(self, file_id: str, requester_id: str, action: str) -> FileRecord:
        record = self._records.get(file_id)
        if record is None:
            raise NotFoundError()
        if not is_owner(record, requester_id):
            log_security_event(
                f"unauthorized_{action}_attempt",
                level=logging.WARNING,
                user_id=requester_id,
                file_id=file_id,
            )
            raise ForbiddenError()
        return record

    # ─── Upload ──────────────────────────────────────────────────

    async def upload(
        self,
        data: bytes,
        declared_name: str,
        declared_type: Optional[str],
        owner_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UploadReceipt:
        upload_id = f"upload_{uuid.uuid4().hex[:12]}"
        started = time.perf_counter()

        decision = self.rate_limiter.reserve(owner_id)
        if not decision.allowed:
            log_security_event(
                "rate_limit_exceeded",
                level=logging.WARNING,
                user_id=owner_id,
                upload_id=upload_id,
                retry_after=decision.retry_after,
            )
            raise QuotaExceededError(decision.retry_after)

        # The reserved slot is consumed only once the record is durable
        committed = False
        try:
            record, warnings = await self._accept(data, declared_name, declared_type, owner_id, metadata, upload_id, started)
            self.rate_limiter.commit(owner_id)
            committed = True
        finally:
            if not committed:
                self.rate_limiter.release(owner_id)

        log_security_event(
            "upload_success",
            user_id=owner_id,
            file_id=record.id,
            filename=record.display_name,
            byte_size=record.byte_size,
            upload_id=upload_id,
        )
        return UploadReceipt(
            id=record.id,
            display_name=record.display_name,
            byte_size=record.byte_size,
            content_type=record.content_type,
            created_at=record.created_at,
            status=record.status,
            warnings=warnings,
        )

    async def _accept(
        self,
        data: bytes,
        declared_name: str,
        declared_type: Optional[str],
        owner_id: str,
        metadata: Optional[Dict[str, Any]],
        upload_id: str,
        started: float,
    ) -> Tuple[FileRecord, List[str]]:
        """Validate, store, scan and persist one upload. Quota is handled by the caller."""
        result = self.validator.validate(data, declared_name, declared_type)
        if not result.accepted:
            log_security_event(
                "validation_failed",
                level=logging.WARNING,
                user_id=owner_id,
                upload_id=upload_id,
                filename=declared_name if isinstance(declared_name, str) else None,
                errors=result.errors,
            )
            raise ValidationFailedError(result.errors, result.warnings)
        sanitized = result.sanitized

        try:
            stored = await self.store.put(data, sanitized.display_name, sanitized.content_type)
        except StorageError as e:
            log_security_event(
                "storage_failed",
                level=logging.ERROR,
                user_id=owner_id,
                upload_id=upload_id,
                filename=sanitized.display_name,
                reason=e.reason or e.message,
            )
            raise
        if stored.checksum != sanitized.checksum:
            await self._discard_bytes(stored.storage_key)
            raise IntegrityError("Stored checksum does not match validated content")

        scan_status = await self._scan(data, upload_id)

        extra = dict(metadata or {})
        for key in _SYSTEM_METADATA_KEYS:
            extra.pop(key, None)
        record = FileRecord(
            owner_id=owner_id,
            display_name=sanitized.display_name,
            storage_key=stored.storage_key,
            byte_size=stored.byte_size,
            content_type=sanitized.content_type,
            extension=sanitized.extension,
            checksum=sanitized.checksum,
            scan_status=scan_status,
            scanned_at=utcnow(),
            metadata={
                **extra,
                "upload_id": upload_id,
                "processing_ms": round((time.perf_counter() - started) * 1000, 2),
                "validation_warnings": list(result.warnings),
            },
        )
        if scan_status != ScanStatus.CLEAN:
            record.mark_quarantined(f"scanner reported {scan_status.value}")
            log_security_event(
                "file_quarantined",
                level=logging.WARNING,
                user_id=owner_id,
                file_id=record.id,
                upload_id=upload_id,
                scan_status=scan_status.value,
            )

        self._records[record.id] = record
        try:
            await self._persist()
        except RepositoryError:
            # Not durable means not uploaded: roll back index and bytes
            self._records.pop(record.id, None)
            await self._resave_after_rollback(upload_id)
            await self._discard_bytes(record.storage_key)
            logger.error(f"Upload {upload_id} rolled back: metadata snapshot could not be saved")
            raise
        return record, list(result.warnings)

    async def _resave_after_rollback(self, upload_id: str) -> None:
        # A concurrent save may have written the rolled-back record already
        try:
            await self._persist()
        except RepositoryError as e:
            logger.warning(f"Snapshot not rewritten after rollback of {upload_id}: {e.reason or e.message}")

    async def _scan(self, data: bytes, upload_id: str) -> ScanStatus:
        try:
            return await self.scanner.scan(data)
        except Exception as e:
            logger.error(f"Scanner {self.scanner.name} failed for {upload_id}: {type(e).__name__}")
            return ScanStatus.ERROR

    async def _discard_bytes(self, storage_key: str) -> None:
        try:
            await self.store.remove(storage_key)
        except StorageError as e:
            logger.error(f"Could not remove orphaned file {storage_key}: {e.reason or e.message}")

    # ─── Read ────────────────────────────────────────────────────

    async def fetch(self, file_id: str, requester_id: str) -> FileContent:
        record = self._authorize(file_id, requester_id, "access")
        return await self._read(record, requester_id, "file_accessed")

    async def preview(self, file_id: str, requester_id: str) -> FileContent:
        """Like fetch, restricted to images for inline display."""
        record = self._authorize(file_id, requester_id, "preview")
        if not record.content_type.startswith("image/"):
            raise PreviewNotSupportedError()
        return await self._read(record, requester_id, "file_previewed")

    async def _read(self, record: FileRecord, requester_id: str, event: str) -> FileContent:
        if not record.is_accessible():
            raise NotAccessibleError()

        try:
            stored = await self.store.get(record.storage_key)
        except StorageAccessDeniedError:
            log_security_event(
                "executable_content_blocked",
                level=logging.ERROR,
                user_id=requester_id,
                file_id=record.id,
            )
            raise
        except StorageError as e:
            logger.error(f"Read failed for file {record.id}: {e.reason or e.message}")
            raise

        if compute_checksum(stored.data) != record.checksum:
            record.mark_quarantined("checksum mismatch on read")
            log_security_event(
                "integrity_fault",
                level=logging.ERROR,
                user_id=requester_id,
                file_id=record.id,
            )
            try:
                await self._persist()
            except RepositoryError as e:
                # The integrity fault is what the caller must see
                logger.error(f"Quarantine of file {record.id} not persisted: {e.reason or e.message}")
            raise IntegrityError("Stored file failed integrity verification")

        record.record_access()
        await self._persist()

        log_security_event(
            event,
            user_id=requester_id,
            file_id=record.id,
            filename=record.display_name,
            access_count=record.access_count,
        )
        return FileContent(
            data=stored.data,
            display_name=record.display_name,
            content_type=record.content_type,
            byte_size=stored.byte_size,
            checksum=record.checksum,
            modified_at=stored.modified_at,
        )

    # ─── Delete ──────────────────────────────────────────────────

    async def remove(self, file_id: str, requester_id: str) -> None:
        record = self._authorize(file_id, requester_id, "deletion")
        if record.status != FileStatus.ACTIVE:
            raise NotAccessibleError()

        await self._delete_record(record)
        await self._persist()

        log_security_event(
            "file_deleted",
            user_id=requester_id,
            file_id=record.id,
            filename=record.display_name,
            byte_size=record.byte_size,
        )

    async def _delete_record(self, record: FileRecord) -> None:
        # StorageError propagates before the status changes: no false "deleted"
        removed = await self.store.remove(record.storage_key)
        if not removed:
            logger.warning(f"File {record.id} had no bytes on disk at deletion time")
        record.mark_deleted()
        record.metadata["deleted_at"] = utcnow().isoformat()

    # ─── Queries ─────────────────────────────────────────────────

    def list_for_owner(
        self,
        owner_id: str,
        status: Optional[FileStatus] = FileStatus.ACTIVE,
        limit: int = 50,
        offset: int = 0,
    ) -> RecordPage:
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValueError("offset must not be negative")

        matching = [
            r for r in self._records.values()
            if is_owner(r, owner_id) and (status is None or r.status == status)
        ]
        matching.sort(key=lambda r: r.created_at, reverse=True)
        page = matching[offset:offset + limit]
        return RecordPage(
            records=[_summary(r) for r in page],
            total=len(matching),
            limit=limit,
            offset=offset,
        )

    def get_record_metadata(self, file_id: str, requester_id: str) -> RecordDetail:
        record = self._authorize(file_id, requester_id, "metadata")
        return _detail(record)

    async def service_stats(self) -> ServiceStats:
        counts = {s: 0 for s in FileStatus}
        for record in self._records.values():
            counts[record.status] += 1
        return ServiceStats(
            total_files=len(self._records),
            active_files=counts[FileStatus.ACTIVE],
            deleted_files=counts[FileStatus.DELETED],
            quarantined_files=counts[FileStatus.QUARANTINED],
            storage=await self.store.storage_stats(),
        )

    # ─── Maintenance ─────────────────────────────────────────────

    async def cleanup_expired(self, max_age_days: int = 30, now: Optional[datetime] = None) -> CleanupReport:
        """Delete active files older than max_age_days through the normal delete path."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=max_age_days)
        cleaned = 0
        errors = []
        for record in list(self._records.values()):
            if record.status != FileStatus.ACTIVE or record.created_at >= cutoff:
                continue
            try:
                await self._delete_record(record)
                cleaned += 1
            except StorageError as e:
                errors.append(f"Failed to delete file {record.id}: {e.message}")
        if cleaned:
            await self._persist()
        logger.info(f"Cleanup removed {cleaned} file(s) older than {max_age_days} day(s)")
        return CleanupReport(cleaned_count=cleaned, errors=errors)


async def build_coordinator(settings: Settings) -> UploadCoordinator:
    """Wire the coordinator from settings and load existing records."""
    coordinator = UploadCoordinator(
        validator=ContentValidator.from_settings(settings),
        store=SecureFileStore.from_settings(settings),
        repository=await build_repository(settings),
        rate_limiter=UploadRateLimiter.from_settings(settings),
    )
    count = await coordinator.load()
    logger.info(f"Upload coordinator ready with {count} record(s)")
    return coordinator
