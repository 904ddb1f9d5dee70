"""Tests for the upload coordinator: upload, fetch, delete and queries."""
import asyncio
import hashlib
import logging
from datetime import datetime, timedelta, timezone

import pytest

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
from docvault.services.records import FileStatus, ScanStatus
from docvault.services.scanner import ContentScanner
from docvault.services.upload_coordinator import UploadCoordinator

from conftest import PDF_BYTES, PE_BYTES, PNG_BYTES, TXT_BYTES


async def upload_pdf(coordinator, owner="alice", name="report.pdf", **kwargs):
    return await coordinator.upload(PDF_BYTES, name, "application/pdf", owner, **kwargs)


def stored_files(storage_root):
    return sorted(p.name for p in storage_root.iterdir())


class InfectedScanner(ContentScanner):
    name = "always-infected"

    async def scan(self, data):
        return ScanStatus.INFECTED


class BrokenScanner(ContentScanner):
    name = "broken"

    async def scan(self, data):
        raise ConnectionError("scanner daemon unreachable")


# =============================================================================
# Upload
# =============================================================================

class TestUpload:
    async def test_round_trip(self, coordinator):
        """Fetched bytes are exactly the uploaded bytes."""
        receipt = await upload_pdf(coordinator)

        content = await coordinator.fetch(receipt.id, "alice")

        assert content.data == PDF_BYTES
        assert content.checksum == hashlib.sha256(content.data).hexdigest()
        assert content.display_name == "report.pdf"
        assert content.content_type == "application/pdf"

    async def test_receipt(self, coordinator):
        receipt = await upload_pdf(coordinator)

        assert receipt.display_name == "report.pdf"
        assert receipt.byte_size == len(PDF_BYTES)
        assert receipt.content_type == "application/pdf"
        assert receipt.status == FileStatus.ACTIVE
        assert receipt.warnings == []
        assert not hasattr(receipt, "storage_key")

    async def test_record_is_durable_before_return(self, coordinator, repository):
        receipt = await upload_pdf(coordinator)

        ids = [r.id for r in await repository.load()]
        assert ids == [receipt.id]

    async def test_record_fields(self, coordinator):
        receipt = await upload_pdf(coordinator, metadata={"project": "q3"})

        record = coordinator._records[receipt.id]
        assert record.owner_id == "alice"
        assert record.checksum == hashlib.sha256(PDF_BYTES).hexdigest()
        assert record.scan_status == ScanStatus.CLEAN
        assert record.metadata["project"] == "q3"
        assert record.metadata["upload_id"].startswith("upload_")
        assert record.metadata["validation_warnings"] == []
        assert "processing_ms" in record.metadata

    async def test_caller_cannot_override_system_metadata(self, coordinator):
        receipt = await upload_pdf(coordinator, metadata={"upload_id": "spoofed"})

        assert coordinator._records[receipt.id].metadata["upload_id"] != "spoofed"

    async def test_warnings_returned(self, coordinator):
        receipt = await coordinator.upload(PDF_BYTES, "report.pdf", "application/octet-stream", "alice")
        assert receipt.warnings == ["MIME type inconsistency detected: application/pdf, application/octet-stream"]

    async def test_path_traversal_name_rejected(self, coordinator, storage_root):
        with pytest.raises(ValidationFailedError) as exc_info:
            await coordinator.upload(TXT_BYTES, "../../etc/passwd", "text/plain", "alice")

        assert "Filename contains path traversal characters" in exc_info.value.errors
        assert stored_files(storage_root) == []
        assert coordinator.list_for_owner("alice").total == 0

    async def test_spoofed_executable_rejected(self, coordinator, storage_root):
        """A PE binary named .jpg never reaches the disk."""
        with pytest.raises(ValidationFailedError):
            await coordinator.upload(PE_BYTES, "photo.jpg", "image/jpeg", "alice")

        assert stored_files(storage_root) == []

    async def test_storage_failure_creates_no_record(self, coordinator, monkeypatch):
        async def failing_put(*args, **kwargs):
            raise StorageError("File storage failed", reason="No space left on device")

        monkeypatch.setattr(coordinator.store, "put", failing_put)

        with pytest.raises(StorageError):
            await upload_pdf(coordinator)
        assert coordinator.list_for_owner("alice").total == 0
        assert coordinator.rate_limiter.check("alice").remaining == 5

    async def test_persistence_failure_rolls_back(self, coordinator, storage_root, monkeypatch):
        async def failing_save(records):
            raise RepositoryError("Metadata snapshot could not be saved")

        monkeypatch.setattr(coordinator.repository, "save_all", failing_save)

        with pytest.raises(RepositoryError):
            await upload_pdf(coordinator)
        assert coordinator.list_for_owner("alice", status=None).total == 0
        assert stored_files(storage_root) == []
        assert coordinator.rate_limiter.check("alice").remaining == 5

    async def test_rollback_rewrites_snapshot_that_already_holds_the_record(
        self, coordinator, repository, storage_root, monkeypatch
    ):
        """A save that wrote the record but then failed must not leave it behind."""
        real_save = repository.save_all
        calls = []

        async def save_then_fail_once(records):
            calls.append(1)
            await real_save(records)
            if len(calls) == 1:
                raise RepositoryError("Metadata snapshot could not be saved")

        monkeypatch.setattr(repository, "save_all", save_then_fail_once)

        with pytest.raises(RepositoryError):
            await upload_pdf(coordinator)
        assert await repository.load() == []
        assert stored_files(storage_root) == []


class TestQuota:
    async def test_blocks_after_limit_and_recovers(self, coordinator, clock):
        coordinator.rate_limiter.max_uploads = 2
        await upload_pdf(coordinator)
        await upload_pdf(coordinator)

        with pytest.raises(QuotaExceededError) as exc_info:
            await upload_pdf(coordinator)
        assert exc_info.value.retry_after > 0
        # other users are unaffected
        await upload_pdf(coordinator, owner="bob")

        clock.advance(60)
        await upload_pdf(coordinator)

    async def test_rejected_uploads_do_not_consume_quota(self, coordinator):
        coordinator.rate_limiter.max_uploads = 1
        for _ in range(3):
            with pytest.raises(ValidationFailedError):
                await coordinator.upload(b"", "empty.txt", "text/plain", "alice")

        await upload_pdf(coordinator)

    async def test_quota_breach_is_a_security_event(self, coordinator, caplog):
        coordinator.rate_limiter.max_uploads = 1
        await upload_pdf(coordinator)

        with caplog.at_level(logging.INFO):
            with pytest.raises(QuotaExceededError):
                await upload_pdf(coordinator)

        assert "SECURITY_EVENT rate_limit_exceeded" in caplog.text

    async def test_concurrent_uploads_respect_quota(self, coordinator, repository):
        coordinator.rate_limiter.max_uploads = 1

        results = await asyncio.gather(*(upload_pdf(coordinator) for _ in range(4)), return_exceptions=True)

        accepted = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, QuotaExceededError)]
        assert len(accepted) == 1
        assert len(refused) == 3
        assert len(await repository.load()) == 1
        assert coordinator.rate_limiter._pending == {}

    async def test_failed_upload_in_flight_frees_its_slot(self, coordinator, monkeypatch):
        coordinator.rate_limiter.max_uploads = 1

        async def failing_put(*args, **kwargs):
            raise StorageError("File storage failed", reason="No space left on device")

        monkeypatch.setattr(coordinator.store, "put", failing_put)
        with pytest.raises(StorageError):
            await upload_pdf(coordinator)
        monkeypatch.undo()

        await upload_pdf(coordinator)


class TestScanning:
    async def test_infected_upload_is_quarantined(self, validator, store, repository, rate_limiter):
        coordinator = UploadCoordinator(validator, store, repository, rate_limiter, scanner=InfectedScanner())
        await coordinator.load()

        receipt = await upload_pdf(coordinator)

        assert receipt.status == FileStatus.QUARANTINED
        record = coordinator._records[receipt.id]
        assert record.scan_status == ScanStatus.INFECTED
        assert record.metadata["quarantine_reason"] == "scanner reported infected"
        with pytest.raises(NotAccessibleError):
            await coordinator.fetch(receipt.id, "alice")

    async def test_scanner_failure_is_not_clean(self, validator, store, repository, rate_limiter):
        coordinator = UploadCoordinator(validator, store, repository, rate_limiter, scanner=BrokenScanner())
        await coordinator.load()

        receipt = await upload_pdf(coordinator)

        assert coordinator._records[receipt.id].scan_status == ScanStatus.ERROR
        assert receipt.status == FileStatus.QUARANTINED

    def test_scanner_must_implement_scan(self):
        class Incomplete(ContentScanner):
            name = "incomplete"

        with pytest.raises(TypeError):
            Incomplete()


# =============================================================================
# Fetch
# =============================================================================

class TestFetch:
    async def test_unknown_id(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.fetch("no-such-id", "alice")

    async def test_other_owner_is_forbidden(self, coordinator, caplog):
        receipt = await upload_pdf(coordinator)

        with caplog.at_level(logging.INFO):
            with pytest.raises(ForbiddenError):
                await coordinator.fetch(receipt.id, "mallory")

        assert "unauthorized_access_attempt" in caplog.text
        assert coordinator._records[receipt.id].access_count == 0

    async def test_access_bookkeeping_is_persisted(self, coordinator, validator, store, repository, rate_limiter):
        receipt = await upload_pdf(coordinator)
        await coordinator.fetch(receipt.id, "alice")
        first_access = coordinator._records[receipt.id].last_accessed_at
        await coordinator.fetch(receipt.id, "alice")

        record = coordinator._records[receipt.id]
        assert record.access_count == 2
        assert record.last_accessed_at >= first_access

        reloaded = UploadCoordinator(validator, store, repository, rate_limiter)
        await reloaded.load()
        assert reloaded.get_record_metadata(receipt.id, "alice").access_count == 2

    async def test_tampered_bytes_quarantine_the_record(self, coordinator, store, repository):
        receipt = await upload_pdf(coordinator)
        record = coordinator._records[receipt.id]
        (store.root / record.storage_key).write_bytes(b"%PDF-1.4 tampered")

        with pytest.raises(IntegrityError):
            await coordinator.fetch(receipt.id, "alice")

        assert record.status == FileStatus.QUARANTINED
        assert record.access_count == 0
        (persisted,) = await repository.load()
        assert persisted.status == FileStatus.QUARANTINED
        with pytest.raises(NotAccessibleError):
            await coordinator.fetch(receipt.id, "alice")

    async def test_integrity_fault_wins_over_snapshot_failure(self, coordinator, store, monkeypatch, caplog):
        receipt = await upload_pdf(coordinator)
        record = coordinator._records[receipt.id]
        (store.root / record.storage_key).write_bytes(b"%PDF-1.4 tampered")

        async def failing_save(records):
            raise RepositoryError("Metadata snapshot could not be saved", reason="disk full")

        monkeypatch.setattr(coordinator.repository, "save_all", failing_save)

        with caplog.at_level(logging.ERROR):
            with pytest.raises(IntegrityError):
                await coordinator.fetch(receipt.id, "alice")

        assert record.status == FileStatus.QUARANTINED
        assert "not persisted" in caplog.text

    async def test_planted_executable_is_refused(self, coordinator, store):
        receipt = await upload_pdf(coordinator)
        record = coordinator._records[receipt.id]
        (store.root / record.storage_key).write_bytes(PE_BYTES)

        with pytest.raises(StorageAccessDeniedError):
            await coordinator.fetch(receipt.id, "alice")

    async def test_missing_bytes(self, coordinator, store):
        receipt = await upload_pdf(coordinator)
        (store.root / coordinator._records[receipt.id].storage_key).unlink()

        with pytest.raises(StorageError):
            await coordinator.fetch(receipt.id, "alice")


class TestPreview:
    async def test_image_preview(self, coordinator):
        receipt = await coordinator.upload(PNG_BYTES, "chart.png", "image/png", "alice")

        content = await coordinator.preview(receipt.id, "alice")

        assert content.data == PNG_BYTES
        assert content.content_type == "image/png"

    async def test_non_image_preview_refused(self, coordinator):
        receipt = await upload_pdf(coordinator)

        with pytest.raises(PreviewNotSupportedError):
            await coordinator.preview(receipt.id, "alice")

    async def test_preview_checks_ownership_first(self, coordinator):
        receipt = await upload_pdf(coordinator)

        with pytest.raises(ForbiddenError):
            await coordinator.preview(receipt.id, "mallory")


# =============================================================================
# Remove
# =============================================================================

class TestRemove:
    async def test_deletion_is_final(self, coordinator, store):
        receipt = await upload_pdf(coordinator)
        storage_key = coordinator._records[receipt.id].storage_key

        await coordinator.remove(receipt.id, "alice")

        assert await store.exists(storage_key) is False
        with pytest.raises(NotAccessibleError):
            await coordinator.fetch(receipt.id, "alice")
        with pytest.raises(NotAccessibleError):
            await coordinator.remove(receipt.id, "alice")

        record = coordinator._records[receipt.id]
        assert record.status == FileStatus.DELETED
        assert "deleted_at" in record.metadata

    async def test_other_owner_cannot_delete(self, coordinator, store):
        receipt = await upload_pdf(coordinator)

        with pytest.raises(ForbiddenError):
            await coordinator.remove(receipt.id, "mallory")

        assert coordinator._records[receipt.id].status == FileStatus.ACTIVE
        assert await store.exists(coordinator._records[receipt.id].storage_key)

    async def test_storage_failure_keeps_record_active(self, coordinator, monkeypatch):
        receipt = await upload_pdf(coordinator)

        async def failing_remove(storage_key):
            raise StorageError("File deletion failed", reason="Permission denied")

        monkeypatch.setattr(coordinator.store, "remove", failing_remove)

        with pytest.raises(StorageError):
            await coordinator.remove(receipt.id, "alice")
        assert coordinator._records[receipt.id].status == FileStatus.ACTIVE

    async def test_bytes_already_gone(self, coordinator, store):
        receipt = await upload_pdf(coordinator)
        (store.root / coordinator._records[receipt.id].storage_key).unlink()

        await coordinator.remove(receipt.id, "alice")

        assert coordinator._records[receipt.id].status == FileStatus.DELETED


# =============================================================================
# Queries
# =============================================================================

class TestListForOwner:
    async def _seed(self, coordinator):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        ids = []
        for i in range(3):
            receipt = await upload_pdf(coordinator, name=f"r{i}.pdf")
            coordinator._records[receipt.id].created_at = base + timedelta(minutes=i)
            ids.append(receipt.id)
        await upload_pdf(coordinator, owner="bob")
        return ids

    async def test_newest_first_and_owner_scoped(self, coordinator):
        ids = await self._seed(coordinator)

        page = coordinator.list_for_owner("alice")

        assert page.total == 3
        assert [s.id for s in page.records] == list(reversed(ids))

    async def test_pagination_total_is_before_slicing(self, coordinator):
        ids = await self._seed(coordinator)

        first = coordinator.list_for_owner("alice", limit=2, offset=0)
        second = coordinator.list_for_owner("alice", limit=2, offset=2)

        assert first.total == second.total == 3
        assert [s.id for s in first.records] == [ids[2], ids[1]]
        assert [s.id for s in second.records] == [ids[0]]

    async def test_status_filter(self, coordinator):
        ids = await self._seed(coordinator)
        await coordinator.remove(ids[0], "alice")

        assert coordinator.list_for_owner("alice").total == 2
        deleted = coordinator.list_for_owner("alice", status=FileStatus.DELETED)
        assert [s.id for s in deleted.records] == [ids[0]]
        assert coordinator.list_for_owner("alice", status=None).total == 3

    async def test_summaries_hide_storage_details(self, coordinator):
        await upload_pdf(coordinator)

        (summary,) = coordinator.list_for_owner("alice").records

        assert not hasattr(summary, "storage_key")
        assert not hasattr(summary, "checksum")

    @pytest.mark.parametrize("limit,offset", [(0, 0), (101, 0), (10, -1)])
    async def test_bad_paging(self, coordinator, limit, offset):
        with pytest.raises(ValueError):
            coordinator.list_for_owner("alice", limit=limit, offset=offset)


class TestMetadataAndStats:
    async def test_record_metadata(self, coordinator):
        receipt = await upload_pdf(coordinator)

        detail = coordinator.get_record_metadata(receipt.id, "alice")

        assert detail.checksum == hashlib.sha256(PDF_BYTES).hexdigest()
        assert detail.extension == ".pdf"
        assert detail.scanned_at is not None
        with pytest.raises(ForbiddenError):
            coordinator.get_record_metadata(receipt.id, "mallory")

    async def test_service_stats(self, coordinator):
        first = await upload_pdf(coordinator)
        await upload_pdf(coordinator, owner="bob")
        await coordinator.remove(first.id, "alice")

        stats = await coordinator.service_stats()

        assert stats.total_files == 2
        assert stats.active_files == 1
        assert stats.deleted_files == 1
        assert stats.quarantined_files == 0
        assert stats.storage.file_count == 1
        assert stats.storage.total_bytes == len(PDF_BYTES)


class TestCleanupExpired:
    async def test_removes_only_old_active_files(self, coordinator, store):
        old = await upload_pdf(coordinator)
        fresh = await upload_pdf(coordinator)
        coordinator._records[old.id].created_at = datetime.now(timezone.utc) - timedelta(days=45)

        report = await coordinator.cleanup_expired(max_age_days=30)

        assert report.cleaned_count == 1
        assert report.errors == []
        assert coordinator._records[old.id].status == FileStatus.DELETED
        assert coordinator._records[fresh.id].status == FileStatus.ACTIVE
        assert not await store.exists(coordinator._records[old.id].storage_key)

    async def test_nothing_to_clean(self, coordinator):
        await upload_pdf(coordinator)

        report = await coordinator.cleanup_expired(max_age_days=30)

        assert report.cleaned_count == 0
