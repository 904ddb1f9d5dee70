"""Durable storage for FileRecords.

The coordinator keeps the working set in memory and hands the full list to
``save_all`` after every mutation. Implementations must replace the stored
state atomically: a crash mid-save leaves either the old or the new state,
never a torn one.
"""
import json
import logging
import os
import uuid
from abc import ABC, abstractmethod
from datetime import timezone
from pathlib import Path
from typing import Iterable, List

import aiofiles
import aiofiles.os
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docvault.config import Settings
from docvault.models.file_record import FileRecordRow
from docvault.services.errors import RepositoryError
from docvault.services.records import FileRecord, FileStatus, ScanStatus

logger = logging.getLogger(__name__)


class RecordRepository(ABC):
    """Interface: load everything, save everything."""

    @abstractmethod
    async def load(self) -> List[FileRecord]:
        pass

    @abstractmethod
    async def save_all(self, records: Iterable[FileRecord]) -> None:
        pass

    async def close(self) -> None:
        pass


# ─── Flat JSON snapshot ───────────────────────────────────────────

class JsonSnapshotRepository(RecordRepository):
    """One JSON document ``{id: record}``, replaced via write-temp-then-rename."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def load(self) -> List[FileRecord]:
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            logger.info(f"No metadata snapshot at {self.path}, starting fresh")
            return []
        except OSError as e:
            raise RepositoryError("Metadata snapshot could not be read", reason=e.strerror) from e

        try:
            data = json.loads(raw) if raw.strip() else {}
            records = [FileRecord.from_dict(value) for value in data.values()]
        except (ValueError, TypeError, AttributeError) as e:
            # Refuse to start over an unreadable snapshot: the next save would erase history
            raise RepositoryError("Metadata snapshot is corrupted", reason=str(e)) from e

        logger.info(f"Loaded {len(records)} file record(s) from {self.path}")
        return records

    async def save_all(self, records: Iterable[FileRecord]) -> None:
        payload = {r.id: r.to_dict() for r in records}
        body = json.dumps(payload, indent=2, sort_keys=True)
        tmp_path = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex}.tmp")
        try:
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(body)
                await f.flush()
                os.fsync(f.fileno())
            await aiofiles.os.replace(tmp_path, self.path)
        except OSError as e:
            try:
                await aiofiles.os.remove(tmp_path)
            except OSError:
                # temp file was never created
                pass
            raise RepositoryError("Metadata snapshot could not be saved", reason=e.strerror) from e


# ─── SQL table ────────────────────────────────────────────────────

def _to_row(record: FileRecord) -> FileRecordRow:
    return FileRecordRow(
        id=record.id,
        owner_id=record.owner_id,
        display_name=record.display_name,
        storage_key=record.storage_key,
        byte_size=record.byte_size,
        content_type=record.content_type,
        extension=record.extension,
        checksum=record.checksum,
        created_at=record.created_at,
        last_accessed_at=record.last_accessed_at,
        access_count=record.access_count,
        status=record.status.value,
        scan_status=record.scan_status.value,
        scanned_at=record.scanned_at,
        extra_metadata=dict(record.metadata),
    )


def _aware(value):
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _from_row(row: FileRecordRow) -> FileRecord:
    return FileRecord(
        id=row.id,
        owner_id=row.owner_id,
        display_name=row.display_name,
        storage_key=row.storage_key,
        byte_size=row.byte_size,
        content_type=row.content_type,
        extension=row.extension,
        checksum=row.checksum,
        created_at=_aware(row.created_at),
        last_accessed_at=_aware(row.last_accessed_at),
        access_count=row.access_count or 0,
        status=FileStatus(row.status),
        scan_status=ScanStatus(row.scan_status),
        scanned_at=_aware(row.scanned_at),
        metadata=dict(row.extra_metadata or {}),
    )


class SqlRecordRepository(RecordRepository):
    """file_records table. ``save_all`` upserts every record in one transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], engine=None):
        self.session_factory = session_factory
        self.engine = engine

    async def load(self) -> List[FileRecord]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(FileRecordRow))
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise RepositoryError("Metadata could not be loaded", reason=type(e).__name__) from e
        logger.info(f"Loaded {len(rows)} file record(s) from database")
        return [_from_row(row) for row in rows]

    async def save_all(self, records: Iterable[FileRecord]) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for record in records:
                        await session.merge(_to_row(record))
        except SQLAlchemyError as e:
            raise RepositoryError("Metadata could not be saved", reason=type(e).__name__) from e

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()


async def build_repository(settings: Settings) -> RecordRepository:
    """Pick the metadata backend from METADATA_STORE_TYPE."""
    if settings.METADATA_STORE_TYPE == "database":
        from docvault.database import build_engine, build_session_factory, create_tables

        engine = build_engine(settings.DATABASE_URL)
        await create_tables(engine)
        return SqlRecordRepository(build_session_factory(engine), engine=engine)
    return JsonSnapshotRepository(settings.METADATA_SNAPSHOT_PATH)
