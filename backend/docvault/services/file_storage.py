"""Secure local file storage.

Bytes live flat in one directory under system-minted names
(``<uuid4 hex><ext>``). Nothing about the client's file name except the
validated extension reaches the disk. Every key coming back in is re-checked
here, independently of upstream validation.
"""
import os
import re
import stat
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from docvault.config import Settings
from docvault.services.content_validator import (
    EXTENSION_CONTENT_TYPES,
    compute_checksum,
    file_extension,
    is_executable_content,
)
from docvault.services.errors import (
    IntegrityError,
    InvalidStorageKeyError,
    StorageAccessDeniedError,
    StorageError,
)

MAX_KEY_LENGTH = 255
_FORBIDDEN_KEY_CHARS = re.compile(r'[<>:"|?*\x00-\x1f\x7f]')
_EXTENSION_RE = re.compile(r"^\.[a-z0-9]{1,10}$")
_MAX_COLLISION_ATTEMPTS = 100
_EXEC_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


@dataclass(frozen=True)
class StoredObject:
    storage_key: str
    path: Path
    byte_size: int
    checksum: str


@dataclass(frozen=True)
class StoredFile:
    data: bytes
    byte_size: int
    content_type: str
    modified_at: datetime


@dataclass(frozen=True)
class StoredFileInfo:
    byte_size: int
    content_type: str
    modified_at: datetime
    is_executable_flag_set: bool


@dataclass(frozen=True)
class StorageStats:
    file_count: int
    total_bytes: int


def is_valid_storage_key(key) -> bool:
    """Path-safety check for keys handed back to the store."""
    if not key or not isinstance(key, str):
        return False
    if ".." in key or "/" in key or "\\" in key:
        return False
    if _FORBIDDEN_KEY_CHARS.search(key):
        return False
    if len(key) > MAX_KEY_LENGTH or not key.strip():
        return False
    return True


def content_type_for_key(storage_key: str) -> str:
    return EXTENSION_CONTENT_TYPES.get(file_extension(storage_key), "application/octet-stream")


class SecureFileStore:
    """Handles secure file write/read/delete inside a single root directory."""

    def __init__(self, root: str | Path, file_mode: int = 0o640):
        if file_mode & _EXEC_BITS:
            raise ValueError("stored files must not be executable")
        self.root = Path(root).resolve()
        self.file_mode = file_mode
        self.root.mkdir(parents=True, exist_ok=True, mode=0o750)
        if not self.root.is_dir():
            raise StorageError("Storage path exists but is not a directory")

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecureFileStore":
        return cls(settings.FILE_STORAGE_PATH, settings.file_storage_mode)

    # ─── Write ───────────────────────────────────────────────────

    async def put(self, data: bytes, display_name: str, content_type: Optional[str] = None) -> StoredObject:
        """Store bytes under a fresh key. Returns only after a verified write.

        ``content_type`` is accepted for symmetry with the read side; the
        stored type is always derived from the key's extension.
        """
        extension = file_extension(display_name or "")
        if extension and not _EXTENSION_RE.match(extension):
            raise StorageError("Unsupported file extension for storage")

        expected_checksum = compute_checksum(data)
        path = await self._create_exclusive(uuid.uuid4().hex, extension, data)
        try:
            await self._chmod(path)
            await self._verify_written(path, data, expected_checksum)
        except Exception:
            await self._discard(path)
            raise

        return StoredObject(
            storage_key=path.name,
            path=path,
            byte_size=len(data),
            checksum=expected_checksum,
        )

    async def _create_exclusive(self, base: str, extension: str, data: bytes) -> Path:
        """Open with O_CREAT|O_EXCL; on a clash append _1, _2, ... and retry."""
        for attempt in range(_MAX_COLLISION_ATTEMPTS):
            name = f"{base}{extension}" if attempt == 0 else f"{base}_{attempt}{extension}"
            path = self.root / name
            try:
                f = await aiofiles.open(path, "xb", opener=self._opener)
            except FileExistsError:
                continue
            except OSError as e:
                raise StorageError("File storage failed", reason=e.strerror) from e

            try:
                await f.write(data)
                await f.flush()
                os.fsync(f.fileno())
            except OSError as e:
                await f.close()
                await self._discard(path)
                raise StorageError("File storage failed", reason=e.strerror) from e
            await f.close()
            return path
        raise StorageError("File storage failed", reason="could not allocate a unique storage key")

    def _opener(self, path, flags):
        return os.open(path, flags, self.file_mode)

    async def _chmod(self, path: Path) -> None:
        # umask may have stripped bits from the requested mode
        try:
            os.chmod(path, self.file_mode)
        except OSError as e:
            raise StorageError("File storage failed", reason=e.strerror) from e

    async def _verify_written(self, path: Path, data: bytes, expected_checksum: str) -> None:
        try:
            async with aiofiles.open(path, "rb") as f:
                written = await f.read()
        except OSError as e:
            raise StorageError("File storage failed", reason=e.strerror) from e
        if len(written) != len(data):
            raise IntegrityError("File size mismatch after writing")
        if compute_checksum(written) != expected_checksum:
            raise IntegrityError("File checksum mismatch after writing")

    async def _discard(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass

    # ─── Read ────────────────────────────────────────────────────

    def _resolve(self, storage_key: str) -> Path:
        if not is_valid_storage_key(storage_key):
            raise InvalidStorageKeyError()
        path = (self.root / storage_key).resolve()
        if path.parent != self.root:
            raise InvalidStorageKeyError()
        return path

    async def get(self, storage_key: str) -> StoredFile:
        path = self._resolve(storage_key)
        try:
            st = await aiofiles.os.stat(path)
            if st.st_mode & _EXEC_BITS:
                raise StorageAccessDeniedError()
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
        except FileNotFoundError as e:
            raise StorageError("Stored file is missing", reason="not found") from e
        except OSError as e:
            raise StorageError("File retrieval failed", reason=e.strerror) from e

        if is_executable_content(data):
            raise StorageAccessDeniedError()

        return StoredFile(
            data=data,
            byte_size=len(data),
            content_type=content_type_for_key(storage_key),
            modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )

    async def exists(self, storage_key: str) -> bool:
        if not is_valid_storage_key(storage_key):
            return False
        return await aiofiles.os.path.isfile(self.root / storage_key)

    async def stat(self, storage_key: str) -> StoredFileInfo:
        path = self._resolve(storage_key)
        try:
            st = await aiofiles.os.stat(path)
        except FileNotFoundError as e:
            raise StorageError("Stored file is missing", reason="not found") from e
        except OSError as e:
            raise StorageError("File stat failed", reason=e.strerror) from e
        return StoredFileInfo(
            byte_size=st.st_size,
            content_type=content_type_for_key(storage_key),
            modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
            is_executable_flag_set=bool(st.st_mode & _EXEC_BITS),
        )

    # ─── Delete ──────────────────────────────────────────────────

    async def remove(self, storage_key: str) -> bool:
        """Unlink the file. False when there was nothing to remove."""
        path = self._resolve(storage_key)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError("File deletion failed", reason=e.strerror) from e
        return True

    # ─── Maintenance ─────────────────────────────────────────────

    async def storage_stats(self) -> StorageStats:
        count = 0
        total = 0
        try:
            names = await aiofiles.os.listdir(self.root)
        except OSError as e:
            raise StorageError("Storage statistics unavailable", reason=e.strerror) from e
        for name in names:
            try:
                st = await aiofiles.os.stat(self.root / name)
            except FileNotFoundError:
                # removed between listdir and stat
                continue
            if stat.S_ISREG(st.st_mode):
                count += 1
                total += st.st_size
        return StorageStats(file_count=count, total_bytes=total)
