"""FileRecord - the durable metadata unit for one uploaded file.

In-memory dataclass owned by the upload coordinator. Persisted by a
RecordRepository (flat JSON snapshot or SQL table).
"""
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from docvault.services.errors import InvalidTransitionError


class FileStatus(str, Enum):
    ACTIVE = "active"
    DELETED = "deleted"
    QUARANTINED = "quarantined"


class ScanStatus(str, Enum):
    PENDING = "pending"
    CLEAN = "clean"
    INFECTED = "infected"
    ERROR = "error"


# deleted and quarantined are terminal
_ALLOWED_TRANSITIONS = {
    FileStatus.ACTIVE: {FileStatus.DELETED, FileStatus.QUARANTINED},
    FileStatus.DELETED: set(),
    FileStatus.QUARANTINED: set(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FileRecord:
    owner_id: str
    display_name: str
    storage_key: str
    byte_size: int
    content_type: str
    extension: str
    checksum: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    last_accessed_at: Optional[datetime] = None
    access_count: int = 0
    status: FileStatus = FileStatus.ACTIVE
    scan_status: ScanStatus = ScanStatus.PENDING
    scanned_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_accessible(self) -> bool:
        return self.status == FileStatus.ACTIVE and self.scan_status == ScanStatus.CLEAN

    def record_access(self, when: Optional[datetime] = None) -> None:
        """Bump access bookkeeping. Timestamps never move backwards."""
        when = when or utcnow()
        if self.last_accessed_at is None or when > self.last_accessed_at:
            self.last_accessed_at = when
        self.access_count += 1

    def transition(self, new_status: FileStatus) -> None:
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Cannot move file from '{self.status.value}' to '{new_status.value}'"
            )
        self.status = new_status

    def mark_deleted(self) -> None:
        self.transition(FileStatus.DELETED)

    def mark_quarantined(self, reason: str) -> None:
        self.transition(FileStatus.QUARANTINED)
        self.metadata["quarantine_reason"] = reason
        self.metadata["quarantined_at"] = utcnow().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["scan_status"] = self.scan_status.value
        for key in ("created_at", "last_accessed_at", "scanned_at"):
            value = data[key]
            data[key] = value.isoformat() if value is not None else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        kwargs = dict(data)
        kwargs["status"] = FileStatus(kwargs.get("status", FileStatus.ACTIVE.value))
        kwargs["scan_status"] = ScanStatus(kwargs.get("scan_status", ScanStatus.PENDING.value))
        for key in ("created_at", "last_accessed_at", "scanned_at"):
            raw = kwargs.get(key)
            if isinstance(raw, str):
                kwargs[key] = _parse_datetime(raw)
        kwargs["metadata"] = dict(kwargs.get("metadata") or {})
        return cls(**kwargs)


def _parse_datetime(raw: str) -> datetime:
    value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def is_owner(record: FileRecord, requester_id: Optional[str]) -> bool:
    """Single ownership predicate used by every coordinator operation."""
    return bool(requester_id) and record.owner_id == requester_id
