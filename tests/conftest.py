import pytest

from docvault.services.content_validator import ContentValidator
from docvault.services.file_storage import SecureFileStore
from docvault.services.rate_limiter import UploadRateLimiter
from docvault.services.record_repository import JsonSnapshotRepository
from docvault.services.upload_coordinator import UploadCoordinator

ALLOWED = {".png", ".jpg", ".jpeg", ".gif", ".pdf", ".doc", ".docx", ".txt", ".csv", ".xlsx"}

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + bytes(range(1, 40))
JPEG_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00" + bytes(range(1, 60))
GIF_BYTES = b"GIF89a" + b"\x01\x00\x01\x00\x80\x00\x00" + b"\xff" * 10
PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\n%%EOF\n"
DOCX_BYTES = b"PK\x03\x04\x14\x00\x06\x00" + b"[Content_Types].xml" + b"\x00" * 16
DOC_BYTES = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"\x00" * 24
TXT_BYTES = b"quarterly numbers\nall good\n"
CSV_BYTES = b"name,amount\nalice,10\nbob,20\n"
PE_BYTES = b"MZ\x90\x00\x03\x00\x00\x00\x04\x00\x00\x00\xff\xff" + b"\x00" * 32


class FakeClock:
    """Manually advanced monotonic clock for rate limiter tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def validator():
    return ContentValidator(ALLOWED, max_file_size=1024 * 1024)


@pytest.fixture
def storage_root(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def store(storage_root):
    return SecureFileStore(storage_root, file_mode=0o640)


@pytest.fixture
def snapshot_path(tmp_path):
    return tmp_path / "data" / "upload_history.json"


@pytest.fixture
def repository(snapshot_path):
    return JsonSnapshotRepository(snapshot_path)


@pytest.fixture
def rate_limiter(clock):
    return UploadRateLimiter(max_uploads=5, window_seconds=60, clock=clock)


@pytest.fixture
async def coordinator(validator, store, repository, rate_limiter):
    c = UploadCoordinator(validator, store, repository, rate_limiter)
    await c.load()
    yield c
    await c.close()
