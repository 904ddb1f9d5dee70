"""Upload content validation.

Runs every candidate file through a fixed pipeline before any byte is
written to disk:

    1. structure      - bytes and a name are present
    2. size           - 0 < size <= max
    3. filename       - no traversal / control / reserved characters
    4. extension      - must be on the allow-list
    5. content type   - signature vs extension vs declared type
    6. content sanity - shallow per-type checks
    7. security scan  - executable magic numbers, script markers
    8. checksum       - SHA-256 of the full payload

A stage that fails stops the pipeline; all errors found inside that stage are
reported together. The validator is pure: no I/O and no logging.
"""
import hashlib
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from docvault.config import Settings

# ─── Content type tables ──────────────────────────────────────────

# Canonical content type per allowed extension
EXTENSION_CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".txt": "text/plain",
    ".csv": "text/csv",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

ZIP_CONTENT_TYPE = "application/zip"

# (magic prefix, content type), checked in order
SIGNATURES: List[Tuple[bytes, str]] = [
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"%PDF", "application/pdf"),
    (b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", "application/msword"),
    (b"PK\x03\x04", ZIP_CONTENT_TYPE),
]

# Office Open XML files are zip containers, so the sniffer only sees "zip"
ZIP_CONTAINER_EXTENSIONS = frozenset({".docx", ".xlsx"})

# Content types that every genuine file of that type starts with a signature for
_SNIFFABLE_TYPES = frozenset(ct for _, ct in SIGNATURES)

# Declared types browsers commonly send for the canonical ones
_DECLARED_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "application/csv": "text/csv",
    "text/comma-separated-values": "text/csv",
    "application/x-pdf": "application/pdf",
}

# ─── Security heuristics ──────────────────────────────────────────

EXECUTABLE_SIGNATURES: List[Tuple[bytes, str]] = [
    (b"MZ", "PE executable"),
    (b"\x7fELF", "ELF executable"),
    (b"\xca\xfe\xba\xbe", "Java class file"),
]

SCRIPT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"<script",
        r"javascript:",
        r"vbscript:",
        r"onload\s*=",
        r"onerror\s*=",
        r"eval\(",
        r"document\.cookie",
    )
]

SCRIPT_SCAN_BYTES = 1024

# ─── Filename rules ───────────────────────────────────────────────

MAX_FILENAME_LENGTH = 255
FORBIDDEN_NAME_CHARS = re.compile(r'[<>:"|?*\x00-\x1f\x7f]')
NAME_PLACEHOLDER = "_"


def compute_checksum(data: bytes) -> str:
    """SHA-256 hex digest of in-memory bytes."""
    return hashlib.sha256(data).hexdigest()


def format_file_size(size: int) -> str:
    """Format file size for human-readable display."""
    if size < 1024:
        return f"{size} B"
    elif size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    else:
        return f"{size / (1024 * 1024):.1f} MB"


def file_extension(name: str) -> str:
    """Lower-case extension including the dot, '' when there is none."""
    return os.path.splitext(name)[1].lower()


# ─── Content type signals (independent and swappable) ─────────────

def sniff_content_type(data: bytes) -> Optional[str]:
    """Identify the format from leading magic bytes. None when unknown."""
    head = bytes(data[:16])
    for magic, content_type in SIGNATURES:
        if head.startswith(magic):
            return content_type
    return None


def content_type_for_extension(extension: str) -> Optional[str]:
    """Static extension -> canonical content type lookup."""
    return EXTENSION_CONTENT_TYPES.get(extension.lower())


def normalize_declared_type(declared: Optional[str]) -> Optional[str]:
    """Drop parameters and case from a caller-declared content type."""
    if not declared or not isinstance(declared, str):
        return None
    base = declared.split(";", 1)[0].strip().lower()
    if not base:
        return None
    return _DECLARED_ALIASES.get(base, base)


def signature_matches_extension(sniffed: str, extension: str) -> bool:
    expected = content_type_for_extension(extension)
    if sniffed == expected:
        return True
    return sniffed == ZIP_CONTENT_TYPE and extension in ZIP_CONTAINER_EXTENSIONS


def requires_signature(extension: str) -> bool:
    """Binary formats must carry their magic bytes; text formats have none."""
    return (
        content_type_for_extension(extension) in _SNIFFABLE_TYPES
        or extension in ZIP_CONTAINER_EXTENSIONS
    )


# ─── Filename sanitation ──────────────────────────────────────────

def sanitize_display_name(name: str) -> str:
    """Presentation-only cleanup: keep the last path component, mask bad chars.

    This never decides where bytes are stored; the store mints its own keys.
    """
    base = re.split(r"[/\\]", name)[-1]
    base = base.replace("..", "")
    base = FORBIDDEN_NAME_CHARS.sub(NAME_PLACEHOLDER, base)
    base = base.strip()
    if len(base) > MAX_FILENAME_LENGTH:
        stem, ext = os.path.splitext(base)
        base = stem[: MAX_FILENAME_LENGTH - len(ext)] + ext
    return base


def filename_errors(name: str) -> List[str]:
    errors = []
    if ".." in name or "/" in name or "\\" in name:
        errors.append("Filename contains path traversal characters")
    if FORBIDDEN_NAME_CHARS.search(name):
        errors.append("Filename contains dangerous characters")
    if len(name) > MAX_FILENAME_LENGTH:
        errors.append(f"Filename too long (maximum {MAX_FILENAME_LENGTH} characters)")
    return errors


# ─── Results ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class SanitizedFile:
    display_name: str
    extension: str
    content_type: str
    byte_size: int
    checksum: str
    validated_at: datetime


@dataclass
class ValidationResult:
    accepted: bool = False
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    sanitized: Optional[SanitizedFile] = None


class _Rejected(Exception):
    """Internal short-circuit carrying the failing stage's errors."""

    def __init__(self, errors: Iterable[str]):
        super().__init__()
        self.errors = list(errors)


# ─── Validator ────────────────────────────────────────────────────

class ContentValidator:
    """Stateless multi-stage upload validator."""

    def __init__(self, allowed_extensions: Iterable[str], max_file_size: int):
        self.allowed_extensions = frozenset(e.lower() for e in allowed_extensions)
        self.max_file_size = max_file_size

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContentValidator":
        return cls(settings.allowed_extensions, settings.MAX_FILE_SIZE_BYTES)

    def validate(self, data: bytes, declared_name: str, declared_type: Optional[str]) -> ValidationResult:
        result = ValidationResult()
        try:
            self._check_structure(data, declared_name)
            self._check_size(data)
            display_name = self._check_filename(declared_name)
            extension = self._check_extension(display_name)
            content_type = self._reconcile_content_type(data, extension, declared_type, result.warnings)
            self._check_content(data, extension, result.warnings)
            self._security_scan(data)
        except _Rejected as rejected:
            result.errors.extend(rejected.errors)
            return result

        result.accepted = True
        result.sanitized = SanitizedFile(
            display_name=display_name,
            extension=extension,
            content_type=content_type,
            byte_size=len(data),
            checksum=compute_checksum(data),
            validated_at=datetime.now(timezone.utc),
        )
        return result

    # 1
    def _check_structure(self, data, declared_name) -> None:
        errors = []
        if not isinstance(declared_name, str) or not declared_name.strip():
            errors.append("Invalid filename")
        if not isinstance(data, (bytes, bytearray, memoryview)):
            errors.append("Invalid file data")
        elif len(data) == 0:
            errors.append("Invalid file size")
        if errors:
            raise _Rejected(errors)

    # 2
    def _check_size(self, data: bytes) -> None:
        size = len(data)
        if size == 0:
            raise _Rejected(["Empty files are not allowed"])
        if size > self.max_file_size:
            raise _Rejected([
                f"File size ({format_file_size(size)}) exceeds maximum allowed size "
                f"({format_file_size(self.max_file_size)})"
            ])

    # 3
    def _check_filename(self, name: str) -> str:
        errors = filename_errors(name)
        display_name = sanitize_display_name(name)
        if not display_name:
            errors.append("Filename becomes empty after sanitization")
        if errors:
            raise _Rejected(errors)
        return display_name

    # 4
    def _check_extension(self, display_name: str) -> str:
        extension = file_extension(display_name)
        if not extension:
            raise _Rejected(["File must have an extension"])
        if extension not in self.allowed_extensions:
            allowed = ", ".join(sorted(self.allowed_extensions))
            raise _Rejected([f"File extension '{extension}' is not allowed. Allowed extensions: {allowed}"])
        return extension

    # 5
    def _reconcile_content_type(self, data, extension, declared_type, warnings) -> str:
        expected = content_type_for_extension(extension)
        if expected is None:
            raise _Rejected([f"No content type is known for extension '{extension}'"])

        sniffed = sniff_content_type(data)
        declared = normalize_declared_type(declared_type)

        if sniffed is not None and not signature_matches_extension(sniffed, extension):
            raise _Rejected([
                f"File content does not match extension. Detected: {sniffed}, "
                f"expected: {expected}"
            ])
        if sniffed is None and requires_signature(extension):
            raise _Rejected([
                f"File content does not match extension. Expected a {expected} signature"
            ])

        if declared is not None and declared != expected:
            warnings.append(f"MIME type inconsistency detected: {expected}, {declared}")
        return expected

    # 6
    def _check_content(self, data: bytes, extension: str, warnings: List[str]) -> None:
        content_type = content_type_for_extension(extension)
        errors = []
        if content_type == "application/pdf" and not bytes(data[:4]) == b"%PDF":
            errors.append("Invalid PDF file structure")
        elif content_type in ("text/plain", "text/csv"):
            if b"\x00" in data:
                errors.append("Text file contains null bytes, may be binary")
            else:
                try:
                    bytes(data).decode("utf-8")
                except UnicodeDecodeError:
                    warnings.append("Text file is not valid UTF-8")
        if errors:
            raise _Rejected(errors)

    # 7
    def _security_scan(self, data: bytes) -> None:
        errors = []
        if is_executable_content(data):
            errors.append("File appears to be an executable, which is not allowed")

        text = bytes(data[:SCRIPT_SCAN_BYTES]).decode("utf-8", errors="ignore")
        if any(p.search(text) for p in SCRIPT_PATTERNS):
            errors.append("File contains suspicious content patterns")
        if errors:
            raise _Rejected(errors)


def is_executable_content(data: bytes) -> bool:
    """True when data starts with a known executable or bytecode signature."""
    head = bytes(data[:8])
    return any(head.startswith(magic) for magic, _ in EXECUTABLE_SIGNATURES)
