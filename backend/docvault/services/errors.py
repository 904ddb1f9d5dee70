"""Error taxonomy shared by the validator, the store and the coordinator.

Every error carries a stable ``code`` and a ``message`` that is safe to show
to the caller. Underlying OS errors are kept on ``__cause__`` for logging and
never rendered into ``message``.
"""
from typing import List, Optional


class UploadError(Exception):
    """Base class for everything the upload core raises."""
    code = "UPLOAD_ERROR"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailedError(UploadError):
    """One or more content checks rejected the file."""
    code = "VALIDATION_ERROR"

    def __init__(self, errors: List[str], warnings: Optional[List[str]] = None):
        super().__init__("File validation failed")
        self.errors = list(errors)
        self.warnings = list(warnings or [])


class QuotaExceededError(UploadError):
    """Per-user upload quota used up for the current window."""
    code = "QUOTA_EXCEEDED"
    retryable = True

    def __init__(self, retry_after: int):
        super().__init__("Upload rate limit exceeded")
        self.retry_after = retry_after


class StorageError(UploadError):
    """Filesystem failure while storing, reading or removing bytes."""
    code = "STORAGE_ERROR"
    retryable = True

    def __init__(self, message: str = "File storage failed", reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class IntegrityError(StorageError):
    """Bytes on disk differ from what was written or recorded. Never retry."""
    code = "INTEGRITY_ERROR"
    retryable = False


class InvalidStorageKeyError(StorageError):
    """A storage key failed the path-safety checks."""
    code = "INVALID_STORAGE_KEY"
    retryable = False

    def __init__(self):
        super().__init__("Invalid storage key")


class StorageAccessDeniedError(StorageError):
    """The stored file looks executable and is refused."""
    code = "ACCESS_DENIED"
    retryable = False

    def __init__(self):
        super().__init__("File appears to be executable, access denied")


class NotFoundError(UploadError):
    code = "NOT_FOUND"

    def __init__(self, message: str = "File not found"):
        super().__init__(message)


class ForbiddenError(UploadError):
    code = "FORBIDDEN"

    def __init__(self, message: str = "File not found"):
        super().__init__(message)


class NotAccessibleError(UploadError):
    """Record exists but is deleted, quarantined or not scanned clean."""
    code = "NOT_ACCESSIBLE"

    def __init__(self, message: str = "File is not accessible"):
        super().__init__(message)


class PreviewNotSupportedError(UploadError):
    code = "NOT_IMAGE"

    def __init__(self):
        super().__init__("Preview only available for images")


class InvalidTransitionError(UploadError):
    """Illegal FileRecord status change."""
    code = "INVALID_TRANSITION"


class RepositoryError(UploadError):
    """Metadata snapshot could not be loaded or saved."""
    code = "PERSISTENCE_ERROR"
    retryable = True

    def __init__(self, message: str = "Metadata persistence failed", reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
