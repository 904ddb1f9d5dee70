"""Content scanner interface.

No antivirus engine is wired in yet. ``PassthroughScanner`` reports every
file clean so uploads stay usable; swap in a real implementation of
``ContentScanner`` to get quarantine behaviour for infected files.
"""
from abc import ABC, abstractmethod

from docvault.services.records import ScanStatus


class ContentScanner(ABC):
    """Scans uploaded bytes before the record becomes visible."""

    name = "base"

    @abstractmethod
    async def scan(self, data: bytes) -> ScanStatus:
        """Return the verdict for ``data``. Raising counts as a scan error."""


class PassthroughScanner(ContentScanner):
    # TODO: replace with a clamd-backed scanner; until then nothing is actually scanned
    name = "passthrough"

    async def scan(self, data: bytes) -> ScanStatus:
        return ScanStatus.CLEAN
