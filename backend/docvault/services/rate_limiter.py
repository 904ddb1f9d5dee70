"""Per-user upload admission quota.

Sliding window per user: the timestamps of the uploads that were consumed in
the last ``window_seconds``, plus a count of uploads still in flight.
Expired timestamps are dropped lazily on the next call, so there is no
background sweeping, and a user with nothing counted is forgotten entirely.

The coordinator takes a slot with ``reserve`` before doing any work, gives it
back with ``release`` when the upload fails, and turns it into a consumed
upload with ``commit`` only after the record has been persisted. In-flight
reservations count against the limit, so concurrent uploads cannot all slip
past the check. ``check`` never takes or consumes anything.
"""
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from docvault.config import Settings


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0


class UploadRateLimiter:
    def __init__(self, max_uploads: int, window_seconds: float, clock: Optional[Callable[[], float]] = None):
        self.max_uploads = max_uploads
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._uploads: Dict[str, Deque[float]] = {}
        self._pending: Dict[str, int] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "UploadRateLimiter":
        return cls(settings.RATE_LIMIT_MAX_UPLOADS, settings.RATE_LIMIT_WINDOW_SECONDS)

    def _recent(self, user_id: str, now: float) -> Deque[float]:
        stamps = self._uploads.get(user_id)
        if stamps is None:
            return deque()
        cutoff = now - self.window_seconds
        while stamps and stamps[0] <= cutoff:
            stamps.popleft()
        if not stamps:
            del self._uploads[user_id]
        return stamps

    def _decide(self, user_id: str, now: float) -> RateLimitDecision:
        stamps = self._recent(user_id, now)
        used = len(stamps) + self._pending.get(user_id, 0)
        if used >= self.max_uploads:
            if stamps:
                # The oldest upload in the window is the next to expire
                wait = max(1, math.ceil(stamps[0] + self.window_seconds - now))
            else:
                # Only in-flight uploads hold the quota; they finish or give it back shortly
                wait = 1
            return RateLimitDecision(allowed=False, remaining=0, retry_after=wait)
        return RateLimitDecision(allowed=True, remaining=self.max_uploads - used)

    def check(self, user_id: str) -> RateLimitDecision:
        return self._decide(user_id, self._clock())

    def reserve(self, user_id: str) -> RateLimitDecision:
        """Check and, when allowed, hold one slot for an upload in flight."""
        decision = self._decide(user_id, self._clock())
        if decision.allowed:
            self._pending[user_id] = self._pending.get(user_id, 0) + 1
            decision = RateLimitDecision(allowed=True, remaining=decision.remaining - 1)
        return decision

    def release(self, user_id: str) -> None:
        """Give back a reserved slot without consuming quota."""
        count = self._pending.get(user_id, 0) - 1
        if count > 0:
            self._pending[user_id] = count
        else:
            self._pending.pop(user_id, None)

    def commit(self, user_id: str) -> None:
        """Turn a reserved slot into a consumed upload."""
        self.release(user_id)
        self.consume(user_id)

    def consume(self, user_id: str) -> None:
        now = self._clock()
        stamps = self._recent(user_id, now)
        stamps.append(now)
        self._uploads[user_id] = stamps

    def reset(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self._uploads.clear()
            self._pending.clear()
        else:
            self._uploads.pop(user_id, None)
            self._pending.pop(user_id, None)
