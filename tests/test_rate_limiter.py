"""Tests for the per-user upload quota."""
from docvault.config import Settings
from docvault.services.rate_limiter import UploadRateLimiter


class TestUploadRateLimiter:
    def test_check_does_not_consume(self, clock):
        limiter = UploadRateLimiter(max_uploads=1, window_seconds=60, clock=clock)

        for _ in range(5):
            assert limiter.check("alice").allowed

    def test_blocks_after_max_uploads(self, clock):
        limiter = UploadRateLimiter(max_uploads=3, window_seconds=60, clock=clock)
        for _ in range(3):
            assert limiter.check("alice").allowed
            limiter.consume("alice")

        decision = limiter.check("alice")

        assert not decision.allowed
        assert decision.remaining == 0
        assert decision.retry_after == 60

    def test_retry_after_counts_down(self, clock):
        limiter = UploadRateLimiter(max_uploads=1, window_seconds=60, clock=clock)
        limiter.consume("alice")

        clock.advance(45.5)

        assert limiter.check("alice").retry_after == 15

    def test_window_elapses(self, clock):
        limiter = UploadRateLimiter(max_uploads=2, window_seconds=60, clock=clock)
        limiter.consume("alice")
        limiter.consume("alice")
        assert not limiter.check("alice").allowed

        clock.advance(60)

        decision = limiter.check("alice")
        assert decision.allowed
        assert decision.remaining == 2

    def test_window_slides_per_upload(self, clock):
        """Each upload expires on its own, not with a shared reset."""
        limiter = UploadRateLimiter(max_uploads=2, window_seconds=60, clock=clock)
        limiter.consume("alice")
        clock.advance(30)
        limiter.consume("alice")
        assert not limiter.check("alice").allowed

        clock.advance(30)

        decision = limiter.check("alice")
        assert decision.allowed
        assert decision.remaining == 1
        limiter.consume("alice")
        assert limiter.check("alice").retry_after == 30

    def test_users_are_independent(self, clock):
        limiter = UploadRateLimiter(max_uploads=1, window_seconds=60, clock=clock)
        limiter.consume("alice")

        assert not limiter.check("alice").allowed
        assert limiter.check("bob").allowed

    def test_reset(self, clock):
        limiter = UploadRateLimiter(max_uploads=1, window_seconds=60, clock=clock)
        limiter.consume("alice")
        limiter.consume("bob")

        limiter.reset("alice")
        assert limiter.check("alice").allowed
        assert not limiter.check("bob").allowed

        limiter.reset()
        assert limiter.check("bob").allowed

    def test_reservations_count_against_the_limit(self, clock):
        limiter = UploadRateLimiter(max_uploads=2, window_seconds=60, clock=clock)

        assert limiter.reserve("alice").remaining == 1
        assert limiter.reserve("alice").remaining == 0

        blocked = limiter.reserve("alice")
        assert not blocked.allowed
        assert blocked.retry_after == 1

    def test_release_gives_the_slot_back(self, clock):
        limiter = UploadRateLimiter(max_uploads=1, window_seconds=60, clock=clock)
        limiter.reserve("alice")

        limiter.release("alice")

        assert limiter.check("alice").remaining == 1
        assert limiter._pending == {}

    def test_commit_consumes_the_slot(self, clock):
        limiter = UploadRateLimiter(max_uploads=1, window_seconds=60, clock=clock)
        limiter.reserve("alice")

        limiter.commit("alice")

        decision = limiter.check("alice")
        assert not decision.allowed
        assert decision.retry_after == 60
        assert limiter._pending == {}

    def test_idle_users_are_forgotten(self, clock):
        """Checking an unknown user stores nothing, and expired users are dropped."""
        limiter = UploadRateLimiter(max_uploads=1, window_seconds=60, clock=clock)

        limiter.check("newcomer")
        assert limiter._uploads == {}

        limiter.consume("alice")
        clock.advance(60)
        assert limiter.check("alice").allowed
        assert limiter._uploads == {}


def test_from_settings():
    settings = Settings(RATE_LIMIT_MAX_UPLOADS=4, RATE_LIMIT_WINDOW_SECONDS=30)
    limiter = UploadRateLimiter.from_settings(settings)

    assert limiter.max_uploads == 4
    assert limiter.window_seconds == 30


def test_default_clock_is_monotonic():
    limiter = UploadRateLimiter(max_uploads=1, window_seconds=900)
    limiter.consume("alice")

    decision = limiter.check("alice")
    assert not decision.allowed
    assert 1 <= decision.retry_after <= 900
