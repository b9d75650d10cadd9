"""Tests for the fixed-window and failed-auth limiters."""

import pytest

from storesync.core.errors import RateLimited
from storesync.security.ratelimit import (
    AuthRateLimiter,
    RateLimiter,
    build_rate_limiters,
    purge_rate_limiters,
)


class FakeClock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestRateLimiter:
    def test_allows_up_to_limit_then_rejects(self, clock):
        limiter = RateLimiter(3, 60, clock=clock)
        remaining = [limiter.hit("rate:1.2.3.4").remaining for _ in range(3)]
        assert remaining == [2, 1, 0]

        with pytest.raises(RateLimited) as exc:
            limiter.hit("rate:1.2.3.4")
        assert exc.value.retry_after == 60
        assert exc.value.status_code == 429
        assert exc.value.headers == {
            "X-RateLimit-Limit": "3",
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": "1060",
        }

    def test_retry_after_counts_down(self, clock):
        limiter = RateLimiter(1, 60, clock=clock)
        limiter.hit("k")
        clock.advance(45.5)
        with pytest.raises(RateLimited) as exc:
            limiter.hit("k")
        assert exc.value.retry_after == 15

    def test_window_resets_after_expiry(self, clock):
        limiter = RateLimiter(2, 60, clock=clock)
        limiter.hit("k")
        limiter.hit("k")
        clock.advance(60.1)
        info = limiter.hit("k")
        assert info.remaining == 1
        assert limiter.get("k").count == 1

    def test_rejected_hits_do_not_extend_window(self, clock):
        limiter = RateLimiter(1, 60, clock=clock)
        limiter.hit("k")
        for _ in range(5):
            clock.advance(10)
            with pytest.raises(RateLimited):
                limiter.hit("k")
        clock.advance(11)
        limiter.hit("k")

    def test_keys_are_independent(self, clock):
        limiter = RateLimiter(1, 60, clock=clock)
        limiter.hit("a")
        limiter.hit("b")
        with pytest.raises(RateLimited):
            limiter.hit("a")

    def test_purge_expired(self, clock):
        limiter = RateLimiter(5, 60, clock=clock)
        limiter.hit("old")
        clock.advance(30)
        limiter.hit("new")
        clock.advance(31)
        assert limiter.purge_expired() == 1
        assert limiter.get("old") is None
        assert limiter.get("new") is not None

    def test_rejects_bad_configuration(self):
        with pytest.raises(ValueError):
            RateLimiter(0, 60)


class TestAuthRateLimiter:
    def test_blocks_after_max_failures(self, clock):
        limiter = AuthRateLimiter(3, 900, 1800, clock=clock)
        for _ in range(2):
            limiter.record_failure("auth:ip")
            limiter.check("auth:ip")

        entry = limiter.record_failure("auth:ip")
        assert entry.blocked_until == clock.now + 1800

        with pytest.raises(RateLimited) as exc:
            limiter.check("auth:ip")
        assert exc.value.code == "TOO_MANY_AUTH_ATTEMPTS"
        assert exc.value.retry_after == 1800

    def test_block_lasts_block_seconds(self, clock):
        limiter = AuthRateLimiter(2, 60, 600, clock=clock)
        limiter.record_failure("k")
        limiter.record_failure("k")

        clock.advance(599)
        with pytest.raises(RateLimited):
            limiter.check("k")
        clock.advance(2)
        limiter.check("k")

    def test_success_clears_failures(self, clock):
        limiter = AuthRateLimiter(2, 60, clock=clock)
        limiter.record_failure("k")
        limiter.record_success("k")
        limiter.record_failure("k")
        limiter.check("k")
        assert limiter.get("k").count == 1

    def test_failures_outside_window_start_over(self, clock):
        limiter = AuthRateLimiter(2, 60, clock=clock)
        limiter.record_failure("k")
        clock.advance(61)
        limiter.record_failure("k")
        limiter.check("k")

    def test_default_block_is_twice_window(self, clock):
        limiter = AuthRateLimiter(1, 300, clock=clock)
        assert limiter.record_failure("k").blocked_until == clock.now + 600

    def test_purge_expired(self, clock):
        limiter = AuthRateLimiter(1, 60, 120, clock=clock)
        limiter.record_failure("blocked")
        clock.advance(121)
        assert limiter.purge_expired() == 1


class TestRegistry:
    def test_builds_named_limiters(self, cfg, clock):
        limiters = build_rate_limiters(cfg, clock)
        assert set(limiters) == {"general", "oauth", "admin", "strict", "auth"}
        assert limiters["oauth"].limit == cfg.OAUTH_RATE_LIMIT_PER_MINUTE
        assert limiters["auth"].max_attempts == cfg.AUTH_MAX_ATTEMPTS

    def test_purge_sweeps_all(self, cfg, clock):
        limiters = build_rate_limiters(cfg, clock)
        limiters["general"].hit("rate:a")
        limiters["admin"].hit("admin:ip:a")
        limiters["auth"].record_failure("auth:a")
        clock.advance(cfg.AUTH_WINDOW_SECONDS + 1)
        assert purge_rate_limiters(limiters) == 3
