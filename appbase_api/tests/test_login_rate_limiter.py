"""Tests for appbase_api/middleware/login_rate_limiter.py"""

from __future__ import annotations

import pytest

from appbase_api.middleware.login_rate_limiter import LoginRateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def limiter(clock: FakeClock) -> LoginRateLimiter:
    return LoginRateLimiter(clock=clock)


def _fail(limiter: LoginRateLimiter, times: int, app_id: str = "app-a", email: str = "a@b.c", ip: str = "1.2.3.4") -> None:
    for _ in range(times):
        limiter.record_failure(app_id, email, ip)


class TestLoginRateLimiter:
    def test_allows_unknown_key(self, limiter: LoginRateLimiter) -> None:
        assert limiter.check_rate_limit("app-a", "a@b.c", "1.2.3.4") == (True, 0)

    def test_allows_below_threshold(self, limiter: LoginRateLimiter) -> None:
        _fail(limiter, 4)
        assert limiter.check_rate_limit("app-a", "a@b.c", "1.2.3.4")[0] is True

    def test_locks_after_threshold(self, limiter: LoginRateLimiter) -> None:
        _fail(limiter, 5)
        allowed, retry_after = limiter.check_rate_limit("app-a", "a@b.c", "1.2.3.4")
        assert allowed is False
        assert retry_after == 31

    def test_lock_expires(self, limiter: LoginRateLimiter, clock: FakeClock) -> None:
        _fail(limiter, 5)
        clock.now += 31
        assert limiter.check_rate_limit("app-a", "a@b.c", "1.2.3.4")[0] is True

    def test_backoff_grows(self, limiter: LoginRateLimiter) -> None:
        _fail(limiter, 6)
        _, retry_after = limiter.check_rate_limit("app-a", "a@b.c", "1.2.3.4")
        assert retry_after == 61

    def test_backoff_caps(self, limiter: LoginRateLimiter) -> None:
        _fail(limiter, 50)
        _, retry_after = limiter.check_rate_limit("app-a", "a@b.c", "1.2.3.4")
        assert retry_after == 901

    def test_email_is_normalised(self, limiter: LoginRateLimiter) -> None:
        _fail(limiter, 5, email=" A@B.C ")
        assert limiter.check_rate_limit("app-a", "a@b.c", "1.2.3.4")[0] is False

    def test_keys_are_per_app_and_ip(self, limiter: LoginRateLimiter) -> None:
        _fail(limiter, 5)
        assert limiter.check_rate_limit("app-b", "a@b.c", "1.2.3.4")[0] is True
        assert limiter.check_rate_limit("app-a", "a@b.c", "5.6.7.8")[0] is True

    def test_success_resets(self, limiter: LoginRateLimiter) -> None:
        _fail(limiter, 4)
        limiter.record_success("app-a", "a@b.c", "1.2.3.4")
        _fail(limiter, 1)
        assert limiter.check_rate_limit("app-a", "a@b.c", "1.2.3.4")[0] is True

    def test_cleanup_stale(self, limiter: LoginRateLimiter, clock: FakeClock) -> None:
        _fail(limiter, 2)
        _fail(limiter, 50, email="locked@b.c")
        clock.now += 100
        assert limiter.cleanup_stale(max_age_seconds=50) == 1
        assert limiter.check_rate_limit("app-a", "locked@b.c", "1.2.3.4")[0] is False
