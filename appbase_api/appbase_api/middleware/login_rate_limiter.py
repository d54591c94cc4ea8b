"""Password-login brute-force protection.

Tracks failed attempts per ``(app_id, email, client_ip)`` and enforces an
exponential lockout after repeated failures.  State is in-memory and
therefore per-replica.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Lockout durations in seconds once the attempt budget is spent.
_BACKOFF_SCHEDULE = [30, 60, 120, 240, 900]
_MAX_ATTEMPTS_BEFORE_LOCKOUT = 5

_Key = tuple[str, str, str]


@dataclass
class _AttemptRecord:
    failed_count: int = 0
    last_failed_at: float = 0.0
    locked_until: float = 0.0


class LoginRateLimiter:
    """In-memory login rate limiter.

    After ``_MAX_ATTEMPTS_BEFORE_LOCKOUT`` consecutive failures each further
    failure locks the key for the next step of ``_BACKOFF_SCHEDULE``.
    A successful login clears the key.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._attempts: dict[_Key, _AttemptRecord] = defaultdict(_AttemptRecord)

    @staticmethod
    def _key(app_id: str, email: str, client_ip: str) -> _Key:
        return (app_id, email.lower().strip(), client_ip)

    def check_rate_limit(self, app_id: str, email: str, client_ip: str) -> tuple[bool, int]:
        """Return ``(allowed, retry_after_seconds)`` for a login attempt."""
        key = self._key(app_id, email, client_ip)
        record = self._attempts.get(key)
        if record is None:
            return True, 0

        now = self._clock()
        if record.locked_until > now:
            return False, int(record.locked_until - now) + 1
        return True, 0

    def record_failure(self, app_id: str, email: str, client_ip: str) -> None:
        """Record a failed login attempt.  May trigger a lockout."""
        record = self._attempts[self._key(app_id, email, client_ip)]
        record.failed_count += 1
        record.last_failed_at = self._clock()

        if record.failed_count >= _MAX_ATTEMPTS_BEFORE_LOCKOUT:
            excess = record.failed_count - _MAX_ATTEMPTS_BEFORE_LOCKOUT
            backoff = _BACKOFF_SCHEDULE[min(excess, len(_BACKOFF_SCHEDULE) - 1)]
            record.locked_until = record.last_failed_at + backoff
            logger.warning(
                "Login rate limit: app=%s ip=%s locked for %ds after %d failures",
                app_id,
                client_ip,
                backoff,
                record.failed_count,
            )

    def record_success(self, app_id: str, email: str, client_ip: str) -> None:
        """Reset the failure counter on successful login."""
        self._attempts.pop(self._key(app_id, email, client_ip), None)

    def cleanup_stale(self, max_age_seconds: float = 3600) -> int:
        """Drop unlocked records older than *max_age_seconds*.  Returns the count."""
        now = self._clock()
        stale = [
            key
            for key, record in self._attempts.items()
            if (now - record.last_failed_at) > max_age_seconds and record.locked_until < now
        ]
        for key in stale:
            del self._attempts[key]
        return len(stale)
