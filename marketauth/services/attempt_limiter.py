"""
Attempt limiting for 2FA code checks.

Prevents brute-forcing of 6-digit codes using exponential backoff.
Attempts are counted per (user, purpose) key. Each attempt is reserved
before the code is compared, so parallel requests cannot all slip in
ahead of the first recorded failure. Once ``max_attempts`` attempts are
outstanding, further attempts are refused until the backoff window has
elapsed. Each additional attempt doubles the window, capped at
``max_delay``. A successful check clears the key.

Counts live in process memory. When several API instances run behind a
load balancer (``sms_challenge_backend = "redis"``), each instance keeps
its own counts, so the effective limit is ``max_attempts`` per instance.
"""

import logging
import time
from collections.abc import Callable
from threading import Lock

from marketauth.config import settings
from marketauth.exceptions import TooManyAttemptsError

logger = logging.getLogger(__name__)


class AttemptLimiter:
    """In-memory attempt counter with exponential backoff."""

    def __init__(
        self,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_attempts = settings.two_factor_max_attempts if max_attempts is None else max_attempts
        self.base_delay = settings.two_factor_lockout_base_seconds if base_delay is None else base_delay
        self.max_delay = settings.two_factor_lockout_max_seconds if max_delay is None else max_delay
        self.clock = clock
        self._attempts: dict[str, dict] = {}
        self._lock = Lock()

    @property
    def enabled(self) -> bool:
        return self.max_attempts > 0

    @staticmethod
    def key(user_id: int, purpose: str) -> str:
        return f"{user_id}:{purpose}"

    def _required_delay(self, count: int) -> float:
        return min(self.base_delay * (2 ** (count - self.max_attempts)), self.max_delay)

    def _wait(self, entry: dict | None) -> float:
        # caller holds self._lock
        if entry is None or entry["count"] < self.max_attempts:
            return 0.0
        elapsed = self.clock() - entry["last_time"]
        return max(0.0, self._required_delay(entry["count"]) - elapsed)

    def retry_after(self, key: str) -> float:
        """Seconds to wait before the next attempt is allowed (0 if allowed now)."""
        if not self.enabled:
            return 0.0
        with self._lock:
            return self._wait(self._attempts.get(key))

    def check_and_reserve(self, key: str) -> None:
        """
        Count an attempt for ``key`` before the code is checked.

        Raises:
            TooManyAttemptsError: ``key`` is locked out; nothing is counted
        """
        if not self.enabled:
            return
        with self._lock:
            entry = self._attempts.setdefault(key, {"count": 0, "last_time": 0.0})
            wait = self._wait(entry)
            if wait == 0:
                entry["count"] += 1
                entry["last_time"] = self.clock()
                count = entry["count"]
        if wait > 0:
            logger.warning(f"2FA attempt refused for {key}, locked out for {wait:.1f}s")
            raise TooManyAttemptsError(retry_after=wait)
        if count == self.max_attempts:
            logger.warning(f"2FA lockout engaged for {key} after {count} attempts")

    def release(self, key: str) -> None:
        """Give back a reserved attempt whose outcome was neither success nor a wrong code."""
        with self._lock:
            entry = self._attempts.get(key)
            if entry is None:
                return
            entry["count"] -= 1
            if entry["count"] <= 0:
                del self._attempts[key]

    def record_success(self, key: str) -> None:
        self.reset(key)

    def reset(self, key: str | None = None) -> None:
        """Forget attempts for ``key``, or for every key when omitted."""
        with self._lock:
            if key is None:
                self._attempts.clear()
            else:
                self._attempts.pop(key, None)


# Global instance
_limiter: AttemptLimiter | None = None


def get_attempt_limiter() -> AttemptLimiter:
    global _limiter
    if _limiter is None:
        _limiter = AttemptLimiter()
    return _limiter
