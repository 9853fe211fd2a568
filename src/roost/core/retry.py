"""Retry policy for SQLite busy/locked contention.

Hook processes and the interactive client write the same database file, so
transactions occasionally hit SQLITE_BUSY even with a connection-level busy
timeout. The policy here is a pure function of (error, attempt): it holds no
state, which keeps it testable without a database.
"""

import sqlite3
from dataclasses import dataclass

_BUSY_CODES = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
    "database is busy",
)


def is_busy_error(exc: BaseException) -> bool:
    """Check whether an exception is transient SQLite contention."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    code = getattr(exc, "sqlite_errorcode", None)
    # Extended codes (e.g. SQLITE_BUSY_SNAPSHOT) keep the primary code in the low byte.
    if isinstance(code, int) and (code & 0xFF) in _BUSY_CODES:
        return True
    message = str(exc).lower()
    return any(fragment in message for fragment in _BUSY_SUBSTRINGS)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of consulting a retry policy.

    ``delay`` is the number of seconds to sleep before the next attempt, or
    None to give up and surface the error.
    """

    delay: float | None

    @property
    def retry(self) -> bool:
        return self.delay is not None


GIVE_UP = RetryDecision(delay=None)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with linearly increasing backoff.

    Attempts are numbered from 1. With the defaults an operation is tried at
    most 3 times, sleeping 50ms after the first failure and 100ms after the
    second.
    """

    max_attempts: int = 3
    backoff_seconds: float = 0.05

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")

    def __call__(self, exc: BaseException, attempt: int) -> RetryDecision:
        if not is_busy_error(exc):
            return GIVE_UP
        if attempt >= self.max_attempts:
            return GIVE_UP
        return RetryDecision(delay=self.backoff_seconds * attempt)
