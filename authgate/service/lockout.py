"""Account lockout state machine.

Two states: unlocked (``account_locked_until`` unset or in the past) and
locked (``account_locked_until`` in the future). Transitions are pure
functions of ``(record, now)`` returning a new record; nothing is cached
between requests.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict

from authgate.storage.models import SecurityRecord

LOCKOUT_MAX_ATTEMPTS = 5
LOCKOUT_DURATION = timedelta(minutes=15)

GENERIC_FAILURE_MESSAGE = "Incorrect email or password."


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = LOCKOUT_MAX_ATTEMPTS
    lock_duration: timedelta = LOCKOUT_DURATION

    def lock_expiry(self, now: datetime) -> datetime:
        return now + self.lock_duration

    def on_failure(self, record: SecurityRecord, now: datetime) -> SecurityRecord:
        attempts = record.login_failed_attempts + 1
        locked_until = record.account_locked_until
        if attempts >= self.max_attempts:
            locked_until = self.lock_expiry(now)
        return replace(
            record,
            login_failed_attempts=attempts,
            last_failed_login_at=now,
            account_locked_until=locked_until,
        )

    def on_success(self, record: SecurityRecord) -> SecurityRecord:
        return replace(
            record,
            login_failed_attempts=0,
            account_locked_until=None,
            last_failed_login_at=None,
        )

    def is_locked(self, record: SecurityRecord, now: datetime) -> bool:
        return record.account_locked_until is not None and now < record.account_locked_until

    def should_reset_on_expiry(self, record: SecurityRecord, now: datetime) -> bool:
        return record.account_locked_until is not None and now >= record.account_locked_until

    def remaining_lock_seconds(self, record: SecurityRecord, now: datetime) -> int:
        if not self.is_locked(record, now):
            return 0
        return max(1, math.ceil((record.account_locked_until - now).total_seconds()))

    def failure_message(self, record: SecurityRecord, now: datetime) -> str:
        if self.is_locked(record, now):
            minutes = max(1, math.ceil(self.remaining_lock_seconds(record, now) / 60))
            return (
                "Too many failed login attempts. "
                f"Try again in {minutes} minute{'s' if minutes != 1 else ''}."
            )
        return GENERIC_FAILURE_MESSAGE


def lockout_changes(record: SecurityRecord) -> Dict[str, Any]:
    """The persisted lockout fields of ``record``, ready for ``update_one``."""
    return {
        "login_failed_attempts": record.login_failed_attempts,
        "account_locked_until": record.account_locked_until,
        "last_failed_login_at": record.last_failed_login_at,
    }


def policy_from_settings(settings) -> LockoutPolicy:
    return LockoutPolicy(
        max_attempts=settings.lockout_max_attempts,
        lock_duration=timedelta(minutes=settings.lockout_duration_minutes),
    )
