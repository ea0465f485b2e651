"""Password strength, rotation age and reuse rules.

Everything here is a pure function of its inputs: no store access, no clock
reads. Callers pass ``now`` and persist whatever ``rotate`` returns.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Protocol

from authgate.logging import get_logger
from authgate.service.errors import PasswordReusedError, WeakPasswordError
from authgate.storage.models import SecurityRecord

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 13
PASSWORD_MAX_AGE_DAYS = 184
PASSWORD_HISTORY_SIZE = 2

_LETTER = re.compile(r"[A-Za-z]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile(r"[^A-Za-z0-9]")


class SecureVerifier(Protocol):
    def verify(self, credential_hash: str, candidate: str) -> bool: ...


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = PASSWORD_MIN_LENGTH
    max_age: timedelta = timedelta(days=PASSWORD_MAX_AGE_DAYS)
    history_size: int = PASSWORD_HISTORY_SIZE

    @property
    def requirements_message(self) -> str:
        return (
            f"Password must be at least {self.min_length} characters and include "
            "a letter, a digit and a special character."
        )

    @property
    def reuse_message(self) -> str:
        return f"Password must differ from the last {self.history_size + 1} passwords."

    def validate_strength(self, password: str) -> str:
        """Return the trimmed password or raise ``WeakPasswordError``."""
        if not isinstance(password, str):
            raise WeakPasswordError(self.requirements_message)
        value = password.strip()
        if (
            len(value) < self.min_length
            or not _LETTER.search(value)
            or not _DIGIT.search(value)
            or not _SPECIAL.search(value)
        ):
            raise WeakPasswordError(self.requirements_message)
        return value

    def is_expired(self, record: Optional[SecurityRecord], now: datetime) -> bool:
        if record is None:
            return True
        if record.must_change_password:
            return True
        if record.password_updated_at is None:
            return True
        return now - record.password_updated_at >= self.max_age

    def is_reused(
        self,
        candidate: str,
        current_hash: Optional[str],
        history: Optional[Iterable[str]],
        verifier: SecureVerifier,
    ) -> bool:
        hashes = [current_hash] if current_hash else []
        hashes.extend(history or [])
        for credential_hash in hashes:
            if not isinstance(credential_hash, str) or not credential_hash:
                continue
            try:
                if verifier.verify(credential_hash, candidate):
                    return True
            except Exception as exc:
                # A corrupt history entry must not block a rotation
                logger.warning(
                    "password_history_compare_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return False

    def assert_not_reused(
        self,
        candidate: str,
        current_hash: Optional[str],
        history: Optional[Iterable[str]],
        verifier: SecureVerifier,
    ) -> None:
        if self.is_reused(candidate, current_hash, history, verifier):
            raise PasswordReusedError(self.reuse_message)

    def rotate(self, current_hash: Optional[str], history: Optional[Iterable[str]]) -> List[str]:
        """Prepend the outgoing hash and keep the newest ``history_size`` entries."""
        entries = list(history or [])
        if current_hash:
            entries.insert(0, current_hash)
        return entries[: self.history_size]


DEFAULT_POLICY = PasswordPolicy()


def policy_from_settings(settings) -> PasswordPolicy:
    return PasswordPolicy(
        min_length=settings.password_min_length,
        max_age=timedelta(days=settings.password_max_age_days),
    )
