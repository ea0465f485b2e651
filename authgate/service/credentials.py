from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authgate.logging import get_logger
from authgate.service.errors import (
    AuthenticationError,
    NotFoundError,
    PasswordMismatchError,
    PersistenceFailedError,
    ValidationError,
)
from authgate.service.lockout import GENERIC_FAILURE_MESSAGE
from authgate.service.password_policy import DEFAULT_POLICY, PasswordPolicy
from authgate.storage.common import RecordStore
from authgate.storage.errors import StaleRecordError
from authgate.storage.models import SecurityRecord, utcnow

logger = get_logger(__name__)

MAX_WRITE_ATTEMPTS = 3


class CredentialHasher:
    """argon2id hashing with a constant-time verify."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, credential_hash: str, candidate: str) -> bool:
        try:
            return self._hasher.verify(credential_hash, candidate)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("credential_hash_invalid")
            return False

    def dummy_verify(self, candidate: str) -> None:
        """Spend one verify's worth of time for an identity that does not exist."""
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash("authgate-dummy-credential")
        self.verify(self._dummy_hash, candidate)


@dataclass
class AuthSuccess:
    item: Dict[str, Any]
    session_token: Optional[str] = None

    @property
    def record_id(self) -> Optional[str]:
        return self.item.get("id")

    @property
    def identity(self) -> Optional[str]:
        return self.item.get("email")


@dataclass
class AuthFailure:
    message: str = GENERIC_FAILURE_MESSAGE


AuthResult = Union[AuthSuccess, AuthFailure]


class CredentialVerifier(Protocol):
    async def verify_credential(self, identity: str, secret: str) -> AuthResult: ...


class SessionIssuer(Protocol):
    def issue(self, record: SecurityRecord, now: Optional[datetime] = None) -> str: ...


class StoreCredentialVerifier:
    """Checks an identity/secret pair against the record store."""

    def __init__(
        self,
        store: RecordStore,
        hasher: CredentialHasher,
        *,
        sessions: Optional[SessionIssuer] = None,
        timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.sessions = sessions
        self.timeout = timeout

    async def verify_credential(self, identity: str, secret: str) -> AuthResult:
        if not identity or not secret:
            return AuthFailure()
        record = await asyncio.wait_for(self.store.find_one(identity=identity), self.timeout)
        if record is None or not record.credential_hash:
            await asyncio.to_thread(self.hasher.dummy_verify, secret)
            return AuthFailure()
        matched = await asyncio.to_thread(self.hasher.verify, record.credential_hash, secret)
        if not matched:
            return AuthFailure()
        token = self.sessions.issue(record) if self.sessions else None
        return AuthSuccess(item=record.public_item(), session_token=token)


class CredentialService:
    """Password rotation for existing records and account creation."""

    def __init__(
        self,
        store: RecordStore,
        hasher: CredentialHasher,
        policy: PasswordPolicy = DEFAULT_POLICY,
        *,
        timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.policy = policy
        self.timeout = timeout

    async def create_account(
        self,
        identity: str,
        password: str,
        *,
        name: str = "",
        must_change_password: bool = False,
    ) -> SecurityRecord:
        value = self.policy.validate_strength(password)
        credential_hash = await asyncio.to_thread(self.hasher.hash, value)
        record = SecurityRecord.new(
            identity.strip(),
            credential_hash,
            name=name,
            must_change_password=must_change_password,
        )
        created = await asyncio.wait_for(self.store.create_record(record), self.timeout)
        logger.info("account_created", record_id=created.id)
        return created

    async def set_password(
        self, record: SecurityRecord, new_password: str, now: Optional[datetime] = None
    ) -> SecurityRecord:
        """Validate, check reuse, rotate history and persist a new password.

        The write is conditional on the record version; on conflict the record
        is re-read and the checks run again against the fresh history.
        """
        now = now or utcnow()
        value = self.policy.validate_strength(new_password)
        current = record
        for _ in range(MAX_WRITE_ATTEMPTS):
            await asyncio.to_thread(
                self.policy.assert_not_reused,
                value,
                current.credential_hash,
                current.password_history,
                self.hasher,
            )
            new_hash = await asyncio.to_thread(self.hasher.hash, value)
            changes = {
                "credential_hash": new_hash,
                "password_history": self.policy.rotate(
                    current.credential_hash, current.password_history
                ),
                "must_change_password": False,
                "password_updated_at": now,
            }
            try:
                updated = await asyncio.wait_for(
                    self.store.update_one(current.id, changes, expected_version=current.version),
                    self.timeout,
                )
            except StaleRecordError:
                logger.info("password_update_conflict", record_id=current.id)
                fresh = await asyncio.wait_for(
                    self.store.find_one(record_id=current.id), self.timeout
                )
                if fresh is None:
                    raise NotFoundError("Account not found.")
                current = fresh
                continue
            if updated is None:
                raise NotFoundError("Account not found.")
            logger.info("password_rotated", record_id=updated.id)
            return updated
        raise PersistenceFailedError(
            "Password could not be updated, please retry.",
            detail={"record_id": record.id},
        )

    async def change_password(
        self,
        record_id: str,
        password: str,
        confirm_password: str,
        now: Optional[datetime] = None,
    ) -> SecurityRecord:
        new_value = (password or "").strip()
        if not new_value:
            raise ValidationError("Please enter a new password.")
        if new_value != (confirm_password or "").strip():
            raise PasswordMismatchError("Passwords do not match.")
        record = await asyncio.wait_for(self.store.find_one(record_id=record_id), self.timeout)
        if record is None:
            raise AuthenticationError("Authentication required.")
        return await self.set_password(record, new_value, now)
