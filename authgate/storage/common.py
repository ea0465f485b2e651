"""Common storage utilities shared between memory and redis implementations.

Both backends expose the same async ``RecordStore`` surface so the gateway,
credential and reset services never know which one they talk to.
"""

from __future__ import annotations

from dataclasses import asdict, replace
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Protocol

from authgate.storage.models import ResetToken, SecurityRecord

# Fields a caller may change through update_one; id, identity and
# created_at are fixed at creation and version is managed by the store.
UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "credential_hash",
        "password_updated_at",
        "must_change_password",
        "password_history",
        "login_failed_attempts",
        "account_locked_until",
        "last_failed_login_at",
    }
)

_DATETIME_FIELDS = (
    "password_updated_at",
    "account_locked_until",
    "last_failed_login_at",
    "created_at",
)


class RecordStore(Protocol):
    async def create_record(self, record: SecurityRecord) -> SecurityRecord: ...

    async def find_one(
        self,
        *,
        record_id: Optional[str] = None,
        identity: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Optional[SecurityRecord]: ...

    async def update_one(
        self,
        record_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[SecurityRecord]: ...

    async def record_failure(
        self,
        record_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lock_until: datetime,
    ) -> Optional[SecurityRecord]: ...

    async def save_reset_token(self, token: ResetToken, ttl_seconds: int) -> None: ...

    async def get_reset_token(self, identity: str) -> Optional[ResetToken]: ...

    async def mark_reset_token_redeemed(
        self, identity: str, token_digest: str, redeemed_at: datetime
    ) -> bool: ...

    async def close(self) -> None: ...


def normalize_identity(identity: str) -> str:
    return identity.strip().lower()


def check_changes(changes: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"fields not updatable: {sorted(unknown)}")
    data = dict(changes)
    if "password_history" in data:
        data["password_history"] = list(data["password_history"] or [])
    return data


def apply_changes(record: SecurityRecord, changes: Mapping[str, Any]) -> SecurityRecord:
    """Return a copy of ``record`` with ``changes`` applied and the version bumped."""
    return replace(record, **check_changes(changes), version=record.version + 1)


def record_to_dict(record: SecurityRecord) -> Dict[str, Any]:
    data = asdict(record)
    for key in _DATETIME_FIELDS:
        value = data.get(key)
        data[key] = value.isoformat() if value else None
    return data


def record_from_dict(data: Mapping[str, Any]) -> SecurityRecord:
    payload = dict(data)
    for key in _DATETIME_FIELDS:
        raw = payload.get(key)
        payload[key] = datetime.fromisoformat(raw) if raw else None
    if payload.get("created_at") is None:
        payload.pop("created_at", None)
    payload["password_history"] = list(payload.get("password_history") or [])
    payload["login_failed_attempts"] = int(payload.get("login_failed_attempts") or 0)
    payload["version"] = int(payload.get("version") or 0)
    payload["must_change_password"] = bool(payload.get("must_change_password"))
    return SecurityRecord(**payload)


def reset_token_to_dict(token: ResetToken) -> Dict[str, Any]:
    return {
        "identity": token.identity,
        "token_digest": token.token_digest,
        "issued_at": token.issued_at.isoformat(),
        "expires_at": token.expires_at.isoformat(),
        "redeemed_at": token.redeemed_at.isoformat() if token.redeemed_at else None,
    }


def reset_token_from_dict(data: Mapping[str, Any]) -> ResetToken:
    redeemed = data.get("redeemed_at")
    return ResetToken(
        identity=data["identity"],
        token_digest=data["token_digest"],
        issued_at=datetime.fromisoformat(data["issued_at"]),
        expires_at=datetime.fromisoformat(data["expires_at"]),
        redeemed_at=datetime.fromisoformat(redeemed) if redeemed else None,
    )
