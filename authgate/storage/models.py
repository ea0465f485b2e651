from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SecurityRecord:
    """Per-account security state owned by the record store.

    ``credential_hash`` belongs to the credential collaborator; everything else
    is mutated only by credential rotation and lockout bookkeeping. ``version``
    is bumped by every store write and keys conditional updates.
    """

    id: str
    identity: str
    name: str = ""
    credential_hash: str = ""
    password_updated_at: Optional[datetime] = None
    must_change_password: bool = False
    password_history: List[str] = field(default_factory=list)
    login_failed_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    last_failed_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @classmethod
    def new(
        cls,
        identity: str,
        credential_hash: str,
        *,
        name: str = "",
        must_change_password: bool = False,
        password_updated_at: Optional[datetime] = None,
    ) -> "SecurityRecord":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            identity=identity,
            name=name,
            credential_hash=credential_hash,
            password_updated_at=password_updated_at or now,
            must_change_password=must_change_password,
            created_at=now,
        )

    def public_item(self) -> dict:
        """Fields safe to return to an authenticated caller."""
        return {
            "id": self.id,
            "email": self.identity,
            "name": self.name,
            "passwordUpdatedAt": (
                self.password_updated_at.isoformat() if self.password_updated_at else None
            ),
            "mustChangePassword": self.must_change_password,
        }


@dataclass
class ResetToken:
    identity: str
    token_digest: str
    issued_at: datetime
    expires_at: datetime
    redeemed_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
