"""Interception pipeline around authentication-shaped operations.

Each request gets an ``AuthAttemptContext``. ``AuthGateway.run`` executes the
pre-phase gates (bot check, lockout check), then the wrapped operation, then
the post-phase bookkeeping (lockout counters, expiry flag, signal headers,
audit entry). Pre-phase denials are raised and the wrapped operation never
runs; post-phase failures are logged and never change the result.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set, TypeVar
from urllib.parse import quote

from authgate.logging import get_logger
from authgate.service.audit import AuditTrail
from authgate.service.credentials import AuthFailure, AuthResult, AuthSuccess
from authgate.service.errors import (
    AccountLockedError,
    BotVerificationFailedError,
    LookupFailedError,
    PersistenceFailedError,
    ServiceError,
)
from authgate.service.lockout import GENERIC_FAILURE_MESSAGE, LockoutPolicy, lockout_changes
from authgate.service.password_policy import PasswordPolicy
from authgate.service.recaptcha import (
    ACTION_FORGOT_PASSWORD,
    ACTION_LOGIN,
    REASON_API_UNAVAILABLE,
    BotMitigationGateway,
)
from authgate.storage.common import RecordStore
from authgate.storage.errors import StaleRecordError
from authgate.storage.models import SecurityRecord, utcnow

logger = get_logger(__name__)

T = TypeVar("T")

HEADER_ACCOUNT_LOCKED = "X-Account-Locked"
HEADER_REQUIRE_PASSWORD_CHANGE = "X-Require-Password-Change"
HEADER_LOGIN_FAILURE_MESSAGE = "X-Login-Failure-Message"
HEADER_RECAPTCHA_FAILED = "X-Recaptcha-Failed"
HEADER_RECAPTCHA_TOKEN = "X-Recaptcha-Token"

SIGNAL_HEADERS = (
    HEADER_ACCOUNT_LOCKED,
    HEADER_REQUIRE_PASSWORD_CHANGE,
    HEADER_LOGIN_FAILURE_MESSAGE,
    HEADER_RECAPTCHA_FAILED,
)

LOGIN_IDENTITY_KEYS = ("identity", "email", "username")

MAX_WRITE_ATTEMPTS = 3


class OperationKind(str, Enum):
    LOGIN = "login"
    REQUEST_RESET = "request_reset"
    VALIDATE_RESET = "validate_reset"
    REDEEM_RESET = "redeem_reset"
    CHANGE_PASSWORD = "change_password"
    OTHER = "other"


# Checked in order against the query text
_OPERATION_FIELDS = (
    ("authenticateUserWithPassword", OperationKind.LOGIN),
    ("sendUserPasswordResetLink", OperationKind.REQUEST_RESET),
    ("redeemUserPasswordResetToken", OperationKind.REDEEM_RESET),
    ("validateUserPasswordResetToken", OperationKind.VALIDATE_RESET),
    ("changeMyPassword", OperationKind.CHANGE_PASSWORD),
)

_BOT_ACTIONS = {
    OperationKind.LOGIN: ACTION_LOGIN,
    OperationKind.REQUEST_RESET: ACTION_FORGOT_PASSWORD,
}


def classify(operation_name: Optional[str], query: Optional[str]) -> OperationKind:
    text = query or ""
    for field_name, kind in _OPERATION_FIELDS:
        if field_name in text:
            return kind
    if operation_name:
        lowered = operation_name.lower()
        for field_name, kind in _OPERATION_FIELDS:
            if field_name.lower() == lowered:
                return kind
    return OperationKind.OTHER


def extract_identity(variables: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not isinstance(variables, Mapping):
        return None
    for key in LOGIN_IDENTITY_KEYS:
        value = variables.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def encode_header_message(message: str) -> str:
    return quote(message, safe="")


@dataclass
class PreDecision:
    allowed: bool
    error: Optional[ServiceError] = None

    @classmethod
    def allow(cls) -> "PreDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, error: ServiceError) -> "PreDecision":
        return cls(allowed=False, error=error)


@dataclass
class AuthAttemptContext:
    """Request-scoped state threaded through both phases."""

    kind: OperationKind
    identity: Optional[str] = None
    client_ip: str = ""
    bot_token: Optional[str] = None
    decision: Optional[PreDecision] = None
    pre_record: Optional[SecurityRecord] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        *,
        operation_name: Optional[str],
        query: Optional[str],
        variables: Optional[Mapping[str, Any]] = None,
        header_token: Optional[str] = None,
        body_token: Optional[str] = None,
        client_ip: str = "",
    ) -> "AuthAttemptContext":
        token = header_token
        if not token:
            token = body_token
        if not token and isinstance(variables, Mapping):
            candidate = variables.get("recaptchaToken")
            token = candidate if isinstance(candidate, str) else None
        return cls(
            kind=classify(operation_name, query),
            identity=extract_identity(variables),
            client_ip=client_ip,
            bot_token=token,
        )


class AuthGateway:
    def __init__(
        self,
        *,
        store: RecordStore,
        lockout: LockoutPolicy,
        password_policy: PasswordPolicy,
        bot: BotMitigationGateway,
        audit: AuditTrail,
        timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.lockout = lockout
        self.password_policy = password_policy
        self.bot = bot
        self.audit = audit
        self.timeout = timeout
        self.clock = clock
        self._background: Set[asyncio.Task] = set()

    async def run(self, ctx: AuthAttemptContext, operation: Callable[[], Awaitable[T]]) -> T:
        ctx.decision = await self.pre_phase(ctx)
        if not ctx.decision.allowed:
            raise ctx.decision.error
        result = await operation()
        if ctx.kind is OperationKind.LOGIN and isinstance(result, (AuthSuccess, AuthFailure)):
            task = asyncio.ensure_future(self.post_phase(ctx, result))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            # A disconnected caller cancels this await, not the bookkeeping
            await asyncio.shield(task)
        return result

    async def pre_phase(self, ctx: AuthAttemptContext) -> PreDecision:
        action = _BOT_ACTIONS.get(ctx.kind)
        if action is not None:
            try:
                verdict = await self.bot.verify(ctx.bot_token, action)
                passed, message, reason = verdict.success, verdict.message, verdict.reason
            except Exception as exc:
                logger.error(
                    "bot_verification_crashed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                passed, message, reason = False, None, REASON_API_UNAVAILABLE
            if not passed:
                ctx.headers[HEADER_RECAPTCHA_FAILED] = "true"
                return PreDecision.deny(
                    BotVerificationFailedError(
                        message or "Human verification failed, please try again.",
                        reason=reason or REASON_API_UNAVAILABLE,
                    )
                )

        if ctx.kind is not OperationKind.LOGIN:
            return PreDecision.allow()

        now = self.clock()
        record = await self._lookup(ctx.identity)
        ctx.pre_record = record
        if record is None:
            return PreDecision.allow()

        if self.lockout.is_locked(record, now):
            message = self.lockout.failure_message(record, now)
            ctx.headers[HEADER_ACCOUNT_LOCKED] = "true"
            ctx.headers[HEADER_LOGIN_FAILURE_MESSAGE] = encode_header_message(message)
            self._record_audit(
                "login_blocked",
                severity="WARNING",
                identity=ctx.identity,
                client_ip=ctx.client_ip,
                record_id=record.id,
                login_failed_attempts=record.login_failed_attempts,
                account_locked_until=record.account_locked_until,
            )
            return PreDecision.deny(AccountLockedError(message))

        if self.lockout.should_reset_on_expiry(record, now):
            try:
                ctx.pre_record = await self._apply(record, self.lockout.on_success)
                logger.info("lockout_expired_reset", record_id=record.id)
            except Exception as exc:
                logger.warning(
                    "lockout_reset_failed",
                    record_id=record.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return PreDecision.allow()

    async def post_phase(self, ctx: AuthAttemptContext, result: AuthResult) -> None:
        now = self.clock()
        success = isinstance(result, AuthSuccess)
        identity = result.identity if success else ctx.identity
        details: Dict[str, Any] = {}
        try:
            record = None
            if success and result.record_id:
                record = await asyncio.wait_for(
                    self.store.find_one(record_id=result.record_id), self.timeout
                )
            if record is None:
                record = await self._lookup(identity)
            if record is not None:
                if success:
                    updated = await self._apply(record, self.lockout.on_success)
                else:
                    updated = await self._record_failure(record, now)
                locked = self.lockout.is_locked(updated, now)
                expired = self.password_policy.is_expired(updated, now)
                if locked:
                    ctx.headers[HEADER_ACCOUNT_LOCKED] = "true"
                if not success:
                    ctx.headers[HEADER_LOGIN_FAILURE_MESSAGE] = encode_header_message(
                        self.lockout.failure_message(updated, now)
                    )
                if success and expired:
                    ctx.headers[HEADER_REQUIRE_PASSWORD_CHANGE] = "true"
                    result.item["requirePasswordChange"] = True
                details = {
                    "record_id": updated.id,
                    "login_failed_attempts": updated.login_failed_attempts,
                    "account_locked": locked,
                    "account_locked_until": updated.account_locked_until,
                    "must_change_password": updated.must_change_password,
                    "password_updated_at": updated.password_updated_at,
                    "requires_password_change": expired,
                }
            elif not success:
                ctx.headers[HEADER_LOGIN_FAILURE_MESSAGE] = encode_header_message(
                    GENERIC_FAILURE_MESSAGE
                )
        except Exception as exc:
            logger.error(
                "login_bookkeeping_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
        if not success:
            details["failure_reason"] = result.message
        self._record_audit(
            "login_attempt",
            severity="INFO" if success else "WARNING",
            status="success" if success else "failure",
            identity=identity,
            client_ip=ctx.client_ip,
            **details,
        )

    async def _lookup(self, identity: Optional[str]) -> Optional[SecurityRecord]:
        """Best-effort record lookup; errors and timeouts count as not found."""
        trimmed = (identity or "").strip()
        if not trimmed:
            return None
        try:
            record = await asyncio.wait_for(self.store.find_one(identity=trimmed), self.timeout)
            if record is None and "@" not in trimmed:
                record = await asyncio.wait_for(self.store.find_one(name=trimmed), self.timeout)
            return record
        except Exception as exc:
            logger.warning(
                "lockout_lookup_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    async def _apply(
        self,
        record: SecurityRecord,
        transition: Callable[[SecurityRecord], SecurityRecord],
    ) -> SecurityRecord:
        """Persist ``transition(record)`` with a version-checked write, retrying on conflict."""
        current = record
        for _ in range(MAX_WRITE_ATTEMPTS):
            changes = lockout_changes(transition(current))
            try:
                stored = await asyncio.wait_for(
                    self.store.update_one(current.id, changes, expected_version=current.version),
                    self.timeout,
                )
            except StaleRecordError:
                fresh = await asyncio.wait_for(
                    self.store.find_one(record_id=current.id), self.timeout
                )
                if fresh is None:
                    raise LookupFailedError("record disappeared", detail={"record_id": current.id})
                current = fresh
                continue
            if stored is None:
                raise LookupFailedError("record disappeared", detail={"record_id": current.id})
            return stored
        raise PersistenceFailedError(
            "lockout update kept conflicting", detail={"record_id": record.id}
        )

    async def _record_failure(self, record: SecurityRecord, now: datetime) -> SecurityRecord:
        """Count one failed login with the store's atomic increment."""
        stored = await asyncio.wait_for(
            self.store.record_failure(
                record.id,
                now=now,
                max_attempts=self.lockout.max_attempts,
                lock_until=self.lockout.lock_expiry(now),
            ),
            self.timeout,
        )
        if stored is None:
            raise LookupFailedError("record disappeared", detail={"record_id": record.id})
        return stored

    def _record_audit(self, event_type: str, **fields: Any) -> None:
        try:
            self.audit.record(event_type, **fields)
        except Exception as exc:
            logger.error("audit_write_failed", event_type=event_type, error=str(exc))

    async def drain(self) -> None:
        """Wait for bookkeeping tasks still running after their callers left."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
