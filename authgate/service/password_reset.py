"""Password reset link lifecycle: request, deliver, validate, redeem.

Tokens are random URL-safe strings; only their SHA-256 digest is stored, one
outstanding token per identity. ``request_reset`` behaves the same whether or
not the identity exists, including its duration, which is padded to a
configured minimum. Mail goes out only after the response is produced.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import random
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from html import escape
from typing import Any, Callable, Optional, Protocol, Set
from urllib.parse import urlencode

from authgate.logging import get_logger
from authgate.service.credentials import CredentialHasher, CredentialService
from authgate.service.email import DELIVERY_LOG, redact_address
from authgate.service.errors import DeliveryFailedError
from authgate.storage.common import RecordStore, normalize_identity
from authgate.storage.models import ResetToken, utcnow

logger = get_logger(__name__)

CODE_FAILURE = "FAILURE"
CODE_TOKEN_EXPIRED = "TOKEN_EXPIRED"
CODE_TOKEN_REDEEMED = "TOKEN_REDEEMED"

_MAX_JITTER_MS = 100

# Receives a coroutine function and its arguments, e.g. BackgroundTasks.add_task
Scheduler = Callable[..., Any]


class Mailer(Protocol):
    def send(self, to_email: str, subject: str, text: str, html: str) -> str: ...


@dataclass(frozen=True)
class RedemptionResult:
    code: str
    message: str

    def as_payload(self) -> dict:
        return {"code": self.code, "message": self.message}


_FAILURE = RedemptionResult(CODE_FAILURE, "The reset link is invalid.")
_EXPIRED = RedemptionResult(CODE_TOKEN_EXPIRED, "The reset link has expired.")
_REDEEMED = RedemptionResult(CODE_TOKEN_REDEEMED, "The reset link has already been used.")


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class ResetTokenIssuer:
    """Issues reset tokens and checks them against the stored digest."""

    def __init__(self, store: RecordStore, *, ttl_minutes: int = 30, timeout: float = 5.0) -> None:
        self.store = store
        self.ttl = timedelta(minutes=ttl_minutes)
        self.timeout = timeout

    async def issue(self, identity: str, now: Optional[datetime] = None) -> str:
        now = now or utcnow()
        token = secrets.token_urlsafe(32)
        record = ResetToken(
            identity=normalize_identity(identity),
            token_digest=token_digest(token),
            issued_at=now,
            expires_at=now + self.ttl,
        )
        await asyncio.wait_for(
            self.store.save_reset_token(record, int(self.ttl.total_seconds())), self.timeout
        )
        return token

    async def check(
        self, identity: str, token: str, now: Optional[datetime] = None
    ) -> Optional[RedemptionResult]:
        """``None`` when the token may be redeemed, otherwise the reason it may not."""
        if not identity or not token:
            return _FAILURE
        now = now or utcnow()
        stored = await asyncio.wait_for(self.store.get_reset_token(identity), self.timeout)
        if stored is None:
            return _FAILURE
        if not hmac.compare_digest(stored.token_digest, token_digest(token)):
            return _FAILURE
        if stored.redeemed_at is not None:
            return _REDEEMED
        if stored.is_expired(now):
            return _EXPIRED
        return None

    async def mark_redeemed(self, identity: str, token: str, now: Optional[datetime] = None) -> bool:
        return await asyncio.wait_for(
            self.store.mark_reset_token_redeemed(identity, token_digest(token), now or utcnow()),
            self.timeout,
        )


class PasswordResetFlow:
    def __init__(
        self,
        *,
        store: RecordStore,
        issuer: ResetTokenIssuer,
        mailer: Mailer,
        credentials: CredentialService,
        hasher: CredentialHasher,
        base_url: str = "http://localhost:3000",
        min_response_ms: int = 400,
        timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.mailer = mailer
        self.credentials = credentials
        self.hasher = hasher
        self.base_url = base_url.rstrip("/") or "http://localhost:3000"
        self.min_response_ms = min_response_ms
        self.timeout = timeout
        self._background: Set[asyncio.Task] = set()

    def build_reset_url(self, identity: str, token: str) -> str:
        return f"{self.base_url}/reset-password?{urlencode({'email': identity, 'token': token})}"

    async def _pad(self, started: float) -> None:
        target = (self.min_response_ms + random.randint(0, _MAX_JITTER_MS)) / 1000  # nosec B311
        remaining = target - (time.monotonic() - started)
        if remaining > 0:
            await asyncio.sleep(remaining)

    async def request_reset(self, identity: str, schedule: Optional[Scheduler] = None) -> bool:
        """Issue a link when the account exists and queue its delivery.

        Always returns ``True``. Delivery runs after the padded response, either
        through ``schedule`` (e.g. ``BackgroundTasks.add_task``) or as a tracked
        task that ``drain`` waits for, so mail transport time never shows in
        the response time.
        """
        started = time.monotonic()
        candidate = (identity or "").strip()
        try:
            record = None
            if candidate:
                try:
                    record = await asyncio.wait_for(
                        self.store.find_one(identity=candidate), self.timeout
                    )
                except Exception as exc:
                    logger.warning(
                        "password_reset_lookup_failed",
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
            if record is None:
                await asyncio.to_thread(self.hasher.dummy_verify, candidate or "-")
                logger.info("password_reset_requested", account_found=False)
                return True
            token = await self.issuer.issue(record.identity)
            logger.info("password_reset_requested", account_found=True, record_id=record.id)
            if schedule is not None:
                schedule(self.deliver_later, record.identity, token)
            else:
                task = asyncio.ensure_future(self.deliver_later(record.identity, token))
                self._background.add(task)
                task.add_done_callback(self._background.discard)
            return True
        finally:
            await self._pad(started)

    async def deliver_later(self, identity: str, token: str) -> None:
        """Run ``deliver`` after the caller has been answered."""
        try:
            await self.deliver(identity, token)
        except DeliveryFailedError:
            # Logged by deliver; nobody is left to acknowledge
            return

    async def drain(self) -> None:
        """Wait for queued deliveries."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def deliver(self, identity: str, token: str) -> None:
        reset_url = self.build_reset_url(identity, token)
        ttl_minutes = int(self.issuer.ttl.total_seconds() // 60)
        subject = "Reset your password"
        text = "\n".join(
            [
                "Hello,",
                "",
                "We received a request to reset your Forum CMS password.",
                f"Follow this link to choose a new password: {reset_url}",
                "",
                f"The link is valid for {ttl_minutes} minutes. If you did not ask for this, ignore this email.",
            ]
        )
        html = (
            "<p>Hello,</p>"
            "<p>We received a request to reset your Forum CMS password.</p>"
            f'<p><a href="{escape(reset_url)}" target="_blank" rel="noreferrer">Reset your password</a></p>'
            f"<p>The link is valid for {ttl_minutes} minutes. If you did not ask for this, ignore this email.</p>"
        )
        try:
            delivery = await asyncio.to_thread(self.mailer.send, identity, subject, text, html)
        except DeliveryFailedError:
            logger.error("password_reset_delivery_failed", to=redact_address(identity))
            raise
        except Exception as exc:
            logger.error(
                "password_reset_delivery_failed",
                to=redact_address(identity),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DeliveryFailedError("Email delivery failed.") from exc
        if delivery == DELIVERY_LOG:
            # Environments without SMTP get the link in the log instead
            logger.warning(
                "password_reset_link_logged", to=redact_address(identity), reset_url=reset_url
            )
        else:
            logger.info("password_reset_link_sent", to=redact_address(identity))

    async def validate(
        self, identity: str, token: str, now: Optional[datetime] = None
    ) -> Optional[RedemptionResult]:
        return await self.issuer.check((identity or "").strip(), token, now)

    async def redeem(
        self, identity: str, token: str, new_password: str, now: Optional[datetime] = None
    ) -> Optional[RedemptionResult]:
        """Redeem ``token`` and set ``new_password``.

        Token problems come back as a ``RedemptionResult``; policy violations
        raise ``WeakPasswordError`` / ``PasswordReusedError`` before the token
        is consumed, leaving the record untouched.
        """
        now = now or utcnow()
        identity = (identity or "").strip()
        problem = await self.issuer.check(identity, token, now)
        if problem is not None:
            return problem
        record = await asyncio.wait_for(self.store.find_one(identity=identity), self.timeout)
        if record is None:
            return _FAILURE
        policy = self.credentials.policy
        value = policy.validate_strength(new_password)
        await asyncio.to_thread(
            policy.assert_not_reused,
            value,
            record.credential_hash,
            record.password_history,
            self.hasher,
        )
        if not await self.issuer.mark_redeemed(identity, token, now):
            return _REDEEMED
        await self.credentials.set_password(record, value, now)
        logger.info("password_reset_redeemed", record_id=record.id)
        return None
