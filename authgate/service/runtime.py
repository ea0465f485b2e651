from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authgate.config import get_settings, reset_settings_cache
from authgate.logging import get_logger
from authgate.service import lockout, password_policy
from authgate.service.audit import AuditTrail
from authgate.service.credentials import (
    CredentialHasher,
    CredentialService,
    StoreCredentialVerifier,
)
from authgate.service.email import EmailService
from authgate.service.gateway import AuthGateway
from authgate.service.password_reset import PasswordResetFlow, ResetTokenIssuer
from authgate.service.recaptcha import BotMitigationGateway
from authgate.service.sessions import SessionManager
from authgate.storage.memory import MemoryStore
from authgate.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store: Union[MemoryStore, RedisStore]
        if self.settings.use_memory_store:
            self.store = MemoryStore()
        else:
            try:
                store = RedisStore(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                )
                store.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise RuntimeError(
                    "Redis is required for security records; start Redis or set "
                    "USE_MEMORY_STORE=true for local development."
                ) from exc
            self.store = store
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "redis",
        )

        timeout = self.settings.store_timeout_seconds
        self.audit = AuditTrail(self.settings.effective_audit_key)
        self.hasher = CredentialHasher()
        self.sessions = SessionManager(
            self.settings.session_secret,
            max_age_seconds=self.settings.session_max_age_seconds,
        )
        self.password_policy = password_policy.policy_from_settings(self.settings)
        self.lockout_policy = lockout.policy_from_settings(self.settings)
        self.credentials = CredentialService(
            self.store, self.hasher, self.password_policy, timeout=timeout
        )
        self.verifier = StoreCredentialVerifier(
            self.store, self.hasher, sessions=self.sessions, timeout=timeout
        )
        self.bot = BotMitigationGateway(self.settings, audit=self.audit)
        self.gateway = AuthGateway(
            store=self.store,
            lockout=self.lockout_policy,
            password_policy=self.password_policy,
            bot=self.bot,
            audit=self.audit,
            timeout=timeout,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.password_reset = PasswordResetFlow(
            store=self.store,
            issuer=ResetTokenIssuer(
                self.store,
                ttl_minutes=self.settings.password_reset_token_ttl_minutes,
                timeout=timeout,
            ),
            mailer=self.email,
            credentials=self.credentials,
            hasher=self.hasher,
            base_url=self.settings.password_reset_base_url,
            min_response_ms=self.settings.password_reset_min_response_ms,
            timeout=timeout,
        )

        logger.info(
            "runtime_initialized",
            recaptcha_enabled=self.settings.recaptcha_enabled,
            email_configured=self.email.is_configured,
            lockout_max_attempts=self.lockout_policy.max_attempts,
            password_min_length=self.password_policy.min_length,
        )

    async def close(self) -> None:
        await self.gateway.drain()
        await self.password_reset.drain()
        await self.bot.close()
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize settings and the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
