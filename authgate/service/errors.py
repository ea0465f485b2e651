from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions surfaced to callers.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that ends up in the ``extensions.code`` of the error envelope.
    """

    status_code: int = 400
    error_code: str = "BAD_USER_INPUT"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed."""
    status_code = 400
    error_code = "BAD_USER_INPUT"


class WeakPasswordError(ValidationError):
    """New password does not meet the strength rules."""
    error_code = "WEAK_PASSWORD"


class PasswordReusedError(ValidationError):
    """New password matches the current one or a recent one."""
    error_code = "PASSWORD_REUSED"


class PasswordMismatchError(ValidationError):
    error_code = "PASSWORD_MISMATCH"


class AuthenticationError(ServiceError):
    """Caller is not authenticated."""
    status_code = 401
    error_code = "UNAUTHENTICATED"


class AccountLockedError(ServiceError):
    """Login refused while the lockout window is active."""
    status_code = 403
    error_code = "ACCOUNT_LOCKED"


class BotVerificationFailedError(ServiceError):
    """Proof-of-humanity check failed.

    ``reason`` is one of config_error, missing_token, api_unavailable,
    verification_failed, action_mismatch, low_score.
    """

    status_code = 403
    error_code = "RECAPTCHA_FAILED"

    def __init__(self, message: str, *, reason: str, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "NOT_FOUND"


class LookupFailedError(ServiceError):
    """Record lookup failed; callers treat the record as not found."""
    status_code = 500
    error_code = "LOOKUP_FAILED"


class PersistenceFailedError(ServiceError):
    """Record write failed."""
    status_code = 500
    error_code = "PERSISTENCE_FAILED"


class DeliveryFailedError(ServiceError):
    """Reset email could not be sent."""
    status_code = 500
    error_code = "DELIVERY_FAILED"


class ServerError(ServiceError):
    status_code = 500
    error_code = "INTERNAL_SERVER_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "PasswordReusedError",
    "PasswordMismatchError",
    "AuthenticationError",
    "AccountLockedError",
    "BotVerificationFailedError",
    "NotFoundError",
    "LookupFailedError",
    "PersistenceFailedError",
    "DeliveryFailedError",
    "ServerError",
]
