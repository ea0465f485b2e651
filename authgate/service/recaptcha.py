"""Proof-of-humanity verification against the reCAPTCHA v3 siteverify API."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.audit import AuditTrail

logger = get_logger(__name__)

ACTION_LOGIN = "login"
ACTION_FORGOT_PASSWORD = "forgot_password"

# Failure reasons, also used as BotVerificationFailedError.reason
REASON_CONFIG_ERROR = "config_error"
REASON_MISSING_TOKEN = "missing_token"
REASON_API_UNAVAILABLE = "api_unavailable"
REASON_VERIFICATION_FAILED = "verification_failed"
REASON_ACTION_MISMATCH = "action_mismatch"
REASON_LOW_SCORE = "low_score"

_MESSAGES = {
    REASON_CONFIG_ERROR: "Human verification is misconfigured, please contact an administrator.",
    REASON_MISSING_TOKEN: "Please complete the human verification.",
    REASON_API_UNAVAILABLE: "Human verification is temporarily unavailable, please try again later.",
    REASON_VERIFICATION_FAILED: "Human verification failed, please try again.",
    REASON_ACTION_MISMATCH: "Human verification failed, please try again.",
    REASON_LOW_SCORE: "Suspicious activity detected, please try again later or contact an administrator.",
}


@dataclass
class BotVerificationResult:
    success: bool
    score: float = 0.0
    action: Optional[str] = None
    error_codes: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def failed(cls, reason: str, **kwargs: Any) -> "BotVerificationResult":
        return cls(success=False, reason=reason, message=_MESSAGES[reason], **kwargs)


class BotMitigationGateway:
    """Decision table over the siteverify response; the first matching row wins.

    Each branch emits exactly one ``recaptcha_verification`` audit entry whose
    ``outcome`` names the branch. Transport errors and timeouts fail closed.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        audit: Optional[AuditTrail] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.enabled = settings.recaptcha_enabled
        self.site_key = settings.recaptcha_site_key
        self._secret_key = settings.recaptcha_secret_key
        self.score_threshold = settings.recaptcha_score_threshold
        self.verify_url = settings.recaptcha_verify_url
        self.timeout = settings.recaptcha_timeout_seconds
        self.audit = audit
        self._client = client
        self._owns_client = client is None

    def public_config(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "siteKey": self.site_key if self.enabled else ""}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=False,
            )
        return self._client

    def _emit(self, outcome: str, *, severity: str = "INFO", **fields: Any) -> None:
        if self.audit is not None:
            self.audit.record(
                "recaptcha_verification", severity=severity, outcome=outcome, **fields
            )
            return
        if severity == "ERROR":
            logger.error("recaptcha_verification", outcome=outcome, **fields)
        elif severity == "WARNING":
            logger.warning("recaptcha_verification", outcome=outcome, **fields)
        else:
            logger.info("recaptcha_verification", outcome=outcome, **fields)

    async def verify(
        self, token: Optional[str], expected_action: Optional[str] = None
    ) -> BotVerificationResult:
        if not self.enabled:
            self._emit("RECAPTCHA_SKIPPED", expected_action=expected_action)
            return BotVerificationResult(
                success=True, score=1.0, message="Verification skipped (disabled)."
            )

        if not self._secret_key:
            self._emit("RECAPTCHA_CONFIG_ERROR", severity="ERROR", expected_action=expected_action)
            return BotVerificationResult.failed(REASON_CONFIG_ERROR)

        if not isinstance(token, str) or not token.strip():
            self._emit(
                "RECAPTCHA_MISSING_TOKEN", severity="WARNING", expected_action=expected_action
            )
            return BotVerificationResult.failed(REASON_MISSING_TOKEN)

        try:
            response = await asyncio.wait_for(
                self._get_client().post(
                    self.verify_url,
                    data={"secret": self._secret_key, "response": token.strip()},
                ),
                self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            self._emit(
                "RECAPTCHA_API_ERROR",
                severity="ERROR",
                expected_action=expected_action,
                error_type=type(exc).__name__,
                error="timeout",
            )
            return BotVerificationResult.failed(REASON_API_UNAVAILABLE)
        except httpx.HTTPError as exc:
            self._emit(
                "RECAPTCHA_API_ERROR",
                severity="ERROR",
                expected_action=expected_action,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return BotVerificationResult.failed(REASON_API_UNAVAILABLE)

        if not response.is_success:
            self._emit(
                "RECAPTCHA_API_ERROR",
                severity="ERROR",
                expected_action=expected_action,
                status=response.status_code,
            )
            return BotVerificationResult.failed(REASON_API_UNAVAILABLE)

        try:
            body = response.json()
            if not isinstance(body, dict):
                raise ValueError("siteverify response is not an object")
        except ValueError as exc:
            self._emit(
                "RECAPTCHA_ERROR",
                severity="ERROR",
                expected_action=expected_action,
                error=str(exc),
            )
            return BotVerificationResult.failed(REASON_API_UNAVAILABLE)

        action = body.get("action")
        error_codes = [str(code) for code in body.get("error-codes") or []]
        try:
            score = float(body.get("score") or 0.0)
        except (TypeError, ValueError):
            score = 0.0

        if not body.get("success"):
            self._emit(
                "RECAPTCHA_VERIFY",
                severity="WARNING",
                success=False,
                action=action,
                expected_action=expected_action,
                hostname=body.get("hostname"),
                error_codes=error_codes,
            )
            return BotVerificationResult.failed(
                REASON_VERIFICATION_FAILED, action=action, error_codes=error_codes
            )

        if expected_action and action != expected_action:
            self._emit(
                "RECAPTCHA_ACTION_MISMATCH",
                severity="WARNING",
                expected_action=expected_action,
                action=action,
                score=score,
            )
            return BotVerificationResult.failed(
                REASON_ACTION_MISMATCH, score=score, action=action
            )

        if score < self.score_threshold:
            self._emit(
                "RECAPTCHA_LOW_SCORE",
                severity="WARNING",
                score=score,
                threshold=self.score_threshold,
                action=action,
            )
            return BotVerificationResult.failed(REASON_LOW_SCORE, score=score, action=action)

        self._emit(
            "RECAPTCHA_VERIFY",
            success=True,
            score=score,
            action=action,
            expected_action=expected_action,
            hostname=body.get("hostname"),
        )
        return BotVerificationResult(success=True, score=score, action=action)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
