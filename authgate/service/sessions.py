from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta
from typing import Any, Optional

from authgate.logging import get_logger
from authgate.storage.models import SecurityRecord, utcnow

logger = get_logger(__name__)

SESSION_ISSUER = "authgate"


class SessionManager:
    """Issues and resolves HS256 session tokens keyed on the record id."""

    def __init__(
        self,
        secret: str,
        *,
        max_age_seconds: int = 60 * 60 * 24,
        issuer: str = SESSION_ISSUER,
    ) -> None:
        if not secret:
            raise ValueError("session secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.max_age = timedelta(seconds=max_age_seconds)
        self.issuer = issuer

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode("utf-8"), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("session_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("session_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("session_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("iss") != self.issuer:
            return None
        return payload

    def issue(self, record: SecurityRecord, now: Optional[datetime] = None) -> str:
        now = now or utcnow()
        return self.encode(
            {
                "sub": record.id,
                "iss": self.issuer,
                "iat": int(now.timestamp()),
                "exp": int((now + self.max_age).timestamp()),
            }
        )

    def resolve(self, token: Optional[str], now: Optional[datetime] = None) -> Optional[str]:
        """Return the record id a valid, unexpired token was issued for."""
        if not token:
            return None
        payload = self.decode(token)
        if payload is None:
            return None
        now = now or utcnow()
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or now.timestamp() >= exp:
            return None
        subject = payload.get("sub")
        return subject if isinstance(subject, str) and subject else None
