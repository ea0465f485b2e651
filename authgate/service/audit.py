"""Tamper-evident audit trail.

Each entry carries ``hash_prev`` and ``hash_current`` where
``hash_current = HMAC-SHA256(key, hash_prev | canonical_payload | timestamp)``.
Editing, reordering or dropping an entry breaks every hash after it, which
``verify_chain`` reports.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from authgate.logging import get_logger

logger = get_logger("authgate.audit")

AuditSink = Callable[[Dict[str, Any]], None]

_CHAIN_FIELDS = ("hash_prev", "hash_current")


def canonical_json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _log_sink(entry: Dict[str, Any]) -> None:
    # Nested under one key so processors leave the hashed fields intact
    event = entry["type"]
    severity = str(entry.get("severity", "INFO")).upper()
    if severity == "ERROR":
        logger.error(event, audit=entry)
    elif severity in {"WARN", "WARNING"}:
        logger.warning(event, audit=entry)
    else:
        logger.info(event, audit=entry)


class AuditTrail:
    """Appends hash-chained audit entries to a sink (structlog by default)."""

    def __init__(self, key: str, *, sink: Optional[AuditSink] = None) -> None:
        if not key:
            raise ValueError("audit trail requires a non-empty HMAC key")
        self._key = key.encode("utf-8")
        self._sink = sink or _log_sink
        self._lock = threading.Lock()
        self._last_hash = ""

    def _compute_hash(self, prev_hash: str, canonical_payload: str, timestamp: str) -> str:
        content = f"{prev_hash}|{canonical_payload}|{timestamp}".encode("utf-8")
        return hmac.new(self._key, content, hashlib.sha256).hexdigest()

    def record(self, event_type: str, *, severity: str = "INFO", **fields: Any) -> Dict[str, Any]:
        """Build, chain and emit one entry. Sink failures are logged, not raised."""
        timestamp = datetime.now(timezone.utc).isoformat()
        payload: Dict[str, Any] = {
            "type": event_type,
            "severity": severity,
            "timestamp": timestamp,
            **fields,
        }
        # Round-trip so the hashed form matches what a JSON sink stores
        payload = json.loads(canonical_json(payload))
        # Sink writes stay under the lock so entries arrive in chain order
        with self._lock:
            prev_hash = self._last_hash
            current = self._compute_hash(prev_hash, canonical_json(payload), timestamp)
            self._last_hash = current
            entry = {**payload, "hash_prev": prev_hash, "hash_current": current}
            try:
                self._sink(entry)
            except Exception as exc:
                logger.error(
                    "audit_sink_failed",
                    event_type=event_type,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return entry

    def verify_chain(
        self, entries: Iterable[Dict[str, Any]], *, start_hash: str = ""
    ) -> Dict[str, Any]:
        """Recompute the chain over ``entries`` in order.

        ``start_hash`` is the ``hash_current`` preceding the first entry; the
        default checks a chain from its beginning.
        """
        mismatches: List[int] = []
        expected_prev = start_hash
        checked = 0
        for index, entry in enumerate(entries):
            checked += 1
            payload = {k: v for k, v in entry.items() if k not in _CHAIN_FIELDS}
            prev_hash = entry.get("hash_prev", "")
            if prev_hash != expected_prev:
                mismatches.append(index)
            recomputed = self._compute_hash(
                prev_hash, canonical_json(payload), str(payload.get("timestamp", ""))
            )
            if not hmac.compare_digest(recomputed, str(entry.get("hash_current", ""))):
                mismatches.append(index)
            expected_prev = entry.get("hash_current", "")
        return {
            "valid": not mismatches,
            "checked": checked,
            "mismatches": sorted(set(mismatches)),
        }


class ListSink:
    """Keeps entries in memory."""

    def __init__(self) -> None:
        self.entries: List[Dict[str, Any]] = []

    def __call__(self, entry: Dict[str, Any]) -> None:
        self.entries.append(entry)

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.entries if e.get("type") == event_type]
