from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StaleRecordError(Exception):
    """Raised when a conditional update sees a different version than expected."""

    def __init__(self, record_id: str, expected: int, actual: Optional[int]):
        super().__init__(
            f"record {record_id} changed concurrently (expected v{expected}, found v{actual})"
        )
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


__all__ = ["ConstraintViolation", "StaleRecordError"]
