from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from authgate.logging import get_logger
from authgate.storage.common import (
    apply_changes,
    normalize_identity,
    record_from_dict,
    record_to_dict,
    reset_token_from_dict,
    reset_token_to_dict,
)
from authgate.storage.errors import ConstraintViolation, StaleRecordError
from authgate.storage.models import ResetToken, SecurityRecord


class MemoryStore:
    """In-memory record store for development and tests.

    Every read-modify-write runs under one lock, so conditional updates are
    atomic within the process. When ``fs_root`` is given the state is also
    written to ``<fs_root>/state/security_records.json`` after each change.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.records: Dict[str, SecurityRecord] = {}
        self.identity_index: Dict[str, str] = {}
        self.reset_tokens: Dict[str, ResetToken] = {}
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "security_records.json"

    async def create_record(self, record: SecurityRecord) -> SecurityRecord:
        key = normalize_identity(record.identity)
        with self._data_lock:
            if key in self.identity_index:
                raise ConstraintViolation("identity already exists", {"field": "identity"})
            stored = replace(record, password_history=list(record.password_history))
            self.records[stored.id] = stored
            self.identity_index[key] = stored.id
            self._persist_state()
            return replace(stored)

    async def find_one(
        self,
        *,
        record_id: Optional[str] = None,
        identity: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Optional[SecurityRecord]:
        with self._data_lock:
            found: Optional[SecurityRecord] = None
            if record_id is not None:
                found = self.records.get(record_id)
            elif identity is not None:
                found = self.records.get(
                    self.identity_index.get(normalize_identity(identity), "")
                )
            elif name is not None:
                wanted = name.strip().lower()
                found = next(
                    (r for r in self.records.values() if r.name.strip().lower() == wanted),
                    None,
                )
            # Hand out copies so callers cannot mutate stored state
            return replace(found, password_history=list(found.password_history)) if found else None

    async def update_one(
        self,
        record_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[SecurityRecord]:
        with self._data_lock:
            current = self.records.get(record_id)
            if current is None:
                return None
            if expected_version is not None and current.version != expected_version:
                raise StaleRecordError(record_id, expected_version, current.version)
            updated = apply_changes(current, changes)
            self.records[record_id] = updated
            self._persist_state()
            return replace(updated, password_history=list(updated.password_history))

    async def record_failure(
        self,
        record_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lock_until: datetime,
    ) -> Optional[SecurityRecord]:
        with self._data_lock:
            current = self.records.get(record_id)
            if current is None:
                return None
            attempts = current.login_failed_attempts + 1
            changes: Dict[str, Any] = {
                "login_failed_attempts": attempts,
                "last_failed_login_at": now,
            }
            if attempts >= max_attempts:
                changes["account_locked_until"] = lock_until
            updated = apply_changes(current, changes)
            self.records[record_id] = updated
            self._persist_state()
            return replace(updated, password_history=list(updated.password_history))

    async def save_reset_token(self, token: ResetToken, ttl_seconds: int) -> None:
        # Expiry is enforced from token.expires_at; ttl only matters for redis.
        with self._data_lock:
            self.reset_tokens[normalize_identity(token.identity)] = token
            self._persist_state()

    async def get_reset_token(self, identity: str) -> Optional[ResetToken]:
        with self._data_lock:
            token = self.reset_tokens.get(normalize_identity(identity))
            return replace(token) if token else None

    async def mark_reset_token_redeemed(
        self, identity: str, token_digest: str, redeemed_at: datetime
    ) -> bool:
        with self._data_lock:
            key = normalize_identity(identity)
            token = self.reset_tokens.get(key)
            if token is None or token.token_digest != token_digest or token.redeemed_at:
                return False
            self.reset_tokens[key] = replace(token, redeemed_at=redeemed_at)
            self._persist_state()
            return True

    async def close(self) -> None:
        return None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "records": [record_to_dict(r) for r in self.records.values()],
            "reset_tokens": [reset_token_to_dict(t) for t in self.reset_tokens.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.records = {
            r["id"]: record_from_dict(r) for r in data.get("records", [])
        }
        self.identity_index = {
            normalize_identity(r.identity): r.id for r in self.records.values()
        }
        self.reset_tokens = {}
        for raw in data.get("reset_tokens", []):
            token = reset_token_from_dict(raw)
            self.reset_tokens[normalize_identity(token.identity)] = token
        self.logger.info("memory_store_state_loaded", records=len(self.records))
        return True


__all__ = ["MemoryStore"]
