from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import redis.asyncio as aioredis

from authgate.logging import get_logger
from authgate.storage.common import (
    check_changes,
    normalize_identity,
    record_from_dict,
    record_to_dict,
    reset_token_from_dict,
    reset_token_to_dict,
)
from authgate.storage.errors import ConstraintViolation, StaleRecordError
from authgate.storage.models import ResetToken, SecurityRecord

logger = get_logger(__name__)


class RedisStore:
    """Redis-backed record store.

    Records live as JSON documents under ``authgate:record:<id>``. Updates are
    merged server-side by a Lua script that also checks the version. Failed
    logins are counted by a separate script that increments in place, so
    concurrent failures never overwrite each other.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Returns {status, version}: 1 updated, 0 missing, -1 version mismatch
    _UPDATE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return {0, -1}
end
local current = cjson.decode(raw)
local version = tonumber(current['version']) or 0
if ARGV[1] ~= '' and tonumber(ARGV[1]) ~= version then
  return {-1, version}
end
local changes = cjson.decode(ARGV[2])
for field, value in pairs(changes) do
  current[field] = value
end
current['version'] = version + 1
redis.call('SET', KEYS[1], cjson.encode(current))
return {1, version + 1}
"""

    # Returns the new attempt count, or -1 when the record is missing
    _FAILURE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return -1
end
local current = cjson.decode(raw)
local attempts = (tonumber(current['login_failed_attempts']) or 0) + 1
current['login_failed_attempts'] = attempts
current['last_failed_login_at'] = ARGV[1]
if attempts >= tonumber(ARGV[2]) then
  current['account_locked_until'] = ARGV[3]
end
current['version'] = (tonumber(current['version']) or 0) + 1
redis.call('SET', KEYS[1], cjson.encode(current))
return attempts
"""

    # Returns 1 when the token was marked redeemed, 0 otherwise
    _REDEEM_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local token = cjson.decode(raw)
if token['token_digest'] ~= ARGV[1] then
  return 0
end
if token['redeemed_at'] ~= nil and token['redeemed_at'] ~= cjson.null then
  return 0
end
token['redeemed_at'] = ARGV[2]
redis.call('SET', KEYS[1], cjson.encode(token), 'KEEPTTL')
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        prefix: str = "authgate",
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._update = self.client.register_script(self._UPDATE_SCRIPT)
        self._redeem = self.client.register_script(self._REDEEM_SCRIPT)
        self._failure = self.client.register_script(self._FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        from redis import Redis

        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _record_key(self, record_id: str) -> str:
        return f"{self.prefix}:record:{record_id}"

    def _identity_key(self, identity: str) -> str:
        return f"{self.prefix}:identity:{normalize_identity(identity)}"

    def _name_key(self, name: str) -> str:
        return f"{self.prefix}:name:{name.strip().lower()}"

    def _reset_key(self, identity: str) -> str:
        return f"{self.prefix}:reset:{normalize_identity(identity)}"

    @staticmethod
    def _encode_changes(changes: Mapping[str, Any]) -> str:
        encoded: Dict[str, Any] = {}
        for key, value in check_changes(changes).items():
            encoded[key] = value.isoformat() if isinstance(value, datetime) else value
        return json.dumps(encoded)

    async def create_record(self, record: SecurityRecord) -> SecurityRecord:
        claimed = await self.client.set(self._identity_key(record.identity), record.id, nx=True)
        if not claimed:
            raise ConstraintViolation("identity already exists", {"field": "identity"})
        pipe = self.client.pipeline()
        pipe.set(self._record_key(record.id), json.dumps(record_to_dict(record)))
        if record.name:
            pipe.set(self._name_key(record.name), record.id)
        await pipe.execute()
        return record

    async def _load(self, record_id: Optional[str]) -> Optional[SecurityRecord]:
        if not record_id:
            return None
        raw = await self.client.get(self._record_key(record_id))
        if not raw:
            return None
        return record_from_dict(json.loads(raw))

    async def find_one(
        self,
        *,
        record_id: Optional[str] = None,
        identity: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Optional[SecurityRecord]:
        if record_id is not None:
            return await self._load(record_id)
        if identity is not None:
            return await self._load(await self.client.get(self._identity_key(identity)))
        if name is not None:
            return await self._load(await self.client.get(self._name_key(name)))
        return None

    async def update_one(
        self,
        record_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[SecurityRecord]:
        status, version = await self._update(
            keys=[self._record_key(record_id)],
            args=[
                "" if expected_version is None else str(expected_version),
                self._encode_changes(changes),
            ],
        )
        status = int(status)
        if status == 0:
            return None
        if status == -1:
            raise StaleRecordError(record_id, expected_version or 0, int(version))
        if "name" in changes and changes["name"]:
            await self.client.set(self._name_key(changes["name"]), record_id)
        return await self._load(record_id)

    async def record_failure(
        self,
        record_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lock_until: datetime,
    ) -> Optional[SecurityRecord]:
        attempts = await self._failure(
            keys=[self._record_key(record_id)],
            args=[now.isoformat(), str(max_attempts), lock_until.isoformat()],
        )
        if int(attempts) < 0:
            return None
        return await self._load(record_id)

    async def save_reset_token(self, token: ResetToken, ttl_seconds: int) -> None:
        await self.client.set(
            self._reset_key(token.identity),
            json.dumps(reset_token_to_dict(token)),
            ex=max(1, ttl_seconds),
        )

    async def get_reset_token(self, identity: str) -> Optional[ResetToken]:
        raw = await self.client.get(self._reset_key(identity))
        if not raw:
            return None
        try:
            return reset_token_from_dict(json.loads(raw))
        except (KeyError, ValueError) as exc:
            logger.warning("reset_token_corrupt", error=str(exc))
            return None

    async def mark_reset_token_redeemed(
        self, identity: str, token_digest: str, redeemed_at: datetime
    ) -> bool:
        result = await self._redeem(
            keys=[self._reset_key(identity)],
            args=[token_digest, redeemed_at.isoformat()],
        )
        return bool(int(result))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisStore"]
