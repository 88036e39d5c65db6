"""Redis-backed Ledger Store.

Conditional writes run as a single Lua script, so the status and version
compare and the write are one atomic step on the Redis server. That holds
across processes, which an in-process lock cannot guarantee.

Usage:
    store = await RedisLedgerStore.connect("redis://localhost:6379/0")
    ok, current = await store.put_if_status("escrow/abc", "PENDING", record)
"""

from __future__ import annotations

import json
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from session_clearinghouse.domain.exceptions import LedgerError
from session_clearinghouse.logging_config import get_logger

logger = get_logger(__name__)

# KEYS[1] = record key, ARGV[1] = expected status ("" = must be absent),
# ARGV[2] = new JSON value, ARGV[3] = expected version ("" = any).
# Returns {1, new} on write, {0, current or ""} otherwise.
_PUT_IF_STATUS_LUA = """
local current = redis.call('GET', KEYS[1])
local expected = ARGV[1]
if not current then
    if expected == '' then
        redis.call('SET', KEYS[1], ARGV[2])
        return {1, ARGV[2]}
    end
    return {0, ''}
end
if expected == '' then
    return {0, current}
end
local ok, decoded = pcall(cjson.decode, current)
if not ok or type(decoded) ~= 'table' or decoded['status'] ~= expected then
    return {0, current}
end
if ARGV[3] ~= '' and tonumber(decoded['version'] or 0) ~= tonumber(ARGV[3]) then
    return {0, current}
end
redis.call('SET', KEYS[1], ARGV[2])
return {1, ARGV[2]}
"""

_SCAN_BATCH = 500


class RedisLedgerStore:
    """LedgerStore over redis.asyncio. All keys live under a namespace prefix."""

    def __init__(self, client: aioredis.Redis, namespace: str = "clearinghouse:") -> None:
        self._redis = client
        self._namespace = namespace
        self._put_if_status = client.register_script(_PUT_IF_STATUS_LUA)

    @classmethod
    async def connect(cls, url: str, namespace: str = "clearinghouse:") -> RedisLedgerStore:
        """Open a client and verify connectivity. Called during app startup."""
        client = aioredis.from_url(url, decode_responses=True)
        try:
            await client.ping()
        except RedisError as exc:
            await client.aclose()
            raise LedgerError(f"Redis unreachable at {url}: {exc}") from exc
        logger.info("redis.connected", url=url, namespace=namespace)
        return cls(client, namespace)

    async def close(self) -> None:
        await self._redis.aclose()
        logger.info("redis.disconnected")

    def _key(self, key: str) -> str:
        return f"{self._namespace}{key}"

    @staticmethod
    def _decode(key: str, raw: str) -> dict[str, Any]:
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise LedgerError(f"Unreadable record at {key}", key=key) from exc

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            raw = await self._redis.get(self._key(key))
        except RedisError as exc:
            raise LedgerError(f"Redis GET failed: {exc}", key=key) from exc
        return self._decode(key, raw) if raw is not None else None

    async def put_if_status(
        self,
        key: str,
        expected_status: str | None,
        value: dict[str, Any],
        expected_version: int | None = None,
    ) -> tuple[bool, dict[str, Any] | None]:
        version_arg = "" if expected_version is None else str(expected_version)
        try:
            written, raw = await self._put_if_status(
                keys=[self._key(key)],
                args=[expected_status or "", json.dumps(value), version_arg],
            )
        except RedisError as exc:
            raise LedgerError(f"Redis conditional write failed: {exc}", key=key) from exc

        current = self._decode(key, raw) if raw else None
        if not written:
            logger.debug(
                "ledger.cas_rejected",
                key=key,
                expected=expected_status,
                expected_version=expected_version,
            )
        return bool(written), current

    async def list_by_prefix(self, prefix: str) -> list[tuple[str, dict[str, Any]]]:
        pattern = f"{self._key(prefix)}*"
        try:
            keys = sorted([k async for k in self._redis.scan_iter(match=pattern, count=_SCAN_BATCH)])
            values = await self._redis.mget(keys) if keys else []
        except RedisError as exc:
            raise LedgerError(f"Redis SCAN failed: {exc}", key=prefix) from exc

        strip = len(self._namespace)
        return [
            (k[strip:], self._decode(k, raw))
            for k, raw in zip(keys, values, strict=True)
            # A key deleted between SCAN and MGET comes back as None
            if raw is not None
        ]
