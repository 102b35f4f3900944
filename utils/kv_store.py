"""Key-value store backends for the run lock, scan cursor and attempt records.

Every backend exposes the same async surface:

    get(key) -> str | None
    put(key, value, ttl_seconds=None)
    delete(key)

Read-after-write is best-effort only. None of the backends offers compare-and-swap,
and callers must not rely on one.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Optional, Protocol
from urllib.parse import quote

import config
from utils.errors import ConfigError, KVStoreError
from utils.http_client import ResilientHttpClient
from utils.state_file import StateFileCorruptError, StateFileLockError, update_json_locked

logger = logging.getLogger(__name__)

# Cloudflare Workers KV rejects expiration_ttl below 60 seconds.
CLOUDFLARE_MIN_TTL_SECONDS = 60


class KVStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


class MemoryKVStore:
    """In-process store. Only meaningful when a single process drives every run."""

    def __init__(self, clock: Any = time.monotonic) -> None:
        self._clock = clock
        self._rows: dict[str, tuple[str, float | None]] = {}

    async def get(self, key: str) -> Optional[str]:
        row = self._rows.get(key)
        if row is None:
            return None
        value, expires_at = row
        if expires_at is not None and expires_at <= self._clock():
            self._rows.pop(key, None)
            return None
        return value

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + int(ttl_seconds) if ttl_seconds else None
        self._rows[key] = (str(value), expires_at)

    async def delete(self, key: str) -> None:
        self._rows.pop(key, None)

    async def close(self) -> None:
        return None


class JsonFileKVStore:
    """Store backed by one JSON file, shared between processes through `<file>.lock`.

    Layout: {"<key>": {"value": "<str>", "expires_at": <unix seconds or null>}}
    """

    def __init__(self, path: str, *, lock_timeout_seconds: float = 2.0) -> None:
        self.path = os.path.abspath(path)
        self.lock_timeout_seconds = float(lock_timeout_seconds)

    @staticmethod
    def _prune(state: dict[str, Any], now_ts: float) -> None:
        for key in list(state.keys()):
            row = state.get(key)
            if not isinstance(row, dict):
                state.pop(key, None)
                continue
            expires_at = row.get("expires_at")
            if expires_at is None:
                continue
            try:
                expired = float(expires_at) <= now_ts
            except (TypeError, ValueError):
                logger.warning("KV_ROW_DROPPED key=%s bad_expires_at=%r", key, expires_at)
                expired = True
            if expired:
                state.pop(key, None)

    def _update(self, mutate: Any) -> Any:
        try:
            return update_json_locked(self.path, mutate, timeout_seconds=self.lock_timeout_seconds)
        except (StateFileLockError, StateFileCorruptError, OSError) as exc:
            raise KVStoreError(f"state file unavailable path={self.path}: {exc}") from exc

    async def get(self, key: str) -> Optional[str]:
        def _read(state: dict[str, Any]) -> Optional[str]:
            self._prune(state, time.time())
            row = state.get(key)
            return None if row is None else str(row.get("value", ""))

        return await asyncio.to_thread(self._update, _read)

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        def _write(state: dict[str, Any]) -> None:
            now_ts = time.time()
            self._prune(state, now_ts)
            state[key] = {
                "value": str(value),
                "expires_at": (now_ts + int(ttl_seconds)) if ttl_seconds else None,
            }

        await asyncio.to_thread(self._update, _write)

    async def delete(self, key: str) -> None:
        def _remove(state: dict[str, Any]) -> None:
            state.pop(key, None)

        await asyncio.to_thread(self._update, _remove)

    async def close(self) -> None:
        return None


class CloudflareKVStore:
    """Cloudflare Workers KV namespace accessed through the REST API."""

    def __init__(
        self,
        account_id: str,
        namespace_id: str,
        api_token: str,
        *,
        api_base: str = "https://api.cloudflare.com/client/v4",
        http: ResilientHttpClient | None = None,
    ) -> None:
        if not (account_id and namespace_id and api_token):
            raise ConfigError("CF_ACCOUNT_ID, CF_KV_NAMESPACE_ID and CF_API_TOKEN are required for KV_BACKEND=cloudflare")
        self.base_url = f"{api_base.rstrip('/')}/accounts/{account_id}/storage/kv/namespaces/{namespace_id}/values"
        self.http = http or ResilientHttpClient(
            timeout_seconds=float(config.HTTP_TIMEOUT_SECONDS),
            headers={"Authorization": f"Bearer {api_token}"},
        )

    def _url(self, key: str) -> str:
        return f"{self.base_url}/{quote(key, safe='')}"

    async def get(self, key: str) -> Optional[str]:
        result = await self.http.request("GET", self._url(key), source="cloudflare_kv", accept_statuses=(404,))
        if not result.ok:
            raise KVStoreError(f"cloudflare kv get failed key={key}: {result.error}")
        if result.status == 404:
            return None
        return str(result.data or "")

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        params: dict[str, Any] | None = None
        if ttl_seconds:
            params = {"expiration_ttl": max(CLOUDFLARE_MIN_TTL_SECONDS, int(ttl_seconds))}
        result = await self.http.request(
            "PUT",
            self._url(key),
            source="cloudflare_kv",
            params=params,
            data=str(value),
            headers={"Content-Type": "text/plain"},
        )
        if not result.ok:
            raise KVStoreError(f"cloudflare kv put failed key={key}: {result.error}")

    async def delete(self, key: str) -> None:
        result = await self.http.request("DELETE", self._url(key), source="cloudflare_kv", accept_statuses=(404,))
        if not result.ok:
            raise KVStoreError(f"cloudflare kv delete failed key={key}: {result.error}")

    async def close(self) -> None:
        await self.http.close()


def build_kv_store(backend: str | None = None) -> KVStore:
    kind = str(backend if backend is not None else config.KV_BACKEND).strip().lower()
    if kind == "file":
        return JsonFileKVStore(config.KV_STATE_FILE)
    if kind == "sqlite" or kind == "sql":
        from database.db import SqlKVStore

        return SqlKVStore(config.DATABASE_URL)
    if kind == "cloudflare":
        return CloudflareKVStore(
            config.CF_ACCOUNT_ID,
            config.CF_KV_NAMESPACE_ID,
            config.CF_API_TOKEN,
            api_base=config.CF_API_BASE,
        )
    if kind == "memory":
        logger.warning("KV_BACKEND=memory: lock and attempt records do not survive restarts")
        return MemoryKVStore()
    raise ConfigError(f"Unknown KV_BACKEND: {kind!r}")
