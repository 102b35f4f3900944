"""Resilient shared HTTP client with retry/backoff, used by the remote KV store."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""


def _config_float(name: str, default: float) -> float:
    raw = getattr(config, name, default)
    if raw is None:
        return float(default)
    try:
        return float(raw)
    except (TypeError, ValueError):
        return float(default)


class ResilientHttpClient:
    """aiohttp session wrapper. 429 and 5xx responses are retried with jittered backoff.

    Responses in `accept_statuses` (besides 2xx) are returned as results instead of
    being treated as failures, so callers can map e.g. 404 to "absent".
    """

    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._session: aiohttp.ClientSession | None = None

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    @staticmethod
    def _compute_delay(attempt: int, status: int) -> float:
        base = max(0.05, _config_float("HTTP_BACKOFF_BASE_SECONDS", 0.5))
        cap = max(base, _config_float("HTTP_BACKOFF_MAX_SECONDS", 8.0))
        jitter = max(0.0, _config_float("HTTP_JITTER_SECONDS", 0.25))
        exp = min(cap, base * (2 ** max(0, attempt - 1)))
        if status == 429:
            exp = cap
        return max(0.01, exp + random.uniform(0.0, jitter))

    async def request(
        self,
        method: str,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        data: str | bytes | None = None,
        headers: dict[str, str] | None = None,
        accept_statuses: tuple[int, ...] = (),
        max_attempts: int | None = None,
    ) -> HttpResult:
        """Send a request and return the body as text (`data`) on 2xx or accepted statuses."""
        attempts = max(1, int(max_attempts or int(getattr(config, "HTTP_RETRY_ATTEMPTS", 3) or 3)))
        req_headers = dict(self._headers)
        if headers:
            req_headers.update(headers)

        for attempt in range(1, attempts + 1):
            status = 0
            try:
                session = await self._get_session()
                async with session.request(
                    method.upper(), url, params=params, data=data, headers=req_headers
                ) as response:
                    status = int(response.status or 0)
                    body = await response.text()
                    if 200 <= status <= 299 or status in accept_statuses:
                        return HttpResult(ok=True, status=status, data=body)

                    retryable = status == 429 or (500 <= status <= 599)
                    if not retryable or attempt >= attempts:
                        return HttpResult(ok=False, status=status, data=body, error=f"http_status_{status}")
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if attempt >= attempts:
                    return HttpResult(ok=False, status=status, data=None, error=f"http_error:{exc}")

            delay = self._compute_delay(attempt=attempt, status=status)
            logger.debug(
                "HTTP_RETRY source=%s method=%s attempt=%s/%s status=%s delay=%.2fs",
                source,
                method.upper(),
                attempt,
                attempts,
                status,
                delay,
            )
            await asyncio.sleep(delay)

        return HttpResult(ok=False, status=0, data=None, error="http_exhausted")
