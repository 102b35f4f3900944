"""Registry scanning: a hot window over the newest lotteries plus a rotating cold window."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from utils.addressing import dedupe_addresses

logger = logging.getLogger(__name__)

CURSOR_KEY = "cursor"


class RegistryReader(Protocol):
    async def get_lottery_page(self, start: int, limit: int) -> list[str]: ...


@dataclass(frozen=True)
class ScanWindow:
    start: int
    size: int

    @property
    def end(self) -> int:
        return self.start + self.size


@dataclass
class ScanResult:
    total: int
    hot: ScanWindow
    cold: ScanWindow
    next_cursor: int
    candidates: list[str] = field(default_factory=list)


def parse_cursor(raw: Any) -> int:
    """Stored cursor as a non-negative int; missing or junk values restart at 0."""
    try:
        return max(0, int(str(raw).strip()))
    except (TypeError, ValueError):
        return 0


def hot_window(total: int, hot_size: int) -> ScanWindow:
    start = max(0, int(total) - max(0, int(hot_size)))
    return ScanWindow(start=start, size=int(total) - start)


def cold_window(total: int, cursor: int, cold_size: int) -> ScanWindow:
    start = int(cursor)
    if start >= total or start < 0:
        start = 0
    size = min(max(0, int(cold_size)), int(total) - start)
    return ScanWindow(start=start, size=size)


def next_cursor(total: int, cold: ScanWindow) -> int:
    nxt = cold.end
    return 0 if nxt >= total else nxt


class RegistryScanner:
    def __init__(self, reader: RegistryReader, *, hot_size: int, cold_size: int) -> None:
        self.reader = reader
        self.hot_size = int(hot_size)
        self.cold_size = int(cold_size)

    async def _fetch(self, window: ScanWindow) -> list[str]:
        if window.size <= 0:
            return []
        return await self.reader.get_lottery_page(window.start, window.size)

    async def scan(self, total: int, cursor: int) -> ScanResult:
        """Fetch both windows concurrently and merge them. The caller persists `next_cursor`."""
        hot = hot_window(total, self.hot_size)
        cold = cold_window(total, cursor, self.cold_size)
        logger.info(
            "SCAN_WINDOWS hot=[%s..%s) cold=[%s..%s) total=%s",
            hot.start,
            hot.end,
            cold.start,
            cold.end,
            total,
        )
        hot_batch, cold_batch = await asyncio.gather(self._fetch(hot), self._fetch(cold))
        candidates = dedupe_addresses(hot_batch, cold_batch)
        return ScanResult(
            total=int(total),
            hot=hot,
            cold=cold,
            next_cursor=next_cursor(total, cold),
            candidates=candidates,
        )
