"""Run-scoped memo of entropy oracle fees."""

from __future__ import annotations

from typing import Awaitable, Callable

from utils.addressing import normalize_address


class FeeCache:
    def __init__(self) -> None:
        self._fees: dict[tuple[str, str], int] = {}

    @staticmethod
    def key(entropy: str, provider: str) -> tuple[str, str]:
        return normalize_address(entropy), normalize_address(provider)

    def get(self, entropy: str, provider: str) -> int | None:
        return self._fees.get(self.key(entropy, provider))

    def set(self, entropy: str, provider: str, fee_wei: int) -> None:
        self._fees[self.key(entropy, provider)] = int(fee_wei)

    async def resolve(
        self,
        entropy: str,
        provider: str,
        fetch: Callable[[str, str], Awaitable[int]],
        *,
        refresh: bool = False,
    ) -> int:
        """Return the cached fee, reading it live through `fetch` on a miss or when `refresh` is set."""
        if not refresh:
            cached = self.get(entropy, provider)
            if cached is not None:
                return cached
        fee = int(await fetch(entropy, provider))
        self.set(entropy, provider, fee)
        return fee

    def __len__(self) -> int:
        return len(self._fees)
