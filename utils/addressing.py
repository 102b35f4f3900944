"""Address normalization helpers."""

from __future__ import annotations

from typing import Iterable

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_address(value: str | None) -> str:
    """Normalize on-chain address keys for internal maps/dedup."""
    return str(value or "").strip().lower()


def attempt_key(address: str) -> str:
    return f"attempt:{normalize_address(address)}"


def dedupe_addresses(*batches: Iterable[str]) -> list[str]:
    """Merge address batches, dropping case-insensitive duplicates and zero addresses.

    First-seen order is preserved; the original spelling of the first occurrence is kept.
    """
    seen: set[str] = set()
    out: list[str] = []
    for batch in batches:
        for raw in batch or []:
            key = normalize_address(raw)
            if not key or key == ZERO_ADDRESS or key in seen:
                continue
            seen.add(key)
            out.append(str(raw).strip())
    return out
