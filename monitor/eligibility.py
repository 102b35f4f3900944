"""Lottery finalization eligibility rules."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any


class LotteryStatus(IntEnum):
    FUNDING_PENDING = 0
    OPEN = 1
    DRAWING = 2
    COMPLETED = 3
    CANCELED = 4

    @classmethod
    def parse(cls, raw: Any) -> "LotteryStatus | None":
        """Map a raw on-chain status to the enum; failed reads and unknown values give None."""
        if raw is None:
            return None
        try:
            return cls(int(raw))
        except (TypeError, ValueError):
            return None


@dataclass(frozen=True)
class CandidateSnapshot:
    address: str
    status: LotteryStatus
    paused: bool
    deadline: int
    sold: int
    max_tickets: int
    entropy: str
    entropy_provider: str

    @staticmethod
    def from_reads(address: str, status: LotteryStatus, row: dict[str, Any]) -> "CandidateSnapshot":
        return CandidateSnapshot(
            address=address,
            status=status,
            paused=bool(row["paused"]),
            deadline=int(row["deadline"]),
            sold=int(row["sold"]),
            max_tickets=int(row["max_tickets"]),
            entropy=str(row["entropy"]),
            entropy_provider=str(row["entropy_provider"]),
        )


@dataclass(frozen=True)
class EligibilityDecision:
    eligible: bool
    reason: str
    is_expired: bool = False
    is_full: bool = False


def is_open(status: LotteryStatus | int | None) -> bool:
    return LotteryStatus.parse(status) is LotteryStatus.OPEN


def evaluate(snapshot: CandidateSnapshot, now: int, *, skip_zero_sold: bool = False) -> EligibilityDecision:
    if snapshot.paused:
        return EligibilityDecision(eligible=False, reason="paused")
    is_expired = int(now) >= int(snapshot.deadline)
    is_full = snapshot.max_tickets > 0 and snapshot.sold >= snapshot.max_tickets
    if not (is_expired or is_full):
        return EligibilityDecision(eligible=False, reason="not_due")
    if skip_zero_sold and snapshot.sold == 0:
        return EligibilityDecision(eligible=False, reason="zero_sold", is_expired=is_expired, is_full=is_full)
    reason = "expired" if is_expired else "full"
    if is_expired and is_full:
        reason = "expired_full"
    return EligibilityDecision(eligible=True, reason=reason, is_expired=is_expired, is_full=is_full)


def is_eligible(snapshot: CandidateSnapshot, now: int, *, skip_zero_sold: bool = False) -> bool:
    """Expired or sold out, and not paused."""
    return evaluate(snapshot, now, skip_zero_sold=skip_zero_sold).eligible
