"""Cooperative transaction-count and wall-clock ceilings for one run."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

BUDGET_TX = "tx_budget"
BUDGET_TIME = "time_budget"


@dataclass
class BudgetGovernor:
    max_tx: int
    time_budget_ms: int
    started_monotonic: float
    clock: Callable[[], float] = time.monotonic

    def elapsed_ms(self) -> float:
        return (self.clock() - self.started_monotonic) * 1000.0

    def exhausted(self, tx_count: int) -> str | None:
        """Return the name of the exhausted budget, or None while work may continue.

        Advisory only: a candidate already being submitted is allowed to finish.
        """
        if int(tx_count) >= int(self.max_tx):
            return BUDGET_TX
        if self.elapsed_ms() > float(self.time_budget_ms):
            return BUDGET_TIME
        return None
