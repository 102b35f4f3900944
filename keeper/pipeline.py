"""Scan → filter → evaluate → submit pipeline for one coordinated run."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from keeper.decision_log import FinalizeDecisionWriter
from keeper.finalize_executor import FinalizeChain, FinalizeSubmitter, TxResult
from keeper.run_context import RunContext
from monitor.eligibility import CandidateSnapshot, LotteryStatus, evaluate, is_open
from monitor.registry_scanner import CURSOR_KEY, RegistryScanner, parse_cursor
from utils.kv_store import KVStore

logger = logging.getLogger(__name__)


class PipelineChain(FinalizeChain, Protocol):
    async def get_lottery_count(self) -> int: ...

    async def get_lottery_page(self, start: int, limit: int) -> list[str]: ...

    async def get_pending_nonce(self) -> int: ...

    async def read_statuses(self, addresses: list[str]) -> list[int | None]: ...

    async def read_details(self, addresses: list[str]) -> list[dict[str, Any] | None]: ...


@dataclass
class PipelineReport:
    total: int = 0
    candidates: int = 0
    open_count: int = 0
    evaluated: int = 0
    eligible: int = 0
    results: list[TxResult] = field(default_factory=list)
    stopped_by: str | None = None
    cursor: int | None = None

    @property
    def sent(self) -> int:
        return sum(1 for r in self.results if r.sent)


def chunked(items: list[str], size: int) -> list[list[str]]:
    step = max(1, int(size))
    return [items[i : i + step] for i in range(0, len(items), step)]


def _eligibility_row(ctx: RunContext, snapshot: CandidateSnapshot, reason: str, decision: str) -> dict[str, Any]:
    return {
        "run_id": ctx.run_id,
        "lottery": snapshot.address,
        "decision_stage": "eligibility",
        "decision": decision,
        "reason": reason,
        "deadline": snapshot.deadline,
        "sold": snapshot.sold,
        "max_tickets": snapshot.max_tickets,
    }


async def _persist_cursor(store: KVStore, report: PipelineReport, value: int) -> None:
    await store.put(CURSOR_KEY, str(int(value)))
    report.cursor = int(value)


async def run_pipeline(
    ctx: RunContext,
    chain: PipelineChain,
    store: KVStore,
    *,
    decisions: FinalizeDecisionWriter | None = None,
    clock: Callable[[], float] = time.time,
) -> PipelineReport:
    settings = ctx.settings
    report = PipelineReport()

    total = int(await chain.get_lottery_count())
    report.total = total
    if total <= 0:
        logger.info("REGISTRY_EMPTY run=%s", ctx.run_id)
        return report

    cursor = parse_cursor(await store.get(CURSOR_KEY))
    scanner = RegistryScanner(chain, hot_size=settings.hot_size, cold_size=settings.cold_size)
    scan = await scanner.scan(total, cursor)
    report.candidates = len(scan.candidates)
    if not scan.candidates:
        logger.info("NO_CANDIDATES run=%s", ctx.run_id)
        await _persist_cursor(store, report, scan.next_cursor)
        return report

    statuses = await chain.read_statuses(scan.candidates)
    open_lotteries = [addr for addr, status in zip(scan.candidates, statuses) if is_open(status)]
    report.open_count = len(open_lotteries)
    if not open_lotteries:
        logger.info("NO_OPEN_LOTTERIES run=%s candidates=%s", ctx.run_id, len(scan.candidates))
        await _persist_cursor(store, report, scan.next_cursor)
        return report

    logger.info("OPEN_LOTTERIES run=%s count=%s", ctx.run_id, len(open_lotteries))
    ctx.nonce = int(await chain.get_pending_nonce())
    submitter = FinalizeSubmitter(chain, store, ctx, decisions)

    for chunk in chunked(open_lotteries, settings.detail_chunk_size):
        report.stopped_by = ctx.budget_exhausted()
        if report.stopped_by:
            break

        now = int(clock())
        rows = await chain.read_details(chunk)
        for lottery, row in zip(chunk, rows):
            report.stopped_by = ctx.budget_exhausted()
            if report.stopped_by:
                break
            if row is None:
                logger.debug("DETAIL_READ_INCONCLUSIVE lottery=%s", lottery)
                continue

            snapshot = CandidateSnapshot.from_reads(lottery, LotteryStatus.OPEN, row)
            decision = evaluate(snapshot, now, skip_zero_sold=settings.skip_zero_sold)
            report.evaluated += 1
            if not decision.eligible:
                logger.debug("NOT_ELIGIBLE lottery=%s reason=%s", lottery, decision.reason)
                # not_due rows are omitted.
                if decision.reason != "not_due" and decisions is not None:
                    decisions.write(_eligibility_row(ctx, snapshot, decision.reason, "skip"))
                continue

            report.eligible += 1
            if decisions is not None:
                decisions.write(_eligibility_row(ctx, snapshot, decision.reason, "finalize"))
            logger.info(
                "FINALIZE_ELIGIBLE lottery=%s expired=%s full=%s sold=%s max=%s",
                lottery,
                decision.is_expired,
                decision.is_full,
                snapshot.sold,
                snapshot.max_tickets,
            )
            report.results.append(await submitter.submit(snapshot))
        if report.stopped_by:
            break

    if report.stopped_by:
        logger.info(
            "BUDGET_STOP run=%s budget=%s tx_count=%s elapsed_ms=%.0f",
            ctx.run_id,
            report.stopped_by,
            ctx.tx_count,
            ctx.budget.elapsed_ms(),
        )
        if decisions is not None:
            decisions.write(
                {
                    "run_id": ctx.run_id,
                    "decision_stage": "budget",
                    "decision": "stop",
                    "reason": report.stopped_by,
                    "tx_count": ctx.tx_count,
                }
            )
    await _persist_cursor(store, report, scan.next_cursor)
    return report
