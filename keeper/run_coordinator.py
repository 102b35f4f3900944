"""One coordinated keeper run: best-effort KV lock around the finalize pipeline."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from keeper.decision_log import FinalizeDecisionWriter
from keeper.pipeline import PipelineChain, PipelineReport, run_pipeline
from keeper.run_context import KeeperSettings, RunContext, new_run_id
from utils.errors import KVStoreError
from utils.kv_store import KVStore

logger = logging.getLogger(__name__)

LOCK_KEY = "lock"

RUN_SKIPPED_LOCKED = "skipped_locked"
RUN_RACE_LOST = "race_lost"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"

ChainFactory = Callable[[KeeperSettings], PipelineChain]


@dataclass
class RunOutcome:
    status: str
    run_id: str
    tx_count: int = 0
    cursor: int | None = None
    error: str = ""
    report: PipelineReport | None = None


def _default_chain_factory(settings: KeeperSettings) -> PipelineChain:
    from chain.client import LotteryChainClient

    return LotteryChainClient(settings)


async def _release_lock(store: KVStore, run_id: str) -> None:
    try:
        current = await store.get(LOCK_KEY)
        if current == run_id:
            await store.delete(LOCK_KEY)
            logger.info("LOCK_RELEASED run=%s", run_id)
        else:
            logger.warning("LOCK_NOT_RELEASED run=%s holder=%s", run_id, current)
    except KVStoreError as exc:
        logger.warning("LOCK_RELEASE_FAILED run=%s err=%s ttl_expiry_pending=true", run_id, exc)


async def run_once(
    store: KVStore,
    *,
    settings: KeeperSettings | None = None,
    chain_factory: ChainFactory | None = None,
    decisions: FinalizeDecisionWriter | None = None,
    run_id: str | None = None,
    dry_run: bool = False,
    clock: Callable[[], float] = time.monotonic,
) -> RunOutcome:
    """Acquire the lock, run the pipeline, release the lock if it is still ours.

    Lock-store errors during acquisition propagate to the caller. Everything
    raised once the lock is confirmed is logged and reported as a failed run.
    """
    started = clock()
    run_id = run_id or new_run_id()
    if settings is None:
        settings = KeeperSettings.from_config(dry_run=dry_run)

    holder = await store.get(LOCK_KEY)
    if holder is not None:
        logger.info("LOCK_HELD run=%s holder=%s", run_id, holder)
        return RunOutcome(status=RUN_SKIPPED_LOCKED, run_id=run_id)

    await store.put(LOCK_KEY, run_id, ttl_seconds=settings.lock_ttl_sec)
    confirmed = await store.get(LOCK_KEY)
    if confirmed != run_id:
        logger.info("LOCK_RACE_LOST run=%s holder=%s", run_id, confirmed)
        return RunOutcome(status=RUN_RACE_LOST, run_id=run_id)

    logger.info("RUN_START run=%s dry_run=%s", run_id, settings.dry_run)
    ctx = RunContext.start(settings, run_id=run_id, started_monotonic=started, clock=clock)
    outcome = RunOutcome(status=RUN_COMPLETED, run_id=run_id)
    try:
        settings.validate()
        chain = (chain_factory or _default_chain_factory)(settings)
        report = await run_pipeline(ctx, chain, store, decisions=decisions)
        outcome.report = report
        outcome.cursor = report.cursor
    except Exception as exc:
        logger.exception("RUN_FAILED run=%s err=%s", run_id, exc)
        outcome.status = RUN_FAILED
        outcome.error = str(exc) or exc.__class__.__name__
    finally:
        await _release_lock(store, run_id)

    outcome.tx_count = ctx.tx_count
    elapsed_ms = ctx.budget.elapsed_ms()
    logger.info(
        "RUN_END run=%s status=%s tx_count=%s cursor=%s elapsed_ms=%.0f",
        run_id,
        outcome.status,
        outcome.tx_count,
        outcome.cursor,
        elapsed_ms,
    )
    if decisions is not None:
        report = outcome.report
        decisions.write_summary(
            {
                "run_id": run_id,
                "status": outcome.status,
                "tx_count": outcome.tx_count,
                "candidates": report.candidates if report else 0,
                "open": report.open_count if report else 0,
                "eligible": report.eligible if report else 0,
                "cursor": outcome.cursor,
                "stopped_by": report.stopped_by if report else None,
                "elapsed_ms": round(elapsed_ms, 1),
                "dry_run": settings.dry_run,
                "error": outcome.error,
            }
        )
    return outcome
