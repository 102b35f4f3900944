"""Idempotent finalize() submission with one stale-fee retry and explicit nonces."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Protocol

from chain.client import describe_chain_error
from keeper.decision_log import FinalizeDecisionWriter
from keeper.run_context import RunContext
from monitor.eligibility import CandidateSnapshot
from utils.addressing import attempt_key
from utils.errors import TxBroadcastError
from utils.kv_store import KVStore

logger = logging.getLogger(__name__)

TX_SENT = "sent"
TX_DRY_RUN = "dry_run"
TX_SKIPPED_RECENT_ATTEMPT = "skipped_recent_attempt"
TX_SIMULATION_FAILED = "simulation_failed"
TX_SUBMIT_FAILED = "submit_failed"

STALE_FEE_MARKERS: tuple[str, ...] = ("insufficient fee", "insufficientfee")


def is_stale_fee_error(message: str | None) -> bool:
    """True when a revert message says the attached oracle fee was too low."""
    lowered = str(message or "").lower()
    return any(marker in lowered for marker in STALE_FEE_MARKERS)


class FinalizeChain(Protocol):
    async def get_entropy_fee(self, entropy: str, provider: str) -> int: ...

    async def simulate_finalize(self, lottery: str, value_wei: int) -> None: ...

    async def send_finalize(self, lottery: str, value_wei: int, nonce: int) -> str: ...


@dataclass
class TxResult:
    lottery: str
    status: str
    tx_hash: str = ""
    value_wei: int = 0
    nonce: int | None = None
    retried: bool = False
    error: str = ""

    @property
    def sent(self) -> bool:
        return self.status == TX_SENT


class FinalizeSubmitter:
    def __init__(
        self,
        chain: FinalizeChain,
        store: KVStore,
        ctx: RunContext,
        decisions: FinalizeDecisionWriter | None = None,
    ) -> None:
        self.chain = chain
        self.store = store
        self.ctx = ctx
        self.decisions = decisions

    def _record(self, stage: str, decision: str, reason: str, lottery: str, **extra: object) -> None:
        if self.decisions is None:
            return
        self.decisions.write(
            {
                "run_id": self.ctx.run_id,
                "lottery": lottery,
                "decision_stage": stage,
                "decision": decision,
                "reason": reason,
                **extra,
            }
        )

    async def _simulate(self, candidate: CandidateSnapshot, fee: int) -> tuple[int, bool, str]:
        """Return (value used, whether the fee was refreshed, error message or "")."""
        lottery = candidate.address
        try:
            await self.chain.simulate_finalize(lottery, fee)
            return fee, False, ""
        except Exception as exc:
            message = describe_chain_error(exc)
        if not is_stale_fee_error(message):
            return fee, False, message

        refreshed = await self.ctx.fee_cache.resolve(
            candidate.entropy,
            candidate.entropy_provider,
            self.chain.get_entropy_fee,
            refresh=True,
        )
        logger.warning(
            "STALE_FEE_RETRY lottery=%s old_fee=%s new_fee=%s err=%s",
            lottery,
            fee,
            refreshed,
            message,
        )
        self._record("simulate", "retry", "stale_fee_retry", lottery, fee_wei=refreshed)
        try:
            await self.chain.simulate_finalize(lottery, refreshed)
            return refreshed, True, ""
        except Exception as exc:
            return refreshed, True, describe_chain_error(exc)

    async def submit(self, candidate: CandidateSnapshot) -> TxResult:
        lottery = candidate.address
        key = attempt_key(lottery)
        if await self.store.get(key) is not None:
            logger.info("FINALIZE_SKIP_RECENT_ATTEMPT lottery=%s", lottery)
            self._record("idempotency", "skip", "recent_attempt", lottery)
            return TxResult(lottery=lottery, status=TX_SKIPPED_RECENT_ATTEMPT)

        # Marked before simulation: skipping a retry for one TTL beats paying the fee twice.
        await self.store.put(key, str(int(time.time() * 1000)), ttl_seconds=self.ctx.settings.attempt_ttl_sec)

        value = 0
        retried = False
        try:
            fee = await self.ctx.fee_cache.resolve(
                candidate.entropy,
                candidate.entropy_provider,
                self.chain.get_entropy_fee,
            )
            value, retried, sim_error = await self._simulate(candidate, fee)
            if sim_error:
                logger.warning("FINALIZE_SIM_FAILED lottery=%s retried=%s err=%s", lottery, retried, sim_error)
                self._record("simulate", "skip", "simulation_failed", lottery, value_wei=value, error=sim_error)
                return TxResult(
                    lottery=lottery,
                    status=TX_SIMULATION_FAILED,
                    value_wei=value,
                    retried=retried,
                    error=sim_error,
                )

            if self.ctx.settings.dry_run:
                logger.info("FINALIZE_DRY_RUN lottery=%s value_wei=%s", lottery, value)
                self._record("submit", "skip", "dry_run", lottery, value_wei=value)
                return TxResult(lottery=lottery, status=TX_DRY_RUN, value_wei=value, retried=retried)

            nonce = self.ctx.current_nonce()
            try:
                tx_hash = await self.chain.send_finalize(lottery, value, nonce)
            except TxBroadcastError:
                # The node may have accepted it; the next send must not reuse this nonce.
                self.ctx.skip_nonce()
                raise
            self.ctx.record_sent()
        except Exception as exc:
            # Attempt record stays until its TTL expires.
            message = describe_chain_error(exc)
            logger.warning("FINALIZE_SUBMIT_FAILED lottery=%s err=%s", lottery, message)
            self._record("submit", "fail", "submit_failed", lottery, value_wei=value, error=message)
            return TxResult(
                lottery=lottery,
                status=TX_SUBMIT_FAILED,
                value_wei=value,
                retried=retried,
                error=message,
            )

        logger.info("FINALIZE_SENT lottery=%s tx=%s nonce=%s value_wei=%s", lottery, tx_hash, nonce, value)
        self._record("submit", "sent", "sent", lottery, value_wei=value, nonce=nonce, tx_hash=tx_hash)
        return TxResult(
            lottery=lottery,
            status=TX_SENT,
            tx_hash=tx_hash,
            value_wei=value,
            nonce=nonce,
            retried=retried,
        )
