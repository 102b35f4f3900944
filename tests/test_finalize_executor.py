from __future__ import annotations

import json
import os
import tempfile
import unittest

from keeper.decision_log import FinalizeDecisionWriter
from keeper.finalize_executor import (
    TX_DRY_RUN,
    TX_SENT,
    TX_SIMULATION_FAILED,
    TX_SKIPPED_RECENT_ATTEMPT,
    TX_SUBMIT_FAILED,
    FinalizeSubmitter,
    is_stale_fee_error,
)
from keeper_fakes import ENTROPY, PROVIDER, FakeChain, addr, detail_row, make_ctx
from monitor.eligibility import CandidateSnapshot, LotteryStatus
from utils.addressing import attempt_key
from utils.errors import TxBroadcastError
from utils.kv_store import MemoryKVStore


def _candidate(i: int = 1) -> CandidateSnapshot:
    return CandidateSnapshot.from_reads(addr(i), LotteryStatus.OPEN, detail_row(deadline=0, sold=3))


class StaleFeeClassifierTests(unittest.TestCase):
    def test_matches_both_spellings_case_insensitively(self) -> None:
        self.assertTrue(is_stale_fee_error("execution reverted: Insufficient fee"))
        self.assertTrue(is_stale_fee_error("InsufficientFee: need 120, got 100"))
        self.assertTrue(is_stale_fee_error("INSUFFICIENTFEE"))

    def test_other_messages_do_not_match(self) -> None:
        self.assertFalse(is_stale_fee_error("execution reverted: NotReady"))
        self.assertFalse(is_stale_fee_error(""))
        self.assertFalse(is_stale_fee_error(None))


class FinalizeSubmitterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.chain = FakeChain(fee=100, pending_nonce=7)
        self.store = MemoryKVStore()
        self.ctx = make_ctx()
        self.ctx.nonce = 7

    async def test_happy_path_sends_with_exact_fee_and_explicit_nonce(self) -> None:
        submitter = FinalizeSubmitter(self.chain, self.store, self.ctx)

        result = await submitter.submit(_candidate())

        self.assertEqual(result.status, TX_SENT)
        self.assertTrue(result.sent)
        self.assertEqual(self.chain.sent, [(addr(1), 100, 7)])
        self.assertEqual(self.ctx.nonce, 8)
        self.assertEqual(self.ctx.tx_count, 1)
        self.assertIsNotNone(await self.store.get(attempt_key(addr(1))))

    async def test_live_attempt_record_blocks_submission(self) -> None:
        await self.store.put(attempt_key(addr(1).upper().replace("0X", "0x")), "1", ttl_seconds=600)
        submitter = FinalizeSubmitter(self.chain, self.store, self.ctx)

        result = await submitter.submit(_candidate())

        self.assertEqual(result.status, TX_SKIPPED_RECENT_ATTEMPT)
        self.assertEqual(self.chain.simulate_calls, [])
        self.assertEqual(self.chain.sent, [])

    async def test_second_submit_in_same_window_is_skipped(self) -> None:
        submitter = FinalizeSubmitter(self.chain, self.store, self.ctx)
        first = await submitter.submit(_candidate())
        second = await submitter.submit(_candidate())
        self.assertEqual(first.status, TX_SENT)
        self.assertEqual(second.status, TX_SKIPPED_RECENT_ATTEMPT)
        self.assertEqual(len(self.chain.sent), 1)

    async def test_stale_fee_refreshes_cache_and_retries_once(self) -> None:
        self.chain.simulate_errors = [RuntimeError("InsufficientFee: need 120, got 100")]
        submitter = FinalizeSubmitter(self.chain, self.store, self.ctx)
        self.ctx.fee_cache.set(ENTROPY, PROVIDER, 100)
        self.chain.fee = 120

        result = await submitter.submit(_candidate())

        self.assertEqual(result.status, TX_SENT)
        self.assertTrue(result.retried)
        self.assertEqual(self.chain.simulate_calls, [(addr(1), 100), (addr(1), 120)])
        self.assertEqual(self.ctx.fee_cache.get(ENTROPY, PROVIDER), 120)
        self.assertEqual(self.chain.sent, [(addr(1), 120, 7)])

    async def test_stale_fee_twice_is_terminal(self) -> None:
        self.chain.simulate_errors = [
            RuntimeError("execution reverted: insufficient fee"),
            RuntimeError("execution reverted: insufficient fee"),
        ]
        submitter = FinalizeSubmitter(self.chain, self.store, self.ctx)

        result = await submitter.submit(_candidate())

        self.assertEqual(result.status, TX_SIMULATION_FAILED)
        self.assertEqual(len(self.chain.simulate_calls), 2)
        self.assertEqual(self.chain.sent, [])
        self.assertEqual(self.ctx.nonce, 7)

    async def test_other_simulation_failure_is_not_retried(self) -> None:
        self.chain.simulate_errors = [RuntimeError("execution reverted: NotExpired")]
        submitter = FinalizeSubmitter(self.chain, self.store, self.ctx)

        result = await submitter.submit(_candidate())

        self.assertEqual(result.status, TX_SIMULATION_FAILED)
        self.assertFalse(result.retried)
        self.assertEqual(len(self.chain.simulate_calls), 1)
        self.assertEqual(self.chain.fee_reads, 1)

    async def test_send_failure_keeps_nonce_and_attempt_record(self) -> None:
        self.chain.send_error = RuntimeError("gas_price_too_high observed_gwei=200 cap_gwei=100")
        submitter = FinalizeSubmitter(self.chain, self.store, self.ctx)

        result = await submitter.submit(_candidate())

        self.assertEqual(result.status, TX_SUBMIT_FAILED)
        self.assertIn("gas_price_too_high", result.error)
        self.assertEqual(self.ctx.nonce, 7)
        self.assertEqual(self.ctx.tx_count, 0)
        self.assertIsNotNone(await self.store.get(attempt_key(addr(1))))

    async def test_uncertain_broadcast_consumes_nonce(self) -> None:
        self.chain.send_error = TxBroadcastError("broadcast outcome unknown nonce=7: read timed out")
        submitter = FinalizeSubmitter(self.chain, self.store, self.ctx)

        result = await submitter.submit(_candidate(1))

        self.assertEqual(result.status, TX_SUBMIT_FAILED)
        self.assertEqual(self.ctx.nonce, 8)
        self.assertEqual(self.ctx.tx_count, 0)

        self.chain.send_error = None
        second = await submitter.submit(_candidate(2))
        self.assertEqual(second.status, TX_SENT)
        self.assertEqual(self.chain.sent, [(addr(2), 100, 8)])

    async def test_dry_run_simulates_without_sending(self) -> None:
        ctx = make_ctx(dry_run=True)
        submitter = FinalizeSubmitter(self.chain, self.store, ctx)

        result = await submitter.submit(_candidate())

        self.assertEqual(result.status, TX_DRY_RUN)
        self.assertEqual(len(self.chain.simulate_calls), 1)
        self.assertEqual(self.chain.sent, [])
        self.assertIsNotNone(await self.store.get(attempt_key(addr(1))))

    async def test_fee_is_read_once_per_oracle_pair(self) -> None:
        submitter = FinalizeSubmitter(self.chain, self.store, self.ctx)
        await submitter.submit(_candidate(1))
        await submitter.submit(_candidate(2))
        self.assertEqual(self.chain.fee_reads, 1)
        self.assertEqual([nonce for _, _, nonce in self.chain.sent], [7, 8])

    async def test_decisions_are_written_as_jsonl(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "decisions.jsonl")
            writer = FinalizeDecisionWriter(path, enabled=True)
            self.chain.simulate_errors = [RuntimeError("insufficient fee")]
            submitter = FinalizeSubmitter(self.chain, self.store, self.ctx, writer)

            await submitter.submit(_candidate())

            with open(path, "r", encoding="utf-8") as f:
                rows = [json.loads(line) for line in f if line.strip()]
        self.assertEqual([r["reason_code"] for r in rows], ["SIM_STALE_FEE_RETRY", "EXEC_TX_SENT"])
        self.assertEqual(rows[0]["trace_id"], rows[1]["trace_id"])
        self.assertEqual(rows[1]["value_wei"], "100")


if __name__ == "__main__":
    unittest.main()
