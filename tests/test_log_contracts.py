from __future__ import annotations

import json
import os
import tempfile
import unittest

from keeper.decision_log import FinalizeDecisionWriter
from utils import log_contracts

LOTTERY = "0x1111111111111111111111111111111111111111"


class LogContractsTests(unittest.TestCase):
    def test_finalize_event_adds_trace_and_reason_code(self) -> None:
        row = log_contracts.finalize_decision_event(
            {
                "run_id": "run-1",
                "decision_stage": "idempotency",
                "decision": "skip",
                "reason": "recent_attempt",
                "lottery": LOTTERY.upper().replace("0X", "0x"),
            },
            run_tag="keeper_a",
        )
        self.assertTrue(row["trace_id"].startswith("tr_"))
        self.assertTrue(str(row.get("decision_id", "")).startswith("dec_"))
        self.assertEqual(row["reason_code"], "IDEM_RECENT_ATTEMPT")
        self.assertEqual(row["reason_category"], "idempotency")
        self.assertEqual(row["lottery"], LOTTERY)
        self.assertEqual(row["schema_name"], "finalize_decision.v1")

    def test_trace_id_is_shared_per_run_and_lottery(self) -> None:
        first = log_contracts.finalize_decision_event({"run_id": "r", "lottery": LOTTERY, "reason": "stale_fee_retry"})
        second = log_contracts.finalize_decision_event({"run_id": "r", "lottery": LOTTERY, "reason": "sent"})
        other_run = log_contracts.finalize_decision_event({"run_id": "r2", "lottery": LOTTERY, "reason": "sent"})
        self.assertEqual(first["trace_id"], second["trace_id"])
        self.assertNotEqual(first["trace_id"], other_run["trace_id"])

    def test_wei_amounts_are_serialized_as_strings(self) -> None:
        row = log_contracts.finalize_decision_event(
            {"lottery": LOTTERY, "reason": "sent", "value_wei": 10**24, "nonce": 9}
        )
        self.assertEqual(row["value_wei"], str(10**24))
        self.assertEqual(row["nonce"], "9")
        self.assertEqual(row["reason_code"], "EXEC_TX_SENT")

    def test_unknown_reason_falls_back_to_stage_prefix(self) -> None:
        row = log_contracts.finalize_decision_event(
            {"decision_stage": "simulate", "decision": "skip", "reason": "Gas Estimate Failed"}
        )
        self.assertEqual(row["reason_code"], "SIM_GAS_ESTIMATE_FAILED")
        self.assertEqual(row["reason_category"], "unknown")

    def test_run_summary_event(self) -> None:
        row = log_contracts.run_summary_event({"run_id": "r", "status": "completed", "tx_count": 2})
        self.assertEqual(row["schema_name"], "run_summary.v1")
        self.assertEqual(row["decision_stage"], "run")
        self.assertEqual(row["tx_count"], 2)
        self.assertEqual(row["candidates"], 0)


class FinalizeDecisionWriterTests(unittest.TestCase):
    def test_disabled_writer_returns_row_without_writing(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "decisions.jsonl")
            row = FinalizeDecisionWriter(path, enabled=False).write({"lottery": LOTTERY, "reason": "sent"})
            self.assertEqual(row["reason_code"], "EXEC_TX_SENT")
            self.assertFalse(os.path.exists(path))

    def test_rows_are_appended(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "nested", "decisions.jsonl")
            writer = FinalizeDecisionWriter(path, enabled=True)
            writer.write({"lottery": LOTTERY, "reason": "dry_run", "decision_stage": "submit"})
            writer.write_summary({"run_id": "r", "status": "completed"})
            with open(path, "r", encoding="utf-8") as f:
                rows = [json.loads(line) for line in f]
        self.assertEqual([r["schema_name"] for r in rows], ["finalize_decision.v1", "run_summary.v1"])

    def test_write_failure_is_logged_not_raised(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            # A directory where the file should be makes open() fail.
            path = os.path.join(tmp_dir, "decisions.jsonl")
            os.makedirs(path)
            writer = FinalizeDecisionWriter(path, enabled=True)
            with self.assertLogs("keeper.decision_log", level="ERROR"):
                writer.write({"lottery": LOTTERY, "reason": "sent"})


if __name__ == "__main__":
    unittest.main()
