"""JSONL sink for per-lottery finalize decisions and run summaries."""

from __future__ import annotations

import json
import logging
import os
from typing import Any

import config
from utils.log_contracts import finalize_decision_event, run_summary_event

logger = logging.getLogger(__name__)


class FinalizeDecisionWriter:
    def __init__(self, path: str | None = None, *, enabled: bool | None = None) -> None:
        self.enabled = bool(config.FINALIZE_DECISIONS_LOG_ENABLED if enabled is None else enabled)
        raw = str(path or config.FINALIZE_DECISIONS_LOG_FILE or "").strip()
        if not raw:
            raw = os.path.join("logs", "finalize_decisions.jsonl")
        self.path = os.path.abspath(raw)
        self.run_tag = str(getattr(config, "RUN_TAG", "") or "")

    def _append(self, row: dict[str, Any]) -> None:
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(row, ensure_ascii=False, sort_keys=False) + "\n")
        except OSError:
            logger.exception("DECISION_LOG write failed path=%s", self.path)

    def write(self, event: dict[str, Any]) -> dict[str, Any]:
        row = finalize_decision_event(dict(event), run_tag=self.run_tag)
        if self.enabled:
            self._append(row)
        return row

    def write_summary(self, event: dict[str, Any]) -> dict[str, Any]:
        row = run_summary_event(dict(event), run_tag=self.run_tag)
        if self.enabled:
            self._append(row)
        return row
