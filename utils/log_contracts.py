"""Stable log contracts for keeper decision rows."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

LOG_SCHEMA_VERSION = "2026-10-01.v1"

SCHEMA_FINALIZE_DECISION = "finalize_decision.v1"
SCHEMA_RUN_SUMMARY = "run_summary.v1"

_STAGE_PREFIX: dict[str, str] = {
    "eligibility": "ELIG",
    "idempotency": "IDEM",
    "simulate": "SIM",
    "submit": "EXEC",
    "budget": "BUDGET",
    "run": "RUN",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "paused": "ELIG_PAUSED",
    "not_due": "ELIG_NOT_DUE",
    "zero_sold": "ELIG_ZERO_SOLD",
    "expired": "ELIG_EXPIRED",
    "full": "ELIG_FULL",
    "expired_full": "ELIG_EXPIRED_FULL",
    "recent_attempt": "IDEM_RECENT_ATTEMPT",
    "stale_fee_retry": "SIM_STALE_FEE_RETRY",
    "simulation_failed": "SIM_FAILED",
    "sent": "EXEC_TX_SENT",
    "dry_run": "EXEC_DRY_RUN",
    "submit_failed": "EXEC_SUBMIT_FAILED",
    "tx_budget": "BUDGET_TX",
    "time_budget": "BUDGET_TIME",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "ELIG_PAUSED": {"severity": "INFO", "category": "eligibility", "title": "Lottery paused"},
    "ELIG_NOT_DUE": {"severity": "INFO", "category": "eligibility", "title": "Neither expired nor full"},
    "ELIG_ZERO_SOLD": {"severity": "INFO", "category": "eligibility", "title": "Zero tickets sold"},
    "ELIG_EXPIRED": {"severity": "INFO", "category": "eligibility", "title": "Deadline passed"},
    "ELIG_FULL": {"severity": "INFO", "category": "eligibility", "title": "Ticket cap reached"},
    "ELIG_EXPIRED_FULL": {"severity": "INFO", "category": "eligibility", "title": "Deadline passed and cap reached"},
    "IDEM_RECENT_ATTEMPT": {"severity": "INFO", "category": "idempotency", "title": "Recent attempt record present"},
    "SIM_STALE_FEE_RETRY": {"severity": "WARN", "category": "simulate", "title": "Fee refreshed after stale-fee revert"},
    "SIM_FAILED": {"severity": "WARN", "category": "simulate", "title": "Simulation reverted"},
    "EXEC_TX_SENT": {"severity": "INFO", "category": "execute", "title": "Finalize transaction sent"},
    "EXEC_DRY_RUN": {"severity": "INFO", "category": "execute", "title": "Dry run, transaction not sent"},
    "EXEC_SUBMIT_FAILED": {"severity": "WARN", "category": "execute", "title": "Finalize submission failed"},
    "BUDGET_TX": {"severity": "INFO", "category": "budget", "title": "Transaction budget exhausted"},
    "BUDGET_TIME": {"severity": "INFO", "category": "budget", "title": "Time budget exhausted"},
}


def _as_ts(value: Any) -> float:
    if value is None or value == "":
        return datetime.now(timezone.utc).timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    except ValueError:
        return datetime.now(timezone.utc).timestamp()


def _iso_from_ts(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def _normalize_address(value: Any) -> str:
    raw = str(value or "").strip().lower()
    if len(raw) == 42 and raw.startswith("0x"):
        return raw
    return ""


def _normalize_reason_text(value: Any) -> str:
    text = str(value or "").strip().lower()
    if not text:
        return ""
    text = re.sub(r"[^a-z0-9]+", "_", text)
    return re.sub(r"_+", "_", text).strip("_")


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    text = re.sub(r"_+", "_", text).strip("_")
    return text or "UNKNOWN"


def _stage_prefix(value: Any) -> str:
    stage = _normalize_reason_text(value) or "unknown"
    return _STAGE_PREFIX.get(stage, "UNKNOWN")


def reason_code_for_event(*, reason: Any, decision_stage: Any = "", decision: Any = "") -> str:
    normalized_reason = _normalize_reason_text(reason)
    if not normalized_reason:
        normalized_decision = _normalize_reason_text(decision)
        if normalized_decision:
            return f"{_stage_prefix(decision_stage)}_{_sanitize_code_token(normalized_decision)}"
        return "UNKNOWN"
    override = _REASON_CODE_OVERRIDES.get(normalized_reason)
    if override:
        return override
    return f"{_stage_prefix(decision_stage)}_{_sanitize_code_token(normalized_reason)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {
        "severity": "INFO",
        "category": "unknown",
        "title": key.replace("_", " ").title(),
    }


def _digest_seed(*parts: Any) -> str:
    seed = "|".join(str(p or "").strip() for p in parts)
    return hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()


def stamp_event(
    event: dict[str, Any],
    *,
    schema_name: str,
    event_type: str,
    run_tag: str = "",
) -> dict[str, Any]:
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts", payload.get("timestamp")))
    payload["ts"] = float(ts)
    payload["timestamp"] = str(payload.get("timestamp", "") or _iso_from_ts(ts))
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", schema_name)
    payload.setdefault("event_type", str(event_type or "event"))
    if run_tag:
        payload.setdefault("run_tag", str(run_tag))
    run_id = str(payload.get("run_id", "") or "")
    address = _normalize_address(payload.get("lottery", payload.get("address", "")))
    # One trace per lottery per run: every stage of the same attempt shares it.
    payload["trace_id"] = str(payload.get("trace_id", "") or f"tr_{_digest_seed(run_id, address)[:20]}")
    payload["decision_id"] = str(
        payload.get("decision_id", "")
        or "dec_"
        + _digest_seed(
            payload.get("run_tag", run_tag),
            payload["trace_id"],
            payload.get("decision_stage", ""),
            payload.get("decision", ""),
            payload.get("reason", ""),
            f"{ts:.6f}",
        )[:20]
    )
    return payload


def finalize_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(
        event,
        schema_name=SCHEMA_FINALIZE_DECISION,
        event_type=str((event or {}).get("event_type", "finalize_decision")),
        run_tag=run_tag,
    )
    payload.setdefault("run_id", "")
    payload.setdefault("decision_stage", "unknown")
    payload.setdefault("decision", "unknown")
    payload["reason"] = str(payload.get("reason", "") or "")
    payload["lottery"] = _normalize_address(payload.get("lottery", payload.get("address", "")))
    payload.pop("address", None)
    for key in ("fee_wei", "value_wei", "nonce", "sold", "max_tickets", "deadline"):
        if key in payload and payload[key] is not None:
            payload[key] = str(int(payload[key]))
    payload["reason_code"] = str(
        payload.get("reason_code", "")
        or reason_code_for_event(
            reason=payload.get("reason", ""),
            decision_stage=payload.get("decision_stage", ""),
            decision=payload.get("decision", ""),
        )
    ).strip().upper()
    meta = reason_code_meta(payload["reason_code"])
    payload["reason_severity"] = str(payload.get("reason_severity", meta.get("severity", "INFO")) or "INFO")
    payload["reason_category"] = str(payload.get("reason_category", meta.get("category", "unknown")) or "unknown")
    return payload


def run_summary_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(
        event,
        schema_name=SCHEMA_RUN_SUMMARY,
        event_type=str((event or {}).get("event_type", "run_summary")),
        run_tag=run_tag,
    )
    payload.setdefault("decision_stage", "run")
    payload["status"] = str(payload.get("status", "unknown") or "unknown")
    payload["tx_count"] = int(payload.get("tx_count", 0) or 0)
    payload["candidates"] = int(payload.get("candidates", 0) or 0)
    return payload
