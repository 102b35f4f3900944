"""Preflight checks for keeper readiness (read-only, never sends transactions)."""

from __future__ import annotations

import argparse
import json
import os
import statistics
import sys
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from eth_account import Account
from web3 import HTTPProvider, Web3

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from chain.abis import REGISTRY_ABI  # noqa: E402

DEFAULT_RPC_URL = "https://node.mainnet.etherlink.com"
DEFAULT_CHAIN_ID = 42793
DEFAULT_MULTICALL3 = "0xcA11bde05977b3631167028862bE2a173976CA11"


LEVELS = ("error", "warning", "info")


@dataclass
class Finding:
    level: str
    code: str
    message: str


@dataclass
class RpcHealth:
    url: str
    ok: bool = False
    latency_ms: float = 0.0
    chain_id: int | None = None
    block_number: int | None = None
    gas_price_gwei: float | None = None
    error: str = ""


@dataclass
class Report:
    findings: list[Finding] = field(default_factory=list)
    rpc_nodes: list[RpcHealth] = field(default_factory=list)
    summary: dict[str, Any] = field(default_factory=dict)

    def add(self, level: str, code: str, message: str) -> None:
        self.findings.append(Finding(level=level if level in LEVELS else "info", code=code, message=message))

    def by_level(self, level: str) -> list[Finding]:
        return [f for f in self.findings if f.level == level]

    @property
    def errors(self) -> list[Finding]:
        return self.by_level("error")

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "summary": self.summary,
            "rpc_nodes": [asdict(node) for node in self.rpc_nodes],
            "findings": [asdict(f) for f in self.findings],
        }


def _to_int(value: Any, default: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


def _to_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _fmt_node(url: str) -> str:
    trimmed = url.strip()
    if len(trimmed) <= 42:
        return trimmed
    return f"{trimmed[:20]}...{trimmed[-16:]}"


def _rpc_probe(url: str, timeout_s: float) -> RpcHealth:
    out = RpcHealth(url=url)
    started = time.perf_counter()
    try:
        w3 = Web3(HTTPProvider(url, request_kwargs={"timeout": timeout_s}))
        connected = bool(w3.is_connected())
        out.latency_ms = round((time.perf_counter() - started) * 1000.0, 1)
        if not connected:
            out.error = "not_connected"
            return out
        out.chain_id = int(w3.eth.chain_id)
        out.block_number = int(w3.eth.block_number)
        out.gas_price_gwei = float(w3.from_wei(int(w3.eth.gas_price), "gwei"))
        out.ok = True
        return out
    except Exception as exc:
        out.latency_ms = round((time.perf_counter() - started) * 1000.0, 1)
        out.error = str(exc)
        return out


def _load_env(env_file: Path) -> dict[str, str]:
    env = {str(k): str(v) for k, v in dotenv_values(env_file).items() if k is not None and v is not None}
    env_runtime = dict(os.environ)
    for k, v in env.items():
        env_runtime.setdefault(k, v)
    return env_runtime


def _check_static(env: dict[str, str], report: Report) -> tuple[str, str, str, list[str]]:
    for key in ("BOT_PRIVATE_KEY", "REGISTRY_ADDRESS"):
        if not str(env.get(key, "") or "").strip():
            report.add("error", "missing_key", f"Required key is empty: {key}")

    registry = str(env.get("REGISTRY_ADDRESS", "") or "").strip()
    if registry and not Web3.is_address(registry):
        report.add("error", "registry_invalid", "REGISTRY_ADDRESS is not a valid EVM address.")

    multicall = str(env.get("MULTICALL3_ADDRESS", "") or "").strip() or DEFAULT_MULTICALL3
    if not Web3.is_address(multicall):
        report.add("error", "multicall_invalid", "MULTICALL3_ADDRESS is not a valid EVM address.")

    wallet = ""
    private_key = str(env.get("BOT_PRIVATE_KEY", "") or "").strip()
    if private_key:
        try:
            wallet = Account.from_key(private_key).address
        except (ValueError, TypeError) as exc:
            report.add("error", "private_key_invalid", f"BOT_PRIVATE_KEY parse failed: {exc}")

    rpc_urls: list[str] = []
    primary = str(env.get("RPC_URL", DEFAULT_RPC_URL) or "").strip()
    secondary = str(env.get("RPC_SECONDARY", "") or "").strip()
    if primary:
        rpc_urls.append(primary)
    if secondary and secondary not in rpc_urls:
        rpc_urls.append(secondary)
    if not rpc_urls:
        report.add("error", "rpc_missing", "RPC_URL/RPC_SECONDARY is empty.")

    backend = str(env.get("KV_BACKEND", "file") or "file").strip().lower()
    if backend not in {"file", "sqlite", "sql", "cloudflare", "memory"}:
        report.add("error", "kv_backend_invalid", f"KV_BACKEND={backend!r} is not supported.")
    elif backend == "cloudflare":
        for key in ("CF_ACCOUNT_ID", "CF_KV_NAMESPACE_ID", "CF_API_TOKEN"):
            if not str(env.get(key, "") or "").strip():
                report.add("error", "missing_key", f"KV_BACKEND=cloudflare requires {key}")
    elif backend == "memory":
        report.add("warning", "kv_backend_memory", "KV_BACKEND=memory keeps lock and cursor in-process only.")
    report.summary["kv_backend"] = backend
    return registry, multicall, wallet, rpc_urls


def run_checks(env_file: Path, rpc_timeout_s: float, max_block_drift: int) -> Report:
    report = Report()

    if not env_file.exists():
        report.add("error", "env_missing", f".env file not found: {env_file}")
        return report

    env = _load_env(env_file)
    registry, multicall, wallet, rpc_urls = _check_static(env, report)

    chain_id = _to_int(env.get("CHAIN_ID", DEFAULT_CHAIN_ID), DEFAULT_CHAIN_ID)
    min_balance = _to_float(env.get("PREFLIGHT_MIN_BALANCE", "0.05"), 0.05)
    max_gas_gwei = _to_float(env.get("MAX_GAS_GWEI", "100"), 100.0)

    for url in rpc_urls:
        report.rpc_nodes.append(_rpc_probe(url, timeout_s=rpc_timeout_s))

    healthy = [x for x in report.rpc_nodes if x.ok]
    if rpc_urls and not healthy:
        report.add("error", "rpc_all_failed", "No healthy RPC nodes.")
    if healthy:
        for node in healthy:
            if node.chain_id != chain_id:
                report.add(
                    "error",
                    "rpc_chain_mismatch",
                    f"RPC {_fmt_node(node.url)} chain_id={node.chain_id}, expected {chain_id}.",
                )
            if node.gas_price_gwei is not None and max_gas_gwei > 0 and node.gas_price_gwei > max_gas_gwei:
                report.add(
                    "warning",
                    "gas_above_limit",
                    f"Network gas {node.gas_price_gwei:.3f} gwei is above MAX_GAS_GWEI={max_gas_gwei:.3f}.",
                )

        blocks = [x.block_number for x in healthy if x.block_number is not None]
        if blocks:
            drift = int(max(blocks) - min(blocks))
            if drift > max(0, max_block_drift):
                report.add("warning", "rpc_block_drift", f"RPC block drift is high: {drift} blocks.")

        latencies = [x.latency_ms for x in healthy]
        report.summary["rpc_latency_ms_p50"] = round(float(statistics.median(latencies)), 1)
        report.summary["rpc_latency_ms_p95"] = round(float(max(latencies)), 1)

        fastest = sorted(healthy, key=lambda x: x.latency_ms)[0]
        w3 = Web3(HTTPProvider(fastest.url, request_kwargs={"timeout": rpc_timeout_s}))
        if wallet:
            _probe_wallet(w3, wallet, min_balance, report)
        if registry and Web3.is_address(registry):
            _probe_registry(w3, registry, report)
        if Web3.is_address(multicall):
            _probe_multicall(w3, multicall, report)

    report.summary["env_file"] = str(env_file)
    report.summary["chain_id_expected"] = chain_id
    report.summary["rpc_total"] = len(report.rpc_nodes)
    report.summary["rpc_healthy"] = len(healthy)
    return report


def _probe_wallet(w3: Web3, wallet: str, min_balance: float, report: Report) -> None:
    try:
        balance_wei = int(w3.eth.get_balance(wallet))
        nonce = int(w3.eth.get_transaction_count(wallet, "pending"))
    except Exception as exc:
        report.add("error", "wallet_probe_failed", f"Wallet probe failed: {exc}")
        return
    balance = float(w3.from_wei(balance_wei, "ether"))
    report.summary["wallet_address"] = wallet
    report.summary["wallet_balance"] = balance
    report.summary["wallet_nonce_pending"] = nonce
    if balance < min_balance:
        report.add(
            "error",
            "wallet_low_balance",
            f"Wallet balance {balance:.6f} below PREFLIGHT_MIN_BALANCE={min_balance:.6f}.",
        )
    else:
        report.add("info", "wallet_balance_ok", f"Wallet balance {balance:.6f} (floor {min_balance:.6f}).")
    report.add("info", "wallet_nonce", f"Wallet pending nonce: {nonce}.")


def _probe_registry(w3: Web3, registry: str, report: Report) -> None:
    try:
        contract = w3.eth.contract(address=w3.to_checksum_address(registry), abi=REGISTRY_ABI)
        count = int(contract.functions.getAllLotteriesCount().call())
    except Exception as exc:
        report.add("error", "registry_probe_failed", f"Registry probe failed: {exc}")
        return
    report.summary["registry_lotteries"] = count
    report.add("info", "registry_probe_ok", f"Registry getAllLotteriesCount() = {count}.")


def _probe_multicall(w3: Web3, multicall: str, report: Report) -> None:
    try:
        code = w3.eth.get_code(w3.to_checksum_address(multicall))
    except Exception as exc:
        report.add("error", "multicall_probe_failed", f"Multicall3 probe failed: {exc}")
        return
    if not code:
        report.add("error", "multicall_missing", f"No contract code at MULTICALL3_ADDRESS {multicall}.")
    else:
        report.add("info", "multicall_probe_ok", f"Multicall3 deployed at {multicall}.")


def _node_line(node: RpcHealth) -> str:
    parts = [
        "ok" if node.ok else "fail",
        _fmt_node(node.url),
        f"latency={node.latency_ms:.1f}ms",
        f"chain={node.chain_id if node.chain_id is not None else '-'}",
        f"block={node.block_number if node.block_number is not None else '-'}",
        f"gas={'-' if node.gas_price_gwei is None else f'{node.gas_price_gwei:.3f}'}",
    ]
    if node.error:
        parts.append(f"err={node.error}")
    return " | ".join(parts)


def render_report(report: Report) -> str:
    lines = ["=== KEEPER PREFLIGHT CHECK ===", f"status: {'PASS' if report.ok else 'FAIL'}", ""]
    if report.summary:
        lines.append("Summary:")
        lines.extend(f"- {k}: {v}" for k, v in report.summary.items())
        lines.append("")
    if report.rpc_nodes:
        lines.append("RPC nodes:")
        lines.extend(f"- {_node_line(node)}" for node in report.rpc_nodes)
        lines.append("")
    for level in LEVELS:
        items = report.by_level(level)
        if not items:
            continue
        lines.append(f"{level.upper()}:")
        lines.extend(f"- [{item.code}] {item.message}" for item in items)
        lines.append("")
    return "\n".join(lines)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Preflight checks for keeper readiness.")
    parser.add_argument("--env-file", default=".env", help="Path to env file (default: .env)")
    parser.add_argument("--rpc-timeout", type=float, default=8.0, help="RPC timeout seconds (default: 8)")
    parser.add_argument("--max-block-drift", type=int, default=5, help="Warn if RPC nodes diverge more than this many blocks")
    parser.add_argument("--json-out", default="", help="Optional path to write JSON report")
    args = parser.parse_args(argv)

    report = run_checks(
        env_file=Path(args.env_file),
        rpc_timeout_s=max(1.0, float(args.rpc_timeout)),
        max_block_drift=max(0, int(args.max_block_drift)),
    )
    print(render_report(report))

    if args.json_out:
        out_path = Path(args.json_out)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps(report.to_dict(), ensure_ascii=True, indent=2), encoding="utf-8")
        print(f"json_report: {out_path}")

    return 0 if report.ok else 2


if __name__ == "__main__":
    sys.exit(main())
