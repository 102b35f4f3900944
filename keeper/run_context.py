"""Per-run settings snapshot and mutable run state."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Callable

from eth_account import Account
from web3 import Web3

import config
from keeper.budget import BudgetGovernor
from keeper.fee_cache import FeeCache
from utils.errors import ConfigError


@dataclass(frozen=True)
class KeeperSettings:
    private_key: str
    registry_address: str
    rpc_urls: tuple[str, ...]
    rpc_timeout_seconds: int = 10
    chain_id: int = 42793
    multicall_address: str = "0xcA11bde05977b3631167028862bE2a173976CA11"
    hot_size: int = 100
    cold_size: int = 50
    status_batch_size: int = 250
    detail_chunk_size: int = 25
    max_tx: int = 5
    time_budget_ms: int = 25_000
    attempt_ttl_sec: int = 600
    lock_ttl_sec: int = 180
    skip_zero_sold: bool = False
    max_gas_gwei: float = 100.0
    priority_fee_gwei: float = 0.0
    gas_limit_buffer: float = 1.15
    dry_run: bool = False

    @staticmethod
    def from_config(*, dry_run: bool = False) -> "KeeperSettings":
        rpc_urls = [u for u in [config.RPC_URL, config.RPC_SECONDARY] if u]
        return KeeperSettings(
            private_key=config.BOT_PRIVATE_KEY,
            registry_address=config.REGISTRY_ADDRESS,
            rpc_urls=tuple(dict.fromkeys(rpc_urls)),
            rpc_timeout_seconds=int(config.RPC_TIMEOUT_SECONDS),
            chain_id=int(config.CHAIN_ID),
            multicall_address=config.MULTICALL3_ADDRESS,
            hot_size=int(config.HOT_SIZE),
            cold_size=int(config.COLD_SIZE),
            status_batch_size=int(config.STATUS_BATCH_SIZE),
            detail_chunk_size=int(config.DETAIL_CHUNK_SIZE),
            max_tx=int(config.MAX_TX),
            time_budget_ms=int(config.TIME_BUDGET_MS),
            attempt_ttl_sec=int(config.ATTEMPT_TTL_SEC),
            lock_ttl_sec=int(config.LOCK_TTL_SEC),
            skip_zero_sold=bool(config.SKIP_ZERO_SOLD),
            max_gas_gwei=float(config.MAX_GAS_GWEI),
            priority_fee_gwei=float(config.PRIORITY_FEE_GWEI),
            gas_limit_buffer=float(config.GAS_LIMIT_BUFFER),
            dry_run=bool(dry_run),
        )

    def validate(self) -> None:
        """Raise ConfigError if the credential, registry or RPC endpoint is unusable."""
        if not self.private_key or not self.registry_address:
            raise ConfigError("BOT_PRIVATE_KEY and REGISTRY_ADDRESS must be set")
        if not Web3.is_address(self.registry_address):
            raise ConfigError(f"REGISTRY_ADDRESS is not a valid EVM address: {self.registry_address}")
        if not Web3.is_address(self.multicall_address):
            raise ConfigError(f"MULTICALL3_ADDRESS is not a valid EVM address: {self.multicall_address}")
        if not self.rpc_urls:
            raise ConfigError("RPC_URL is empty")
        try:
            Account.from_key(self.private_key)
        except (ValueError, TypeError) as exc:
            raise ConfigError(f"BOT_PRIVATE_KEY parse failed: {exc}") from exc


@dataclass
class RunContext:
    """Everything one run mutates. Built at run start, dropped when the run ends."""

    settings: KeeperSettings
    run_id: str
    started_monotonic: float
    budget: BudgetGovernor
    fee_cache: FeeCache = field(default_factory=FeeCache)
    nonce: int = 0
    tx_count: int = 0

    @staticmethod
    def start(
        settings: KeeperSettings,
        run_id: str | None = None,
        *,
        started_monotonic: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "RunContext":
        started = clock() if started_monotonic is None else float(started_monotonic)
        return RunContext(
            settings=settings,
            run_id=run_id or new_run_id(),
            started_monotonic=started,
            budget=BudgetGovernor(
                max_tx=settings.max_tx,
                time_budget_ms=settings.time_budget_ms,
                started_monotonic=started,
                clock=clock,
            ),
        )

    def budget_exhausted(self) -> str | None:
        return self.budget.exhausted(self.tx_count)

    def current_nonce(self) -> int:
        """Nonce for the next send. Does not advance the counter."""
        return self.nonce

    def record_sent(self) -> None:
        """Advance the local nonce and tx count after the node accepted a transaction."""
        self.nonce += 1
        self.tx_count += 1

    def skip_nonce(self) -> None:
        """Advance the local nonce for a broadcast whose outcome is unknown."""
        self.nonce += 1


def new_run_id() -> str:
    return uuid.uuid4().hex
