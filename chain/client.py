"""web3.py access to the lottery registry, lottery instances and entropy oracle."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from eth_abi import decode as abi_decode
from eth_account import Account
from web3 import HTTPProvider, Web3
from web3.contract import Contract

import config
from chain.abis import (
    CUSTOM_ERRORS,
    DETAIL_FIELDS,
    ENTROPY_ABI,
    LOTTERY_ABI,
    LOTTERY_READS,
    MULTICALL3_ABI,
    REGISTRY_ABI,
    selector,
)
from keeper.run_context import KeeperSettings
from utils.errors import ChainRPCError, TxBroadcastError

logger = logging.getLogger(__name__)


def describe_chain_error(exc: BaseException) -> str:
    """Flatten an RPC/revert exception into one message, naming known custom errors."""
    text = str(exc).strip()
    data = getattr(exc, "data", None)
    if isinstance(data, (bytes, bytearray)):
        data = "0x" + bytes(data).hex()
    names: list[str] = []
    for blob in (data, text):
        if not isinstance(blob, str):
            continue
        lowered = blob.lower()
        for sel, name in CUSTOM_ERRORS.items():
            if sel in lowered and name not in names:
                names.append(name)
    if names:
        return f"{' '.join(names)}: {text}" if text else " ".join(names)
    return text or exc.__class__.__name__


class LotteryChainClient:
    """Async facade over blocking web3 calls; each call runs in a worker thread."""

    def __init__(self, settings: KeeperSettings) -> None:
        self.settings = settings
        self.providers = list(settings.rpc_urls)
        self.provider_index = 0
        self.web3 = self._build_web3()
        self.account = Account.from_key(settings.private_key)
        self.wallet = self.account.address
        self.registry_address = Web3.to_checksum_address(settings.registry_address)
        self.multicall_address = Web3.to_checksum_address(settings.multicall_address)
        self._read_selectors = {name: selector(sig) for name, (sig, _) in LOTTERY_READS.items()}

    def _build_web3(self) -> Web3:
        if not self.providers:
            raise ChainRPCError("RPC_URL/RPC_SECONDARY are not configured.")
        provider = self.providers[self.provider_index]
        return Web3(
            HTTPProvider(
                provider,
                request_kwargs={"timeout": self.settings.rpc_timeout_seconds},
            )
        )

    def _rotate_provider(self) -> None:
        if len(self.providers) <= 1:
            return
        self.provider_index = (self.provider_index + 1) % len(self.providers)
        self.web3 = self._build_web3()

    def _registry(self) -> Contract:
        return self.web3.eth.contract(address=self.registry_address, abi=REGISTRY_ABI)

    def _multicall(self) -> Contract:
        return self.web3.eth.contract(address=self.multicall_address, abi=MULTICALL3_ABI)

    def _lottery(self, address: str) -> Contract:
        return self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=LOTTERY_ABI)

    async def _rpc_with_backoff(self, call: Callable[[], Any], op_name: str) -> Any:
        delays = list(getattr(config, "RPC_RETRY_DELAYS", [1, 2, 4]) or [1])
        last_error: Exception | None = None
        for attempt, delay in enumerate(delays, start=1):
            try:
                return await asyncio.to_thread(call)
            except Exception as exc:
                last_error = exc
                if attempt < len(delays):
                    logger.debug("RPC_RETRY op=%s attempt=%s/%s err=%s", op_name, attempt, len(delays), exc)
                    self._rotate_provider()
                    await asyncio.sleep(delay)
        raise ChainRPCError(f"{op_name} failed after retries: {last_error}")

    async def get_lottery_count(self) -> int:
        return int(
            await self._rpc_with_backoff(
                lambda: self._registry().functions.getAllLotteriesCount().call(),
                "getAllLotteriesCount",
            )
        )

    async def get_lottery_page(self, start: int, limit: int) -> list[str]:
        if limit <= 0:
            return []
        rows = await self._rpc_with_backoff(
            lambda: self._registry().functions.getAllLotteries(int(start), int(limit)).call(),
            f"getAllLotteries[{start}+{limit}]",
        )
        return [str(addr) for addr in rows or []]

    async def get_pending_nonce(self) -> int:
        return int(
            await self._rpc_with_backoff(
                lambda: self.web3.eth.get_transaction_count(self.wallet, "pending"),
                "eth_getTransactionCount",
            )
        )

    async def get_entropy_fee(self, entropy: str, provider: str) -> int:
        def _call() -> int:
            contract = self.web3.eth.contract(address=Web3.to_checksum_address(entropy), abi=ENTROPY_ABI)
            return int(contract.functions.getFee(Web3.to_checksum_address(provider)).call())

        return int(await self._rpc_with_backoff(_call, f"getFee[{entropy}]"))

    async def _aggregate(self, calls: list[tuple[str, bytes]]) -> list[tuple[bool, bytes]]:
        """One Multicall3 aggregate3 round trip. A failed round trip fails every entry."""
        if not calls:
            return []
        payload = [(Web3.to_checksum_address(target), True, data) for target, data in calls]
        try:
            rows = await self._rpc_with_backoff(
                lambda: self._multicall().functions.aggregate3(payload).call(),
                f"aggregate3[{len(payload)}]",
            )
        except ChainRPCError as exc:
            logger.warning("MULTICALL_FAILED calls=%s err=%s", len(payload), exc)
            return [(False, b"")] * len(payload)
        out: list[tuple[bool, bytes]] = []
        for row in rows or []:
            success, data = row[0], row[1]
            out.append((bool(success), bytes(data or b"")))
        if len(out) != len(payload):
            logger.warning("MULTICALL_SHAPE_MISMATCH expected=%s got=%s", len(payload), len(out))
            return [(False, b"")] * len(payload)
        return out

    def _decode_read(self, field: str, ok: bool, data: bytes) -> tuple[bool, Any]:
        if not ok or not data:
            return False, None
        _, abi_type = LOTTERY_READS[field]
        try:
            return True, abi_decode([abi_type], data)[0]
        except Exception:
            return False, None

    async def read_statuses(self, addresses: list[str]) -> list[int | None]:
        """Batched status() reads. None marks a failed or undecodable read."""
        out: list[int | None] = []
        batch = max(1, int(self.settings.status_batch_size))
        status_sel = self._read_selectors["status"]
        for start in range(0, len(addresses), batch):
            chunk = addresses[start : start + batch]
            results = await self._aggregate([(addr, status_sel) for addr in chunk])
            for ok, data in results:
                decoded_ok, value = self._decode_read("status", ok, data)
                out.append(int(value) if decoded_ok else None)
        return out

    async def read_details(self, addresses: list[str]) -> list[dict[str, Any] | None]:
        """One batched round trip for every detail field of every address.

        An address maps to None unless all of its detail reads succeeded.
        """
        calls = [(addr, self._read_selectors[field]) for addr in addresses for field in DETAIL_FIELDS]
        results = await self._aggregate(calls)
        out: list[dict[str, Any] | None] = []
        width = len(DETAIL_FIELDS)
        for idx in range(len(addresses)):
            row: dict[str, Any] = {}
            for offset, field in enumerate(DETAIL_FIELDS):
                ok, data = results[idx * width + offset]
                decoded_ok, value = self._decode_read(field, ok, data)
                if not decoded_ok:
                    row = {}
                    break
                row[field] = value
            out.append(row or None)
        return out

    async def simulate_finalize(self, lottery: str, value_wei: int) -> None:
        """eth_call finalize() from the keeper wallet. Raises on revert."""
        await asyncio.to_thread(
            lambda: self._lottery(lottery).functions.finalize().call({"from": self.wallet, "value": int(value_wei)})
        )

    def _tx_params(self, value_wei: int, nonce: int) -> dict[str, Any]:
        latest = self.web3.eth.get_block("latest")
        base_fee = int(latest.get("baseFeePerGas") or 0)
        priority = int(self.web3.to_wei(max(0.0, float(self.settings.priority_fee_gwei)), "gwei"))
        cap = int(self.web3.to_wei(max(0.0, float(self.settings.max_gas_gwei)), "gwei"))
        if cap <= 0:
            # Never send with an unbounded fee cap.
            cap = int(self.web3.to_wei(1, "gwei"))

        observed_gas_price = int(self.web3.eth.gas_price or 0)
        if observed_gas_price > cap:
            obs_gwei = float(self.web3.from_wei(observed_gas_price, "gwei"))
            cap_gwei = float(self.web3.from_wei(cap, "gwei"))
            raise RuntimeError(f"gas_price_too_high observed_gwei={obs_gwei:.3f} cap_gwei={cap_gwei:.3f}")

        params: dict[str, Any] = {
            "from": self.wallet,
            "chainId": int(self.settings.chain_id),
            "nonce": int(nonce),
            "value": int(value_wei),
        }
        if base_fee <= 0:
            params["gasPrice"] = max(1, observed_gas_price)
            return params

        max_fee = min(cap, max(observed_gas_price, (base_fee * 2) + priority))
        params["maxFeePerGas"] = max_fee
        params["maxPriorityFeePerGas"] = min(priority, max_fee)
        params["type"] = 2
        return params

    def _send_finalize_sync(self, lottery: str, value_wei: int, nonce: int) -> str:
        finalize = self._lottery(lottery).functions.finalize()
        params = self._tx_params(value_wei, nonce)
        gas = int(finalize.estimate_gas(params))
        params["gas"] = int(gas * float(self.settings.gas_limit_buffer))
        tx = finalize.build_transaction(params)
        signed = self.account.sign_transaction(tx)
        raw_tx = getattr(signed, "raw_transaction", None)
        if raw_tx is None:
            raw_tx = getattr(signed, "rawTransaction", None)
        if raw_tx is None:
            raise RuntimeError("signed_tx_missing_raw_bytes")
        try:
            tx_hash = self.web3.eth.send_raw_transaction(raw_tx)
        except OSError as exc:
            # Transport failure (timeout, dropped connection): the node may hold the tx.
            raise TxBroadcastError(f"broadcast outcome unknown nonce={nonce}: {exc}") from exc
        return Web3.to_hex(tx_hash)

    async def send_finalize(self, lottery: str, value_wei: int, nonce: int) -> str:
        """Sign and broadcast finalize() with an explicit nonce. Never retried."""
        return await asyncio.to_thread(self._send_finalize_sync, lottery, value_wei, nonce)
