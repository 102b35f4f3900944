from __future__ import annotations

import unittest
from types import SimpleNamespace
from typing import Any
from unittest import mock

from eth_abi import encode as abi_encode

from chain.abis import CUSTOM_ERRORS, DETAIL_FIELDS, LOTTERY_READS, selector
from chain.client import LotteryChainClient, describe_chain_error
from keeper_fakes import ENTROPY, PROVIDER, ConfigPatchMixin, addr, make_settings
from utils.errors import ChainRPCError, TxBroadcastError


class RevertError(Exception):
    def __init__(self, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.data = data


def _encoded(field: str, value: Any) -> bytes:
    _, abi_type = LOTTERY_READS[field]
    return abi_encode([abi_type], [value])


class DescribeChainErrorTests(unittest.TestCase):
    def test_custom_error_selector_is_named(self) -> None:
        sel = next(iter(CUSTOM_ERRORS))
        exc = RevertError("execution reverted", data=sel)
        message = describe_chain_error(exc)
        self.assertTrue(message.startswith("InsufficientFee"))

    def test_bytes_revert_data_is_decoded(self) -> None:
        exc = RevertError("execution reverted", data=selector("InsufficientFee()"))
        self.assertIn("InsufficientFee", describe_chain_error(exc))

    def test_plain_message_passes_through(self) -> None:
        self.assertEqual(describe_chain_error(RuntimeError("nonce too low")), "nonce too low")
        self.assertEqual(describe_chain_error(RuntimeError()), "RuntimeError")


class LotteryChainClientTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(RPC_RETRY_DELAYS=[0, 0, 0])

    def _client(self, **overrides: Any) -> LotteryChainClient:
        return LotteryChainClient(make_settings(**overrides))

    async def test_read_details_decodes_full_rows_and_drops_partial_ones(self) -> None:
        client = self._client()
        values = {
            "deadline": 1_700_000_000,
            "sold": 12,
            "max_tickets": 50,
            "paused": False,
            "entropy": ENTROPY,
            "entropy_provider": PROVIDER,
        }

        async def aggregate(calls: list[tuple[str, bytes]]) -> list[tuple[bool, bytes]]:
            out = []
            for idx, _ in enumerate(calls):
                field = DETAIL_FIELDS[idx % len(DETAIL_FIELDS)]
                failed = idx // len(DETAIL_FIELDS) == 1 and field == "sold"
                out.append((not failed, b"" if failed else _encoded(field, values[field])))
            return out

        client._aggregate = aggregate  # type: ignore[method-assign]
        rows = await client.read_details([addr(1), addr(2)])

        self.assertIsNotNone(rows[0])
        self.assertEqual(rows[0]["deadline"], 1_700_000_000)
        self.assertEqual(rows[0]["max_tickets"], 50)
        self.assertEqual(rows[0]["entropy"].lower(), ENTROPY)
        self.assertIsNone(rows[1])

    async def test_read_statuses_batches_and_marks_failures(self) -> None:
        client = self._client(status_batch_size=2)
        batches: list[int] = []

        async def aggregate(calls: list[tuple[str, bytes]]) -> list[tuple[bool, bytes]]:
            batches.append(len(calls))
            return [(True, _encoded("status", 1)), (False, b"")][: len(calls)]

        client._aggregate = aggregate  # type: ignore[method-assign]
        statuses = await client.read_statuses([addr(i) for i in range(1, 6)])

        self.assertEqual(batches, [2, 2, 1])
        self.assertEqual(statuses, [1, None, 1, None, 1])

    async def test_failed_multicall_fails_every_entry(self) -> None:
        client = self._client()

        async def broken(call: Any, op_name: str) -> Any:
            raise ChainRPCError(f"{op_name} failed after retries: boom")

        client._rpc_with_backoff = broken  # type: ignore[method-assign]
        results = await client._aggregate([(addr(1), b"\x00" * 4), (addr(2), b"\x00" * 4)])
        self.assertEqual(results, [(False, b""), (False, b"")])

    async def test_rpc_backoff_rotates_providers_then_raises(self) -> None:
        client = self._client(rpc_urls=("http://127.0.0.1:1", "http://127.0.0.1:2"))
        seen: list[int] = []

        def failing() -> None:
            seen.append(client.provider_index)
            raise ConnectionError("refused")

        with self.assertRaises(ChainRPCError):
            await client._rpc_with_backoff(failing, "getAllLotteriesCount")
        self.assertEqual(seen, [0, 1, 0])

    async def test_empty_page_request_skips_rpc(self) -> None:
        client = self._client()
        self.assertEqual(await client.get_lottery_page(5, 0), [])

    def _stub_send_path(self, client: LotteryChainClient) -> mock.Mock:
        finalize = mock.Mock()
        finalize.estimate_gas.return_value = 100_000
        finalize.build_transaction.side_effect = lambda params: dict(params, to=addr(9), data="0x4bb278f3")
        client._lottery = lambda address: SimpleNamespace(functions=SimpleNamespace(finalize=lambda: finalize))  # type: ignore[method-assign]
        client._tx_params = lambda value_wei, nonce: {"from": client.wallet, "nonce": nonce, "value": value_wei}  # type: ignore[method-assign]
        client.account = mock.Mock()
        client.account.sign_transaction.return_value = SimpleNamespace(raw_transaction=b"\x02\x01")
        client.web3 = mock.Mock()
        return finalize

    async def test_send_estimates_gas_once_and_applies_buffer(self) -> None:
        client = self._client(gas_limit_buffer=1.5)
        finalize = self._stub_send_path(client)
        client.web3.eth.send_raw_transaction.return_value = b"\x12" * 32

        tx_hash = await client.send_finalize(addr(1), 100, 7)

        self.assertEqual(tx_hash, "0x" + "12" * 32)
        finalize.estimate_gas.assert_called_once()
        built = finalize.build_transaction.call_args.args[0]
        self.assertEqual(built["gas"], 150_000)
        self.assertEqual(built["nonce"], 7)
        client.web3.eth.estimate_gas.assert_not_called()

    async def test_transport_failure_on_broadcast_is_flagged_uncertain(self) -> None:
        client = self._client()
        self._stub_send_path(client)
        client.web3.eth.send_raw_transaction.side_effect = TimeoutError("read timed out")

        with self.assertRaises(TxBroadcastError):
            await client.send_finalize(addr(1), 100, 7)

    async def test_node_rejection_is_not_flagged_uncertain(self) -> None:
        client = self._client()
        self._stub_send_path(client)
        client.web3.eth.send_raw_transaction.side_effect = ValueError("nonce too low")

        with self.assertRaises(ValueError) as caught:
            await client.send_finalize(addr(1), 100, 7)
        self.assertNotIsInstance(caught.exception, TxBroadcastError)


if __name__ == "__main__":
    unittest.main()
