"""Contract ABIs and raw call signatures for the lottery registry, lotteries and entropy oracle."""

from __future__ import annotations

from typing import Any

from web3 import Web3

REGISTRY_ABI: list[dict[str, Any]] = [
    {
        "name": "getAllLotteriesCount",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "getAllLotteries",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "start", "type": "uint256"}, {"name": "limit", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address[]"}],
    },
]


LOTTERY_ABI: list[dict[str, Any]] = [
    {
        "name": "finalize",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [],
        "outputs": [],
    },
    {"name": "InsufficientFee", "type": "error", "inputs": []},
]


ENTROPY_ABI: list[dict[str, Any]] = [
    {
        "name": "getFee",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "provider", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


MULTICALL3_ABI: list[dict[str, Any]] = [
    {
        "name": "aggregate3",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {
                "name": "calls",
                "type": "tuple[]",
                "components": [
                    {"name": "target", "type": "address"},
                    {"name": "allowFailure", "type": "bool"},
                    {"name": "callData", "type": "bytes"},
                ],
            }
        ],
        "outputs": [
            {
                "name": "returnData",
                "type": "tuple[]",
                "components": [
                    {"name": "success", "type": "bool"},
                    {"name": "returnData", "type": "bytes"},
                ],
            }
        ],
    },
]


def selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


# field -> (function signature, ABI return type). All lottery reads take no arguments,
# so the call data is just the 4-byte selector.
LOTTERY_READS: dict[str, tuple[str, str]] = {
    "status": ("status()", "uint8"),
    "deadline": ("deadline()", "uint64"),
    "sold": ("getSold()", "uint256"),
    "max_tickets": ("maxTickets()", "uint64"),
    "paused": ("paused()", "bool"),
    "entropy": ("entropy()", "address"),
    "entropy_provider": ("entropyProvider()", "address"),
}

DETAIL_FIELDS: tuple[str, ...] = ("deadline", "sold", "max_tickets", "paused", "entropy", "entropy_provider")

# Known custom-error selectors, so revert data can be named in log lines and
# matched by the stale-fee classifier.
CUSTOM_ERRORS: dict[str, str] = {
    "0x" + selector(sig).hex(): sig.split("(", 1)[0]
    for sig in ("InsufficientFee()",)
}
