"""Keeper error taxonomy. Each error carries a stable `code` for log lines."""

from __future__ import annotations

E_CONFIG = "E_CONFIG"
E_KV_STORE = "E_KV_STORE"
E_CHAIN_RPC = "E_CHAIN_RPC"
E_TX_BROADCAST = "E_TX_BROADCAST"


class KeeperError(RuntimeError):
    code = "E_KEEPER"


class ConfigError(KeeperError):
    """Missing or invalid required configuration. Fatal for the run."""

    code = E_CONFIG


class KVStoreError(KeeperError):
    """Lock/cursor store unavailable. Fatal for the run; lock left to TTL expiry."""

    code = E_KV_STORE


class ChainRPCError(KeeperError):
    """Raised when a non-batched RPC read fails after retries."""

    code = E_CHAIN_RPC


class TxBroadcastError(ChainRPCError):
    """The signed transaction may or may not have reached the node."""

    code = E_TX_BROADCAST
