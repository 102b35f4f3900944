"""Application configuration."""

import math
import os
from pathlib import Path

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-deployment override env file.
_load_dotenv_safe()
_KEEPER_ENV_FILE = os.getenv("KEEPER_ENV_FILE", "").strip()
if _KEEPER_ENV_FILE:
    _keeper_env_path = Path(_KEEPER_ENV_FILE).expanduser()
    if not _keeper_env_path.is_absolute():
        _keeper_env_path = (Path.cwd() / _keeper_env_path).resolve()
    if not _keeper_env_path.exists():
        raise FileNotFoundError(f"KEEPER_ENV_FILE does not exist: {_keeper_env_path}")
    if not _keeper_env_path.is_file():
        raise IsADirectoryError(f"KEEPER_ENV_FILE is not a file: {_keeper_env_path}")
    try:
        _load_dotenv_safe(str(_keeper_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load KEEPER_ENV_FILE '{_keeper_env_path}': {exc}") from exc


def parse_bounded_int(raw: object, default: int, cap: int) -> int:
    """Parse a numeric tuning value: junk falls back to default, overflow clamps to cap."""
    text = str(raw if raw is not None else "").strip()
    if not text:
        return int(default)
    try:
        value = float(text)
    except ValueError:
        return int(default)
    if math.isnan(value) or math.isinf(value):
        return int(default)
    return min(max(0, int(math.floor(value))), int(cap))


def _bounded_int(name: str, default: int, cap: int) -> int:
    return parse_bounded_int(os.getenv(name), default, cap)


def _int(name: str, default: int) -> int:
    text = os.getenv(name, "").strip()
    if not text:
        return int(default)
    try:
        return int(text)
    except ValueError:
        return int(default)


def _float(name: str, default: float) -> float:
    try:
        value = float(os.getenv(name, "") or default)
    except ValueError:
        return float(default)
    if math.isnan(value) or math.isinf(value):
        return float(default)
    return value


def _truthy(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "y", "on")


# Signing credential and registry (required at run time, validated per run).
BOT_PRIVATE_KEY = os.getenv("BOT_PRIVATE_KEY", "").strip()
REGISTRY_ADDRESS = os.getenv("REGISTRY_ADDRESS", "").strip()

# Etherlink mainnet defaults.
RPC_URL = os.getenv("RPC_URL", "").strip() or "https://node.mainnet.etherlink.com"
RPC_SECONDARY = os.getenv("RPC_SECONDARY", "").strip()
RPC_TIMEOUT_SECONDS = max(3, _bounded_int("RPC_TIMEOUT_SECONDS", 10, 60))
RPC_RETRY_DELAYS = [1, 2, 4]
CHAIN_ID = _int("CHAIN_ID", 42793)
MULTICALL3_ADDRESS = (
    os.getenv("MULTICALL3_ADDRESS", "").strip() or "0xcA11bde05977b3631167028862bE2a173976CA11"
)

# Scan windows.
HOT_SIZE = _bounded_int("HOT_SIZE", 100, 500)
COLD_SIZE = _bounded_int("COLD_SIZE", 50, 200)
STATUS_BATCH_SIZE = max(1, _bounded_int("STATUS_BATCH_SIZE", 250, 1000))
DETAIL_CHUNK_SIZE = max(1, _bounded_int("DETAIL_CHUNK_SIZE", 25, 100))

# Budgets.
MAX_TX = _bounded_int("MAX_TX", 5, 25)
TIME_BUDGET_MS = _bounded_int("TIME_BUDGET_MS", 25_000, 45_000)

# KV record lifetimes.
ATTEMPT_TTL_SEC = _bounded_int("ATTEMPT_TTL_SEC", 600, 3600)
LOCK_TTL_SEC = max(1, _bounded_int("LOCK_TTL_SEC", 180, 900))

# Eligibility policy: exclude pools with zero tickets sold.
SKIP_ZERO_SOLD = _truthy("SKIP_ZERO_SOLD")

# Transaction fee guards.
MAX_GAS_GWEI = _float("MAX_GAS_GWEI", 100.0)
PRIORITY_FEE_GWEI = max(0.0, _float("PRIORITY_FEE_GWEI", 0.0))
GAS_LIMIT_BUFFER = max(1.0, _float("GAS_LIMIT_BUFFER", 1.15))

# Scheduler.
SCHEDULE_INTERVAL_SECONDS = max(1, _bounded_int("SCHEDULE_INTERVAL_SECONDS", 60, 3600))

# Lock/cursor/attempt store.
KV_BACKEND = os.getenv("KV_BACKEND", "file").strip().lower() or "file"
KV_STATE_FILE = os.getenv("KV_STATE_FILE", os.path.join("data", "keeper_state.json"))
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///keeper.db")
CF_ACCOUNT_ID = os.getenv("CF_ACCOUNT_ID", "").strip()
CF_KV_NAMESPACE_ID = os.getenv("CF_KV_NAMESPACE_ID", "").strip()
CF_API_TOKEN = os.getenv("CF_API_TOKEN", "").strip()
CF_API_BASE = os.getenv("CF_API_BASE", "https://api.cloudflare.com/client/v4").strip().rstrip("/")
HTTP_TIMEOUT_SECONDS = max(1, _bounded_int("HTTP_TIMEOUT_SECONDS", 10, 60))
HTTP_RETRY_ATTEMPTS = max(1, _bounded_int("HTTP_RETRY_ATTEMPTS", 3, 10))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, _float("HTTP_BACKOFF_BASE_SECONDS", 0.50))
HTTP_BACKOFF_MAX_SECONDS = max(0.10, _float("HTTP_BACKOFF_MAX_SECONDS", 8.00))
HTTP_JITTER_SECONDS = max(0.0, _float("HTTP_JITTER_SECONDS", 0.25))

RUN_TAG = os.getenv("RUN_TAG", "").strip()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
FINALIZE_DECISIONS_LOG_ENABLED = _truthy("FINALIZE_DECISIONS_LOG_ENABLED", "true")
FINALIZE_DECISIONS_LOG_FILE = os.getenv(
    "FINALIZE_DECISIONS_LOG_FILE",
    os.path.join(LOG_DIR, "finalize_decisions.jsonl"),
)
