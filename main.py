"""Lottery finalizer keeper entry point."""

import argparse
import asyncio
import logging
import os
from logging.handlers import RotatingFileHandler

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL, SCHEDULE_INTERVAL_SECONDS
from keeper.decision_log import FinalizeDecisionWriter
from keeper.run_coordinator import RunOutcome, run_once
from keeper.run_context import KeeperSettings
from utils.kv_store import KVStore, build_kv_store


def configure_logging(verbose: bool = False) -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    level = logging.DEBUG if verbose else getattr(logging, LOG_LEVEL.upper(), logging.INFO)
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # RPC request bodies carry signed transactions; keep transport logs quiet.
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


async def run_tick(store: KVStore, decisions: FinalizeDecisionWriter, *, dry_run: bool) -> RunOutcome:
    settings = KeeperSettings.from_config(dry_run=dry_run)
    return await run_once(store, settings=settings, decisions=decisions)


async def scheduler_loop(*, once: bool, dry_run: bool) -> None:
    store = build_kv_store()
    decisions = FinalizeDecisionWriter()
    logger.info(
        "KEEPER_START backend=%s once=%s dry_run=%s interval=%ss registry=%s",
        config.KV_BACKEND,
        once,
        dry_run,
        SCHEDULE_INTERVAL_SECONDS,
        config.REGISTRY_ADDRESS or "-",
    )
    try:
        while True:
            try:
                await run_tick(store, decisions, dry_run=dry_run)
            except Exception:
                logger.exception("Scheduler tick error")

            if once:
                break
            await asyncio.sleep(SCHEDULE_INTERVAL_SECONDS)
    finally:
        await store.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Finalize expired or sold-out lotteries from the registry.")
    parser.add_argument("--once", action="store_true", help="Run one coordinated pass and exit.")
    parser.add_argument("--dry-run", action="store_true", help="Simulate finalize() but never send transactions.")
    parser.add_argument("--verbose", action="store_true", help="Force DEBUG logging.")
    args = parser.parse_args()

    configure_logging(verbose=args.verbose)
    try:
        asyncio.run(scheduler_loop(once=args.once, dry_run=args.dry_run))
    except KeyboardInterrupt:
        logger.info("KEEPER_STOP reason=keyboard_interrupt")


if __name__ == "__main__":
    main()
