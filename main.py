"""Entry point for the launch sniper: buy new factory mints, sell after a fixed delay."""

import argparse
import asyncio
import logging
import os
import signal
from logging.handlers import RotatingFileHandler

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from trading.engine import SniperEngine
from trading.ledger_client import Web3LedgerClient


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def _install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - windows
            pass


async def run(once: bool = False) -> int:
    ledger = Web3LedgerClient()
    engine = SniperEngine.from_config(ledger)
    logger.info(
        "CONFIG factory=%s sale=%s buy=%s delay=%.0fs confirmations=%s state=%s",
        config.FACTORY_ADDRESS,
        config.SALE_CONTRACT_ADDRESS,
        config.BUY_AMOUNT_NATIVE,
        config.SELL_DELAY_SECONDS,
        config.CONFIRMATIONS,
        config.STATE_FILE,
    )
    if once:
        try:
            dispatched = await engine.run_once()
            logger.info("ONCE_DONE dispatched=%s pending_sells=%s", len(dispatched), len(engine.state.store.pending_sells()))
        finally:
            await engine.shutdown()
        return 0

    stop_event = asyncio.Event()
    _install_stop_handlers(stop_event)
    await engine.run(stop_event)
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Buy tokens minted to the launch factory and sell them after a delay")
    parser.add_argument("--once", action="store_true", help="Run the resume pass and one feed poll, then exit")
    args = parser.parse_args()

    configure_logging()
    return asyncio.run(run(once=args.once))


if __name__ == "__main__":
    raise SystemExit(main())
