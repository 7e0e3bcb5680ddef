"""Application configuration."""

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


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# Node connectivity.
RPC_PRIMARY = os.getenv("RPC_PRIMARY", "").strip()
RPC_SECONDARY = os.getenv("RPC_SECONDARY", "").strip()
RPC_TIMEOUT_SECONDS = max(3, int(os.getenv("RPC_TIMEOUT_SECONDS", "10")))
CHAIN_ID = int(os.getenv("CHAIN_ID", "56"))
POA_CHAIN = _env_bool("POA_CHAIN", "true")

# Signing.
PRIVATE_KEY = os.getenv("PRIVATE_KEY", "").strip()
WALLET_ADDRESS = os.getenv("WALLET_ADDRESS", "").strip()

# Contracts.
FACTORY_ADDRESS = os.getenv("FACTORY_ADDRESS", "0xf9416a6098dd4accca3099fc82a4824915ac6536").strip().lower()
SALE_CONTRACT_ADDRESS = os.getenv(
    "SALE_CONTRACT_ADDRESS",
    "0x20be1319c5604d272fb828a9dccd38487e973cb8",
).strip().lower()

# Trade sizing and transaction limits.
BUY_AMOUNT_NATIVE = os.getenv("BUY_AMOUNT_NATIVE", "0.02").strip()
GAS_LIMIT_BUY = max(21_000, int(os.getenv("GAS_LIMIT_BUY", "300000")))
GAS_LIMIT_APPROVE = max(21_000, int(os.getenv("GAS_LIMIT_APPROVE", "120000")))
GAS_LIMIT_SELL = max(21_000, int(os.getenv("GAS_LIMIT_SELL", "300000")))
GAS_PRICE_GWEI = max(0.0, float(os.getenv("GAS_PRICE_GWEI", "0")))
MAX_GAS_PRICE_GWEI = max(0.0, float(os.getenv("MAX_GAS_PRICE_GWEI", "10")))
CONFIRMATIONS = max(1, int(os.getenv("CONFIRMATIONS", "1")))
TX_TIMEOUT_SECONDS = max(30, int(os.getenv("TX_TIMEOUT_SECONDS", "180")))

# Exit timing and slippage bounds (raw token / wei units).
SELL_DELAY_SECONDS = max(0.0, float(os.getenv("SELL_DELAY_SECONDS", "300")))
MIN_TOKENS_OUT = max(0, int(os.getenv("MIN_TOKENS_OUT", "0")))
MIN_FUNDING_OUT = max(0, int(os.getenv("MIN_FUNDING_OUT", "0")))
DEFAULT_TOKEN_DECIMALS = max(0, min(255, int(os.getenv("DEFAULT_TOKEN_DECIMALS", "18"))))
SELL_RETRY_ATTEMPTS = max(0, int(os.getenv("SELL_RETRY_ATTEMPTS", "0")))
SELL_RETRY_DELAY_SECONDS = max(1.0, float(os.getenv("SELL_RETRY_DELAY_SECONDS", "60")))

# Persistence.
STATE_FILE = os.getenv("STATE_FILE", "purchased.json").strip() or "purchased.json"
STATE_LOCK_TIMEOUT_SECONDS = max(0.05, float(os.getenv("STATE_LOCK_TIMEOUT_SECONDS", "2.0")))

# Event feed.
POLL_INTERVAL_SECONDS = max(0.5, float(os.getenv("POLL_INTERVAL_SECONDS", "2")))
BLOCK_CHUNK = max(1, int(os.getenv("BLOCK_CHUNK", "200")))
FINALITY_BLOCKS = max(0, int(os.getenv("FINALITY_BLOCKS", "0")))
LAST_BLOCK_FILE = os.getenv("LAST_BLOCK_FILE", "").strip()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
