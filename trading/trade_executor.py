"""Buy and timed-sell execution against the sale contract."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from web3 import Web3

import config
from trading.ledger_client import LedgerClient
from trading.sell_scheduler import Clock, DelayedSellScheduler, SystemClock, epoch_ms
from trading.token_store import EngineState
from utils.addressing import normalize_address
from utils.state_file import StateFileError

logger = logging.getLogger(__name__)

STATUS_CONFIRMED = "confirmed"
STATUS_REVERTED = "reverted"
STATUS_APPROVE_REVERTED = "approve_reverted"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"

_RETRYABLE_SELL_STATUSES = {STATUS_REVERTED, STATUS_APPROVE_REVERTED, STATUS_FAILED}


@dataclass
class TradeSettings:
    funding_wei: int
    sale_contract_address: str
    min_tokens_out: int = 0
    min_funding_out: int = 0
    gas_limit_buy: int = 300_000
    gas_limit_approve: int = 120_000
    gas_limit_sell: int = 300_000
    confirmations: int = 1
    sell_delay_seconds: float = 300.0
    default_decimals: int = 18
    sell_retry_attempts: int = 0
    sell_retry_delay_seconds: float = 60.0

    @classmethod
    def from_config(cls) -> "TradeSettings":
        try:
            funding_wei = int(Web3.to_wei(Decimal(config.BUY_AMOUNT_NATIVE), "ether"))
        except (InvalidOperation, ValueError) as exc:
            raise ValueError(f"BUY_AMOUNT_NATIVE is not a number: {config.BUY_AMOUNT_NATIVE!r}") from exc
        if funding_wei <= 0:
            raise ValueError("BUY_AMOUNT_NATIVE must be positive")
        return cls(
            funding_wei=funding_wei,
            sale_contract_address=normalize_address(config.SALE_CONTRACT_ADDRESS),
            min_tokens_out=int(config.MIN_TOKENS_OUT),
            min_funding_out=int(config.MIN_FUNDING_OUT),
            gas_limit_buy=int(config.GAS_LIMIT_BUY),
            gas_limit_approve=int(config.GAS_LIMIT_APPROVE),
            gas_limit_sell=int(config.GAS_LIMIT_SELL),
            confirmations=int(config.CONFIRMATIONS),
            sell_delay_seconds=float(config.SELL_DELAY_SECONDS),
            default_decimals=int(config.DEFAULT_TOKEN_DECIMALS),
            sell_retry_attempts=int(config.SELL_RETRY_ATTEMPTS),
            sell_retry_delay_seconds=float(config.SELL_RETRY_DELAY_SECONDS),
        )


@dataclass
class TradeResult:
    token_address: str
    status: str
    tx_hash: str | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == STATUS_CONFIRMED


class TradeExecutor:
    def __init__(
        self,
        ledger: LedgerClient,
        state: EngineState,
        scheduler: DelayedSellScheduler,
        settings: TradeSettings,
        clock: Clock | None = None,
    ) -> None:
        self.ledger = ledger
        self.state = state
        self.scheduler = scheduler
        self.settings = settings
        self.clock: Clock = clock or SystemClock()

    async def buy(self, token_address: str) -> TradeResult:
        """Buy once per token; the guard entry is released on every exit path."""
        key = normalize_address(token_address)
        if self.state.store.is_bought(key):
            return TradeResult(key, STATUS_SKIPPED, detail="already_bought")
        if not self.state.guard.try_acquire(key):
            return TradeResult(key, STATUS_SKIPPED, detail="in_flight")

        try:
            tx_hash = await self.ledger.send_buy(
                key,
                self.settings.funding_wei,
                self.settings.min_tokens_out,
                self.settings.gas_limit_buy,
            )
            logger.info("BUY_SENT token=%s tx=%s value_wei=%s", key, tx_hash, self.settings.funding_wei)
            receipt = await self.ledger.wait_for_receipt(tx_hash, self.settings.confirmations)
            if not receipt.status:
                logger.warning("BUY_REVERTED token=%s tx=%s", key, tx_hash)
                return TradeResult(key, STATUS_REVERTED, tx_hash=tx_hash)

            logger.info("BUY_CONFIRMED token=%s tx=%s block=%s", key, tx_hash, receipt.block_number)
            try:
                self.state.store.record_buy(key, tx_hash, bought_at=epoch_ms(self.clock))
            except (StateFileError, OSError) as exc:
                # The in-memory record still blocks a second buy in this run.
                logger.error("STATE_FLUSH_FAILED op=buy token=%s tx=%s err=%s", key, tx_hash, exc)
            self.scheduler.arm(key)
            return TradeResult(key, STATUS_CONFIRMED, tx_hash=tx_hash)
        except Exception as exc:
            logger.exception("BUY_FAILED token=%s err=%s", key, exc)
            return TradeResult(key, STATUS_FAILED, detail=str(exc))
        finally:
            self.state.guard.release(key)

    async def sell(self, token_address: str, attempt: int = 0) -> TradeResult:
        key = normalize_address(token_address)
        record = self.state.store.get(key)
        if record is not None and record.is_sold:
            logger.info("SELL_SKIP_ALREADY_SOLD token=%s tx=%s", key, record.sell_tx_hash)
            return TradeResult(key, STATUS_SKIPPED, tx_hash=record.sell_tx_hash, detail="already_sold")

        result = await self._sell_once(key)
        if result.status in _RETRYABLE_SELL_STATUSES and attempt < self.settings.sell_retry_attempts:
            logger.warning(
                "SELL_RETRY_SCHEDULED token=%s status=%s attempt=%s/%s delay=%.0fs",
                key,
                result.status,
                attempt + 1,
                self.settings.sell_retry_attempts,
                self.settings.sell_retry_delay_seconds,
            )
            self.scheduler.arm(key, delay_seconds=self.settings.sell_retry_delay_seconds, attempt=attempt + 1)
        return result

    async def _token_decimals(self, token_address: str) -> int:
        try:
            return int(await self.ledger.token_decimals(token_address))
        except Exception as exc:
            logger.debug("DECIMALS_FALLBACK token=%s err=%s", token_address, exc)
            return self.settings.default_decimals

    async def _sell_once(self, key: str) -> TradeResult:
        sale = self.settings.sale_contract_address
        try:
            decimals = await self._token_decimals(key)
            balance = int(await self.ledger.token_balance(key))
            if balance <= 0:
                logger.info("SELL_SKIP_ZERO_BALANCE token=%s", key)
                return TradeResult(key, STATUS_SKIPPED, detail="zero_balance")

            allowance = int(await self.ledger.token_allowance(key, sale))
            if allowance < balance:
                approve_hash = await self.ledger.send_approve(key, sale, balance, self.settings.gas_limit_approve)
                logger.info("APPROVE_SENT token=%s tx=%s amount=%s", key, approve_hash, balance)
                approve_receipt = await self.ledger.wait_for_receipt(approve_hash, self.settings.confirmations)
                if not approve_receipt.status:
                    logger.warning("APPROVE_REVERTED token=%s tx=%s", key, approve_hash)
                    return TradeResult(key, STATUS_APPROVE_REVERTED, tx_hash=approve_hash)

            human_amount = Decimal(balance) / (Decimal(10) ** decimals)
            tx_hash = await self.ledger.send_sell(key, balance, self.settings.min_funding_out, self.settings.gas_limit_sell)
            logger.info("SELL_SENT token=%s tx=%s amount=%s decimals=%s", key, tx_hash, human_amount, decimals)
            receipt = await self.ledger.wait_for_receipt(tx_hash, self.settings.confirmations)
            if not receipt.status:
                logger.warning("SELL_REVERTED token=%s tx=%s", key, tx_hash)
                return TradeResult(key, STATUS_REVERTED, tx_hash=tx_hash)

            logger.info("SELL_CONFIRMED token=%s tx=%s block=%s", key, tx_hash, receipt.block_number)
            try:
                self.state.store.record_sell(key, tx_hash, sold_at=epoch_ms(self.clock))
            except (StateFileError, OSError) as exc:
                logger.error("STATE_FLUSH_FAILED op=sell token=%s tx=%s err=%s", key, tx_hash, exc)
            return TradeResult(key, STATUS_CONFIRMED, tx_hash=tx_hash)
        except Exception as exc:
            logger.exception("SELL_FAILED token=%s err=%s", key, exc)
            return TradeResult(key, STATUS_FAILED, detail=str(exc))
