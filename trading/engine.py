"""Wires the store, guard, scheduler, executor and mint feed into one runtime."""

from __future__ import annotations

import asyncio
import logging

import config
from monitor.mint_detector import MintEventDetector
from trading.ledger_client import LedgerClient
from trading.sell_scheduler import Clock, DelayedSellScheduler, SystemClock
from trading.token_store import EngineState, TokenStore
from trading.trade_executor import TradeExecutor, TradeResult, TradeSettings

logger = logging.getLogger(__name__)


class SniperEngine:
    def __init__(
        self,
        ledger: LedgerClient,
        state: EngineState,
        settings: TradeSettings,
        *,
        factory_address: str,
        clock: Clock | None = None,
        poll_interval_seconds: float = 2.0,
        block_chunk: int = 200,
        finality_blocks: int = 0,
        last_block_file: str = "",
    ) -> None:
        self.ledger = ledger
        self.state = state
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        self.scheduler = DelayedSellScheduler(self._run_sell, settings.sell_delay_seconds, clock=self.clock)
        self.executor = TradeExecutor(ledger, state, self.scheduler, settings, clock=self.clock)
        self.detector = MintEventDetector(
            ledger,
            state,
            self.handle_new_token,
            factory_address=factory_address,
            poll_interval_seconds=poll_interval_seconds,
            block_chunk=block_chunk,
            finality_blocks=finality_blocks,
            last_block_file=last_block_file,
        )

    @classmethod
    def from_config(cls, ledger: LedgerClient, clock: Clock | None = None) -> "SniperEngine":
        store = TokenStore.load(config.STATE_FILE, lock_timeout_seconds=config.STATE_LOCK_TIMEOUT_SECONDS)
        return cls(
            ledger,
            EngineState(store=store),
            TradeSettings.from_config(),
            factory_address=config.FACTORY_ADDRESS,
            clock=clock,
            poll_interval_seconds=config.POLL_INTERVAL_SECONDS,
            block_chunk=config.BLOCK_CHUNK,
            finality_blocks=config.FINALITY_BLOCKS,
            last_block_file=config.LAST_BLOCK_FILE,
        )

    async def handle_new_token(self, token_address: str) -> TradeResult:
        logger.info("NEW_TOKEN token=%s factory=%s", token_address, self.detector.factory_address)
        return await self.executor.buy(token_address)

    async def _run_sell(self, token_address: str, attempt: int) -> TradeResult:
        return await self.executor.sell(token_address, attempt=attempt)

    def resume_pending_sells(self) -> list[str]:
        """Re-arm a sell for every token bought but not sold. Never buys."""
        for key in self.state.store.malformed_keys():
            logger.warning("RESUME_SKIP_MALFORMED token=%s", key)

        armed: list[str] = []
        for record in self.state.store.pending_sells():
            logger.info(
                "RESUME_ARMED token=%s buy_tx=%s delay=%.0fs",
                record.token_address,
                record.buy_tx_hash,
                self.scheduler.delay_seconds,
            )
            self.scheduler.arm(record.token_address)
            armed.append(record.token_address)
        return armed

    async def run(self, stop_event: asyncio.Event) -> None:
        armed = self.resume_pending_sells()
        logger.info(
            "ENGINE_START wallet=%s records=%s resumed=%s",
            self.ledger.wallet_address,
            len(self.state.store),
            len(armed),
        )
        try:
            await self.detector.run(stop_event)
        finally:
            await self.shutdown()

    async def run_once(self) -> list[str]:
        """Resume pass plus one feed poll; waits for the buys it started."""
        self.resume_pending_sells()
        dispatched = await self.detector.poll_once()
        await self.detector.wait_idle()
        return dispatched

    async def shutdown(self) -> None:
        await self.detector.wait_idle()
        await self.scheduler.close()
        logger.info("ENGINE_STOPPED pending_in_flight=%s", len(self.state.guard))
