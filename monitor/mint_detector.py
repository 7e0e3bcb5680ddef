"""Watches the chain-wide Transfer feed for tokens minted to the launch factory."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from trading.ledger_client import LedgerClient
from trading.token_store import EngineState
from utils.addressing import addresses_equal, hex_text, is_zero_address, normalize_address, topic_to_address

logger = logging.getLogger(__name__)

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

NewTokenHandler = Callable[[str], Awaitable[Any]]


class FeedRPCError(RuntimeError):
    """Raised when feed reads fail after retries."""


@dataclass(frozen=True)
class TransferEvent:
    token_address: str
    from_address: str
    to_address: str
    value: int
    block_number: int = 0
    tx_hash: str = ""
    log_index: int = 0


def decode_transfer_log(row: dict[str, Any]) -> TransferEvent | None:
    """Decode an ERC-20 Transfer log, or return None for any other shape sharing the topic."""
    topics = list(row.get("topics") or [])
    # ERC-721 Transfer indexes tokenId as a fourth topic and carries no data word.
    if len(topics) != 3:
        return None
    if hex_text(topics[0]) != TRANSFER_TOPIC:
        return None
    data = hex_text(row.get("data", ""))[2:]
    if len(data) != 64:
        return None
    try:
        value = int(data, 16)
    except ValueError:
        return None
    token = normalize_address(row.get("address"))
    if not token:
        return None
    return TransferEvent(
        token_address=token,
        from_address=topic_to_address(topics[1]),
        to_address=topic_to_address(topics[2]),
        value=value,
        block_number=int(row.get("blockNumber") or 0),
        tx_hash=str(row.get("transactionHash") or ""),
        log_index=int(row.get("logIndex") or 0),
    )


def is_mint_to(event: TransferEvent, factory_address: str) -> bool:
    return is_zero_address(event.from_address) and addresses_equal(event.to_address, factory_address)


class MintEventDetector:
    def __init__(
        self,
        ledger: LedgerClient,
        state: EngineState,
        handler: NewTokenHandler,
        *,
        factory_address: str,
        poll_interval_seconds: float = 2.0,
        block_chunk: int = 200,
        finality_blocks: int = 0,
        last_block_file: str = "",
        backoff_delays: tuple[float, ...] = (1, 2, 4),
    ) -> None:
        self.ledger = ledger
        self.state = state
        self.handler = handler
        self.factory_address = normalize_address(factory_address)
        self.poll_interval_seconds = max(0.0, float(poll_interval_seconds))
        self.block_chunk = max(1, int(block_chunk))
        self.finality_blocks = max(0, int(finality_blocks))
        self.last_block_file = os.path.abspath(last_block_file) if last_block_file else ""
        self.backoff_delays = tuple(backoff_delays) or (0,)
        self.last_processed_block = self._load_last_block()
        self._tasks: set[asyncio.Task[Any]] = set()

    def _load_last_block(self) -> int | None:
        if not self.last_block_file or not os.path.exists(self.last_block_file):
            return None
        try:
            with open(self.last_block_file, "r", encoding="ascii") as f:
                return int(f.read().strip())
        except (OSError, ValueError):
            return None

    def _save_last_block(self, block_number: int) -> None:
        self.last_processed_block = int(block_number)
        if not self.last_block_file:
            return
        os.makedirs(os.path.dirname(self.last_block_file), exist_ok=True)
        with open(self.last_block_file, "w", encoding="ascii") as f:
            f.write(str(int(block_number)))

    async def _rpc_with_backoff(self, call: Callable[[], Awaitable[Any]], op_name: str) -> Any:
        last_error: Exception | None = None
        for attempt, delay in enumerate(self.backoff_delays, start=1):
            try:
                return await call()
            except Exception as exc:  # pragma: no cover - network/runtime dependent
                last_error = exc
                if attempt < len(self.backoff_delays):
                    rotate = getattr(self.ledger, "rotate_provider", None)
                    if callable(rotate):
                        rotate()
                    await asyncio.sleep(delay)
        raise FeedRPCError(f"{op_name} failed after retries: {last_error}")

    def _qualifying_token(self, row: dict[str, Any]) -> str | None:
        event = decode_transfer_log(row)
        if event is None or not is_mint_to(event, self.factory_address):
            return None
        logger.info(
            "MINT_DETECTED token=%s factory=%s block=%s tx=%s",
            event.token_address,
            event.to_address,
            event.block_number,
            event.tx_hash,
        )
        return event.token_address

    def dispatch(self, token_address: str) -> asyncio.Task[Any] | None:
        key = normalize_address(token_address)
        if not self.state.should_handle(key):
            logger.debug("MINT_SKIP token=%s bought=%s in_flight=%s", key, self.state.store.is_bought(key), key in self.state.guard)
            return None
        task = asyncio.create_task(self._run_handler(key), name=f"buy:{key}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_handler(self, token_address: str) -> None:
        try:
            await self.handler(token_address)
        except Exception:
            logger.exception("NEW_TOKEN_HANDLER_ERROR token=%s", token_address)

    async def poll_once(self) -> list[str]:
        """Scan blocks since the cursor and dispatch each new qualifying token once."""
        latest_raw = int(await self._rpc_with_backoff(self.ledger.block_number, "eth_blockNumber"))
        latest_block = max(0, latest_raw - self.finality_blocks)
        if self.last_processed_block is None:
            # Start at the head to avoid replaying old history on first launch.
            self._save_last_block(max(0, latest_block - 1))
            return []
        if latest_block <= self.last_processed_block:
            return []

        dispatched: list[str] = []
        seen_in_batch: set[str] = set()
        for start in range(self.last_processed_block + 1, latest_block + 1, self.block_chunk):
            end = min(latest_block, start + self.block_chunk - 1)
            rows = await self._rpc_with_backoff(
                lambda s=start, e=end: self.ledger.get_logs(s, e, [TRANSFER_TOPIC]),
                f"eth_getLogs[{start}-{end}]",
            )
            for row in rows:
                token = self._qualifying_token(row)
                if token is None or token in seen_in_batch:
                    continue
                seen_in_batch.add(token)
                if self.dispatch(token) is not None:
                    dispatched.append(token)
            self._save_last_block(end)
        return dispatched

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("MINT_FEED_START factory=%s interval=%.1fs", self.factory_address, self.poll_interval_seconds)
        while not stop_event.is_set():
            try:
                await self.poll_once()
            except Exception:
                logger.exception("MINT_FEED_ERROR")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def wait_idle(self) -> None:
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
