from __future__ import annotations

import asyncio
from typing import Any

from monitor.mint_detector import TRANSFER_TOPIC
from trading.ledger_client import TxReceipt
from utils.addressing import ZERO_ADDRESS, normalize_address

WALLET = "0x" + "ab" * 20
FACTORY = "0xf9416a6098dd4accca3099fc82a4824915ac6536"
SALE = "0x20be1319c5604d272fb828a9dccd38487e973cb8"


def address_topic(address: str) -> str:
    return "0x" + ("0" * 24) + normalize_address(address)[2:]


def transfer_log(
    token: str,
    *,
    src: str = ZERO_ADDRESS,
    dst: str = FACTORY,
    value: int = 10**27,
    block: int = 100,
    log_index: int = 0,
) -> dict[str, Any]:
    return {
        "address": token,
        "topics": [TRANSFER_TOPIC, address_topic(src), address_topic(dst)],
        "data": "0x" + format(value, "064x"),
        "blockNumber": block,
        "transactionHash": "0x" + format(block, "064x"),
        "logIndex": log_index,
    }


class ManualClock:
    """Clock whose sleeps only finish when the test advances time."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = float(start)
        self._waiters: list[tuple[float, asyncio.Future[None]]] = []

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append((self.now + float(seconds), fut))
        await fut

    @property
    def sleepers(self) -> int:
        return sum(1 for _, fut in self._waiters if not fut.done())

    async def advance(self, seconds: float) -> None:
        self.now += float(seconds)
        due = [(at, fut) for at, fut in self._waiters if at <= self.now]
        self._waiters = [(at, fut) for at, fut in self._waiters if at > self.now]
        for _, fut in due:
            if not fut.done():
                fut.set_result(None)
        await settle()


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeLedger:
    """In-memory ledger recording every submitted transaction."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.status_by_kind: dict[str, bool] = {"buy": True, "approve": True, "sell": True}
        self.send_errors: dict[str, Exception] = {}
        self.balances: dict[str, int] = {}
        self.allowances: dict[str, int] = {}
        self.decimals: dict[str, int] = {}
        self.decimals_error: Exception | None = None
        self.balance_error: Exception | None = None
        self.buy_gate: asyncio.Event | None = None
        self.head = 0
        self.logs: list[dict[str, Any]] = []
        self.log_queries: list[tuple[int, int]] = []
        self._kinds: dict[str, str] = {}

    @property
    def wallet_address(self) -> str:
        return WALLET

    def sent_kinds(self) -> list[str]:
        return [tx["kind"] for tx in self.sent]

    def _record(self, kind: str, **fields: Any) -> str:
        error = self.send_errors.get(kind)
        if error is not None:
            raise error
        tx_hash = "0x" + format(len(self.sent) + 1, "064x")
        self.sent.append({"kind": kind, "hash": tx_hash, **fields})
        self._kinds[tx_hash] = kind
        return tx_hash

    async def block_number(self) -> int:
        return self.head

    async def get_logs(self, from_block: int, to_block: int, topics: list[str]) -> list[dict[str, Any]]:
        self.log_queries.append((from_block, to_block))
        return [
            row
            for row in self.logs
            if from_block <= int(row["blockNumber"]) <= to_block and row["topics"][:1] == topics[:1]
        ]

    async def send_buy(self, token_address: str, funding_wei: int, min_tokens_out: int, gas_limit: int) -> str:
        if self.buy_gate is not None:
            await self.buy_gate.wait()
        return self._record("buy", token=token_address, value=funding_wei, min_out=min_tokens_out, gas=gas_limit)

    async def send_sell(self, token_address: str, token_amount: int, min_funding_out: int, gas_limit: int) -> str:
        return self._record("sell", token=token_address, amount=token_amount, min_out=min_funding_out, gas=gas_limit)

    async def send_approve(self, token_address: str, spender: str, amount: int, gas_limit: int) -> str:
        return self._record("approve", token=token_address, spender=spender, amount=amount, gas=gas_limit)

    async def wait_for_receipt(self, tx_hash: str, confirmations: int) -> TxReceipt:
        kind = self._kinds[tx_hash]
        return TxReceipt(tx_hash=tx_hash, status=self.status_by_kind.get(kind, True), block_number=self.head)

    async def token_balance(self, token_address: str) -> int:
        if self.balance_error is not None:
            raise self.balance_error
        return self.balances.get(normalize_address(token_address), 0)

    async def token_decimals(self, token_address: str) -> int:
        if self.decimals_error is not None:
            raise self.decimals_error
        return self.decimals.get(normalize_address(token_address), 18)

    async def token_allowance(self, token_address: str, spender: str) -> int:
        return self.allowances.get(normalize_address(token_address), 0)
