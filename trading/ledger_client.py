"""Ledger access: transaction submission, confirmations, token reads and log queries."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from eth_account import Account
from web3 import HTTPProvider, Web3
from web3.contract import Contract
from web3.middleware import ExtraDataToPOAMiddleware

import config
from utils.addressing import hex_text, normalize_address

logger = logging.getLogger(__name__)


ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]


SALE_CONTRACT_ABI: list[dict[str, Any]] = [
    {
        "name": "buy",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "fundingAmount", "type": "uint256"},
            {"name": "minTokensOut", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "sell",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "tokenAmount", "type": "uint256"},
            {"name": "minFundingOut", "type": "uint256"},
        ],
        "outputs": [],
    },
]


class LedgerError(RuntimeError):
    """Raised when the ledger client cannot be built or refuses to submit."""


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    status: bool
    block_number: int = 0


class LedgerClient(Protocol):
    """Everything the engine needs from the chain. All calls are suspension points."""

    @property
    def wallet_address(self) -> str: ...

    async def block_number(self) -> int: ...

    async def get_logs(self, from_block: int, to_block: int, topics: list[str]) -> list[dict[str, Any]]: ...

    async def send_buy(self, token_address: str, funding_wei: int, min_tokens_out: int, gas_limit: int) -> str: ...

    async def send_sell(self, token_address: str, token_amount: int, min_funding_out: int, gas_limit: int) -> str: ...

    async def send_approve(self, token_address: str, spender: str, amount: int, gas_limit: int) -> str: ...

    async def wait_for_receipt(self, tx_hash: str, confirmations: int) -> TxReceipt: ...

    async def token_balance(self, token_address: str) -> int: ...

    async def token_decimals(self, token_address: str) -> int: ...

    async def token_allowance(self, token_address: str, spender: str) -> int: ...


def _log_to_dict(row: Any) -> dict[str, Any]:
    getter = row.get if hasattr(row, "get") else (lambda key, default=None: getattr(row, key, default))
    return {
        "address": normalize_address(getter("address", "")),
        "topics": [hex_text(t) for t in (getter("topics", []) or [])],
        "data": hex_text(getter("data", "")),
        "blockNumber": int(getter("blockNumber", 0) or 0),
        "transactionHash": hex_text(getter("transactionHash", "")),
        "logIndex": int(getter("logIndex", 0) or 0),
    }


class Web3LedgerClient:
    """Blocking web3 calls pushed to worker threads so the event loop stays free."""

    def __init__(
        self,
        *,
        rpc_urls: list[str] | None = None,
        private_key: str | None = None,
        sale_contract_address: str | None = None,
    ) -> None:
        self.providers = [p for p in (rpc_urls or [config.RPC_PRIMARY, config.RPC_SECONDARY]) if p]
        if not self.providers:
            raise LedgerError("RPC_PRIMARY/RPC_SECONDARY is empty")
        key = private_key if private_key is not None else config.PRIVATE_KEY
        if not key:
            raise LedgerError("PRIVATE_KEY is empty")

        self.provider_index = 0
        self.w3 = self._build_web3()
        if not self.w3.is_connected():
            raise LedgerError("Web3 not connected")

        self.account = Account.from_key(key)
        self._wallet = self.w3.to_checksum_address(self.account.address)
        if config.WALLET_ADDRESS and normalize_address(config.WALLET_ADDRESS) != normalize_address(self._wallet):
            raise LedgerError("WALLET_ADDRESS does not match PRIVATE_KEY")

        sale_address = sale_contract_address or config.SALE_CONTRACT_ADDRESS
        self.sale_address = self.w3.to_checksum_address(sale_address)
        self.sale: Contract = self.w3.eth.contract(address=self.sale_address, abi=SALE_CONTRACT_ABI)
        # Nonce selection and broadcast must not interleave between concurrent buys.
        self._send_lock = asyncio.Lock()

    def _build_web3(self) -> Web3:
        w3 = Web3(
            HTTPProvider(
                self.providers[self.provider_index],
                request_kwargs={"timeout": config.RPC_TIMEOUT_SECONDS},
            )
        )
        if config.POA_CHAIN:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        return w3

    def rotate_provider(self) -> None:
        if len(self.providers) <= 1:
            return
        self.provider_index = (self.provider_index + 1) % len(self.providers)
        self.w3 = self._build_web3()
        self.sale = self.w3.eth.contract(address=self.sale_address, abi=SALE_CONTRACT_ABI)
        logger.warning("RPC_ROTATE provider_index=%s", self.provider_index)

    @property
    def wallet_address(self) -> str:
        return self._wallet

    def _token(self, token_address: str) -> Contract:
        return self.w3.eth.contract(address=self.w3.to_checksum_address(token_address), abi=ERC20_ABI)

    async def block_number(self) -> int:
        return int(await asyncio.to_thread(lambda: self.w3.eth.block_number))

    async def get_logs(self, from_block: int, to_block: int, topics: list[str]) -> list[dict[str, Any]]:
        params = {"fromBlock": int(from_block), "toBlock": int(to_block), "topics": list(topics)}
        rows = await asyncio.to_thread(self.w3.eth.get_logs, params)
        return [_log_to_dict(row) for row in rows]

    async def token_balance(self, token_address: str) -> int:
        token = self._token(token_address)
        return int(await asyncio.to_thread(token.functions.balanceOf(self._wallet).call))

    async def token_decimals(self, token_address: str) -> int:
        token = self._token(token_address)
        return int(await asyncio.to_thread(token.functions.decimals().call))

    async def token_allowance(self, token_address: str, spender: str) -> int:
        token = self._token(token_address)
        spender_cs = self.w3.to_checksum_address(spender)
        return int(await asyncio.to_thread(token.functions.allowance(self._wallet, spender_cs).call))

    async def send_buy(self, token_address: str, funding_wei: int, min_tokens_out: int, gas_limit: int) -> str:
        call = self.sale.functions.buy(
            self.w3.to_checksum_address(token_address),
            int(funding_wei),
            int(min_tokens_out),
        )
        return await self._submit(call, gas_limit=gas_limit, value_wei=int(funding_wei))

    async def send_sell(self, token_address: str, token_amount: int, min_funding_out: int, gas_limit: int) -> str:
        call = self.sale.functions.sell(
            self.w3.to_checksum_address(token_address),
            int(token_amount),
            int(min_funding_out),
        )
        return await self._submit(call, gas_limit=gas_limit)

    async def send_approve(self, token_address: str, spender: str, amount: int, gas_limit: int) -> str:
        call = self._token(token_address).functions.approve(self.w3.to_checksum_address(spender), int(amount))
        return await self._submit(call, gas_limit=gas_limit)

    async def wait_for_receipt(self, tx_hash: str, confirmations: int) -> TxReceipt:
        receipt = await asyncio.to_thread(
            self.w3.eth.wait_for_transaction_receipt,
            tx_hash,
            timeout=int(config.TX_TIMEOUT_SECONDS),
        )
        block = int(receipt.get("blockNumber") or 0)
        needed = max(1, int(confirmations))
        while needed > 1:
            latest = await self.block_number()
            if latest - block + 1 >= needed:
                break
            await asyncio.sleep(1.0)
        return TxReceipt(tx_hash=tx_hash, status=int(receipt.get("status", 0)) == 1, block_number=block)

    def _gas_price_wei(self) -> int:
        cap = int(self.w3.to_wei(config.MAX_GAS_PRICE_GWEI, "gwei"))
        if config.GAS_PRICE_GWEI > 0:
            price = int(self.w3.to_wei(config.GAS_PRICE_GWEI, "gwei"))
        else:
            price = int(self.w3.eth.gas_price or 0)
        if cap > 0 and price > cap:
            obs_gwei = float(self.w3.from_wei(price, "gwei"))
            raise LedgerError(f"gas_price_too_high gwei={obs_gwei:.3f} cap_gwei={config.MAX_GAS_PRICE_GWEI:.3f}")
        return price

    def _build_sign_send(self, call: Any, gas_limit: int, value_wei: int) -> str:
        tx = call.build_transaction(
            {
                "from": self._wallet,
                "chainId": int(config.CHAIN_ID),
                "nonce": self.w3.eth.get_transaction_count(self._wallet, "pending"),
                "value": int(value_wei),
                "gas": int(gas_limit),
                "gasPrice": self._gas_price_wei(),
            }
        )
        signed = self.account.sign_transaction(tx)
        raw_tx = getattr(signed, "raw_transaction", None)
        if raw_tx is None:
            raw_tx = getattr(signed, "rawTransaction", None)
        if raw_tx is None:
            raise LedgerError("signed_tx_missing_raw_bytes")
        return hex_text(self.w3.eth.send_raw_transaction(raw_tx))

    async def _submit(self, call: Any, *, gas_limit: int, value_wei: int = 0) -> str:
        async with self._send_lock:
            return await asyncio.to_thread(self._build_sign_send, call, int(gas_limit), int(value_wei))
