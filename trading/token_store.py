"""Persisted per-token lifecycle records and the in-flight processing guard."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterator

from utils.addressing import normalize_address
from utils.state_file import StateFileError, read_json, write_json

logger = logging.getLogger(__name__)

# Keys written by older deployments of the bot.
_LEGACY_KEYS = {"buyTx": "buyTxHash", "sellTx": "sellTxHash"}


class MalformedRecordError(ValueError):
    """Raised when a persisted record cannot be interpreted."""


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise MalformedRecordError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _optional_ms(payload: dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedRecordError(f"{key} must be a number, got {type(value).__name__}")
    if not math.isfinite(value):
        raise MalformedRecordError(f"{key} must be finite, got {value}")
    return int(value)


@dataclass
class TokenRecord:
    token_address: str
    bought_at: int | None = None
    buy_tx_hash: str | None = None
    sold_at: int | None = None
    sell_tx_hash: str | None = None

    @property
    def is_bought(self) -> bool:
        return bool(self.buy_tx_hash)

    @property
    def is_sold(self) -> bool:
        return bool(self.sell_tx_hash)

    @property
    def pending_sell(self) -> bool:
        return self.is_bought and not self.is_sold

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.bought_at is not None:
            out["boughtAt"] = self.bought_at
        if self.buy_tx_hash:
            out["buyTxHash"] = self.buy_tx_hash
        if self.sold_at is not None:
            out["soldAt"] = self.sold_at
        if self.sell_tx_hash:
            out["sellTxHash"] = self.sell_tx_hash
        return out

    @classmethod
    def from_dict(cls, token_address: str, payload: Any) -> "TokenRecord":
        if not isinstance(payload, dict):
            raise MalformedRecordError(f"record must be an object, got {type(payload).__name__}")
        row = dict(payload)
        for legacy, current in _LEGACY_KEYS.items():
            if current not in row and legacy in row:
                row[current] = row[legacy]
        record = cls(
            token_address=normalize_address(token_address),
            bought_at=_optional_ms(row, "boughtAt"),
            buy_tx_hash=_optional_str(row, "buyTxHash"),
            sold_at=_optional_ms(row, "soldAt"),
            sell_tx_hash=_optional_str(row, "sellTxHash"),
        )
        if record.is_sold and not record.is_bought:
            raise MalformedRecordError("sellTxHash present without buyTxHash")
        return record


class TokenStore:
    """Durable mapping of lowercased token address -> TokenRecord.

    The whole file is rewritten after every mutation. Entries that fail to
    parse are carried through untouched so this process never drops them.
    A malformed entry with any truthy ``buyTxHash`` (or legacy ``buyTx``)
    still counts as bought, whatever its type, so it is never bought twice.
    """

    def __init__(self, path: str, *, lock_timeout_seconds: float = 2.0) -> None:
        self.path = path
        self.lock_timeout_seconds = float(lock_timeout_seconds)
        self._records: dict[str, TokenRecord] = {}
        self._malformed: dict[str, Any] = {}

    @classmethod
    def load(cls, path: str, *, lock_timeout_seconds: float = 2.0) -> "TokenStore":
        store = cls(path, lock_timeout_seconds=lock_timeout_seconds)
        try:
            payload = read_json(path, timeout_seconds=lock_timeout_seconds)
        except (StateFileError, OSError) as exc:
            logger.warning("STATE_LOAD_FAILED path=%s err=%s; starting with an empty store", path, exc)
            return store
        if payload is None:
            return store
        if not isinstance(payload, dict):
            logger.warning("STATE_LOAD_FAILED path=%s err=top-level value is not an object", path)
            return store

        for raw_key, raw_record in payload.items():
            key = normalize_address(raw_key)
            try:
                store._records[key] = TokenRecord.from_dict(key, raw_record)
            except (MalformedRecordError, ValueError, OverflowError) as exc:
                logger.warning("STATE_MALFORMED_RECORD token=%s err=%s", key, exc)
                store._malformed[key] = raw_record
        logger.info(
            "STATE_LOADED path=%s records=%s pending_sell=%s malformed=%s",
            path,
            len(store._records),
            sum(1 for r in store._records.values() if r.pending_sell),
            len(store._malformed),
        )
        return store

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, token_address: object) -> bool:
        return normalize_address(str(token_address)) in self._records

    def get(self, token_address: str) -> TokenRecord | None:
        return self._records.get(normalize_address(token_address))

    def records(self) -> Iterator[TokenRecord]:
        return iter(list(self._records.values()))

    def malformed_keys(self) -> list[str]:
        return sorted(self._malformed)

    def is_bought(self, token_address: str) -> bool:
        key = normalize_address(token_address)
        record = self._records.get(key)
        if record is not None:
            return record.is_bought
        raw = self._malformed.get(key)
        if isinstance(raw, dict):
            return bool(raw.get("buyTxHash") or raw.get("buyTx"))
        return False

    def pending_sells(self) -> list[TokenRecord]:
        return [record for record in self._records.values() if record.pending_sell]

    def record_buy(self, token_address: str, tx_hash: str, bought_at: int) -> TokenRecord:
        key = normalize_address(token_address)
        if self.is_bought(key):
            raise ValueError(f"token already has a buy recorded: {key}")
        record = TokenRecord(token_address=key, bought_at=int(bought_at), buy_tx_hash=str(tx_hash))
        self._records[key] = record
        self._malformed.pop(key, None)
        self.flush()
        return record

    def record_sell(self, token_address: str, tx_hash: str, sold_at: int) -> TokenRecord:
        key = normalize_address(token_address)
        record = self._records.get(key)
        if record is None or not record.is_bought:
            raise ValueError(f"cannot record a sell before a buy: {key}")
        record.sold_at = int(sold_at)
        record.sell_tx_hash = str(tx_hash)
        self.flush()
        return record

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self._malformed)
        for key, record in self._records.items():
            payload[key] = record.to_dict()
        return payload

    def flush(self) -> None:
        write_json(self.path, self.to_payload(), timeout_seconds=self.lock_timeout_seconds)


class ProcessingGuard:
    """Token addresses currently being handled in this process."""

    def __init__(self) -> None:
        self._active: set[str] = set()

    def __contains__(self, token_address: object) -> bool:
        return normalize_address(str(token_address)) in self._active

    def __len__(self) -> int:
        return len(self._active)

    def try_acquire(self, token_address: str) -> bool:
        key = normalize_address(token_address)
        if key in self._active:
            return False
        self._active.add(key)
        return True

    def release(self, token_address: str) -> None:
        self._active.discard(normalize_address(token_address))


@dataclass
class EngineState:
    store: TokenStore
    guard: ProcessingGuard = field(default_factory=ProcessingGuard)

    def should_handle(self, token_address: str) -> bool:
        """True when the token is neither bought already nor in flight."""
        return not self.store.is_bought(token_address) and token_address not in self.guard
