"""Address normalization helpers."""

from __future__ import annotations

from typing import Any

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_address(value: str | None) -> str:
    """Normalize on-chain address keys for internal maps/dedup."""
    return str(value or "").strip().lower()


def addresses_equal(left: str | None, right: str | None) -> bool:
    a = normalize_address(left)
    b = normalize_address(right)
    return bool(a) and a == b


def is_zero_address(value: str | None) -> bool:
    return normalize_address(value) == ZERO_ADDRESS


def hex_text(value: Any) -> str:
    """Render bytes-like or str values as lowercase 0x-prefixed hex."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = value.hex() if hasattr(value, "hex") and not isinstance(value, str) else str(value or "")
    text = text.strip().lower()
    if not text.startswith("0x"):
        text = "0x" + text
    return text


def topic_to_address(topic: Any) -> str:
    """Take the low 20 bytes of a 32-byte indexed topic."""
    clean = hex_text(topic)[2:].rjust(64, "0")
    return f"0x{clean[-40:]}"
