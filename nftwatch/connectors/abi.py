"""Minimal ABI helpers for decoding raw eth_getLogs / eth_call payloads.

Logs are decoded by slicing 32-byte words out of the hex data, the same way
for every marketplace; only the word layout differs per event.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from web3 import Web3

WORD = 64  # hex chars per 32-byte word


@lru_cache(maxsize=128)
def event_topic(signature: str) -> str:
    """keccak256 topic hash of an event signature, 0x-prefixed."""
    return Web3.to_hex(Web3.keccak(text=signature))


@lru_cache(maxsize=32)
def function_selector(signature: str) -> str:
    """4-byte function selector, 0x-prefixed."""
    return Web3.to_hex(Web3.keccak(text=signature))[:10]


# Token transfer / metadata events
TRANSFER_TOPIC = event_topic("Transfer(address,address,uint256)")
TRANSFER_SINGLE_TOPIC = event_topic("TransferSingle(address,address,address,uint256,uint256)")
URI_TOPIC = event_topic("URI(string,uint256)")

TOKEN_URI_SELECTOR = function_selector("tokenURI(uint256)")  # 0xc87b56dd
URI_SELECTOR = function_selector("uri(uint256)")  # 0x0e89341c


def strip_hex(data: str) -> str:
    return data[2:] if data.startswith("0x") else data


def word(data: str, index: int) -> str:
    """Return the index-th 32-byte word of hex data (no 0x prefix).

    Raises:
        ValueError: If the data is too short.
    """
    raw = strip_hex(data)
    chunk = raw[index * WORD : (index + 1) * WORD]
    if len(chunk) != WORD:
        raise ValueError(f"log data too short for word {index}")
    return chunk


def word_at(data: str, byte_offset: int) -> str:
    """Return the word starting at a byte offset (dynamic ABI types)."""
    if byte_offset % 32:
        raise ValueError(f"unaligned ABI offset {byte_offset}")
    return word(data, byte_offset // 32)


def to_int(hex_word: str) -> int:
    return int(hex_word, 16)


def to_address(hex_word: str) -> str:
    """Right-most 20 bytes of a word or padded topic, lower-cased and 0x-prefixed."""
    return "0x" + strip_hex(hex_word)[-40:].lower()


def to_bytes32(hex_word: str) -> str:
    return "0x" + strip_hex(hex_word).lower()


def uint_word(value: int) -> str:
    """Encode an unsigned int as one 32-byte word (no prefix)."""
    return f"{value:064x}"


def decode_string(data: str) -> str | None:
    """Decode an ABI-encoded dynamic `string` return value / log data field.

    Returns None for empty or malformed payloads.
    """
    raw = strip_hex(data)
    if len(raw) < 2 * WORD:
        return None
    try:
        offset = to_int(raw[:WORD]) * 2
        length = to_int(raw[offset : offset + WORD])
        body = raw[offset + WORD : offset + WORD + length * 2]
        if len(body) != length * 2:
            return None
        text = bytes.fromhex(body).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None
    return text or None


def topic(log: dict[str, Any], index: int) -> str | None:
    topics = log.get("topics") or []
    if index >= len(topics):
        return None
    return topics[index]


def hex_to_int(value: str | int | None) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)
