"""Data models for chain access."""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any


def to_hex(value: Any) -> str:
    """Render a hash-like RPC value as a lowercase 0x-prefixed hex string."""
    if isinstance(value, str):
        return value.lower() if value.startswith(("0x", "0X")) else "0x" + value.lower()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    raise TypeError(f"Cannot render {type(value).__name__} as hex")


@dataclass(frozen=True)
class ChainTransaction:
    """A transaction as listed in a block body."""

    hash: str
    to: str | None = None

    @classmethod
    def from_rpc(cls, data: Any) -> "ChainTransaction":
        """Create a ChainTransaction from a web3 transaction or a bare hash."""
        if not isinstance(data, Mapping):
            return cls(hash=to_hex(data))
        to = data.get("to")
        return cls(hash=to_hex(data["hash"]), to=str(to) if to else None)


@dataclass(frozen=True)
class Block:
    """A block with its (possibly hash-only) transaction list."""

    number: int
    hash: str
    timestamp: datetime
    transactions: tuple[ChainTransaction, ...] = ()

    @classmethod
    def from_rpc(cls, data: Mapping[str, Any]) -> "Block":
        """Create a Block from a web3 ``eth_getBlockByNumber`` result."""
        return cls(
            number=int(data["number"]),
            hash=to_hex(data["hash"]),
            timestamp=datetime.fromtimestamp(int(data["timestamp"]), tz=UTC),
            transactions=tuple(ChainTransaction.from_rpc(tx) for tx in data.get("transactions", ())),
        )


@dataclass(frozen=True)
class SettlementTransaction:
    """A transaction sent to the settlement contract."""

    hash: str
    block_number: int
    block_timestamp: datetime
    to: str


@dataclass(frozen=True)
class LogEntry:
    """Location of an emitted event log."""

    block_number: int
    transaction_hash: str

    @classmethod
    def from_rpc(cls, data: Mapping[str, Any]) -> "LogEntry":
        """Create a LogEntry from a web3 ``eth_getLogs`` item."""
        return cls(
            block_number=int(data["blockNumber"]),
            transaction_hash=to_hex(data["transactionHash"]),
        )
