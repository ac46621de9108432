"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cow_settlement_sync.backoff import BackoffExecutor, BackoffPolicy
from cow_settlement_sync.chain.models import Block, ChainTransaction, LogEntry
from cow_settlement_sync.enrichment.models import OrderFill
from cow_settlement_sync.networks import SETTLEMENT_CONTRACT_ADDRESS, NetworkConfig
from cow_settlement_sync.storage.models import SettlementTradeModel
from cow_settlement_sync.storage.repos import TradeRecord
from cow_settlement_sync.storage.store import TradeStoreError

OTHER_CONTRACT = "0x1111111111111111111111111111111111111111"
WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"


def tx_hash(n: int) -> str:
    return "0x" + format(n, "064x")


async def stored_fills(session: AsyncSession, chain_id: int, tx: str) -> list[TradeRecord]:
    """Stored fills of one transaction ordered by fill index."""
    result = await session.execute(
        select(SettlementTradeModel)
        .where(SettlementTradeModel.chain_id == chain_id, SettlementTradeModel.tx_hash == tx.lower())
        .order_by(SettlementTradeModel.fill_index)
    )
    return [TradeRecord.from_model(m) for m in result.scalars().all()]


def make_block(number: int, transactions: Iterable[tuple[str, str | None]] = ()) -> Block:
    """Build a block whose transactions are (hash, to) pairs."""
    return Block(
        number=number,
        hash="0x" + format(number, "064x"),
        timestamp=datetime.fromtimestamp(1_700_000_000 + number * 12, tz=UTC),
        transactions=tuple(ChainTransaction(hash=h, to=to) for h, to in transactions),
    )


def make_fill(kind: str = "sell", sell_amount: str = "1000000000000000000") -> OrderFill:
    return OrderFill(
        sell_token=WETH,
        buy_token=USDC,
        sell_amount=sell_amount,
        buy_amount="3500000000",
        executed_sell_amount=sell_amount,
        executed_sell_amount_before_fees=sell_amount,
        executed_buy_amount="3500000000",
        kind=kind,  # type: ignore[arg-type]
        receiver="0x2222222222222222222222222222222222222222",
        uid="0x" + "ab" * 56,
    )


class FakeBlockSource:
    """In-memory block source; blocks not listed are empty up to the head."""

    def __init__(self, head: int, blocks: dict[int, Block] | None = None, *, earliest: int = 0) -> None:
        self.head = head
        self.blocks = blocks or {}
        self.earliest = earliest
        self.block_calls: list[int] = []
        self.log_calls: list[tuple[int, int]] = []
        self.block_errors: dict[int, Exception] = {}
        self.log_errors: dict[tuple[int, int], Exception] = {}
        self.closed = False

    async def latest_block_number(self) -> int:
        return self.head

    async def get_block(self, number: int, *, include_transactions: bool = True) -> Block | None:
        self.block_calls.append(number)
        if number in self.block_errors:
            raise self.block_errors[number]
        if number < self.earliest or number > self.head:
            return None
        return self.blocks.get(number) or make_block(number)

    async def get_trade_logs(self, settlement_contract: str, from_block: int, to_block: int) -> list[LogEntry]:
        self.log_calls.append((from_block, to_block))
        if (from_block, to_block) in self.log_errors:
            raise self.log_errors[(from_block, to_block)]
        return [
            LogEntry(block_number=number, transaction_hash=tx.hash)
            for number, block in sorted(self.blocks.items())
            if from_block <= number <= to_block
            for tx in block.transactions
            if tx.to is not None and tx.to.lower() == settlement_contract.lower()
        ]

    async def aclose(self) -> None:
        self.closed = True


class FakeFillsClient:
    """Returns canned fills per transaction hash and records every call."""

    def __init__(self, fills: dict[str, list[OrderFill]] | None = None) -> None:
        self.fills = fills or {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.closed = False

    async def fetch_order_fills(self, tx_hash: str) -> list[OrderFill]:
        self.calls.append(tx_hash)
        if tx_hash in self.errors:
            raise self.errors[tx_hash]
        return list(self.fills.get(tx_hash, []))

    async def aclose(self) -> None:
        self.closed = True


class MemoryTradeStore:
    """Dict-backed store keyed like the database table."""

    def __init__(self, chain_id: int = 1) -> None:
        self.chain_id = chain_id
        self.records: dict[tuple[str, int], TradeRecord] = {}
        self.failing_fills: set[tuple[str, int]] = set()
        self.prune_error: Exception | None = None
        self.upsert_calls = 0
        self.closed = False

    async def exists(self, tx_hash: str) -> bool:
        return any(key[0] == tx_hash.lower() for key in self.records)

    async def upsert(self, record: TradeRecord) -> None:
        self.upsert_calls += 1
        key = (record.tx_hash.lower(), record.fill_index)
        if key in self.failing_fills:
            raise TradeStoreError("store busy")
        self.records[key] = record

    async def prune_surplus_fills(self, tx_hash: str, fill_count: int) -> int:
        if self.prune_error is not None:
            raise self.prune_error
        stale = [k for k in self.records if k[0] == tx_hash.lower() and k[1] >= fill_count]
        for key in stale:
            del self.records[key]
        return len(stale)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def network() -> NetworkConfig:
    """Ethereum mainnet configuration pointing at a dummy RPC."""
    return NetworkConfig(
        chain_id=1,
        name="Ethereum Mainnet",
        settlement_contract=SETTLEMENT_CONTRACT_ADDRESS,
        api_base_url="https://api.cow.fi/mainnet/api/v1",
        rpc_url="https://rpc.example.org",
        block_time_seconds=12.0,
    )


@pytest.fixture
def settlement_contract() -> str:
    return SETTLEMENT_CONTRACT_ADDRESS


@pytest.fixture
def fake_sleep() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def fast_backoff() -> BackoffExecutor:
    """Backoff with two retries and no real waiting."""
    return BackoffExecutor(
        BackoffPolicy(max_retries=2, base_delay=0.0, max_delay=0.0),
        sleep=AsyncMock(return_value=None),
    )


@pytest.fixture
def memory_store() -> MemoryTradeStore:
    return MemoryTradeStore()


@pytest.fixture
def fills_client() -> FakeFillsClient:
    return FakeFillsClient()
