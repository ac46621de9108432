"""Tests for the historical backfill controller."""

from unittest.mock import AsyncMock

import pytest
from conftest import (
    FakeBlockSource,
    FakeFillsClient,
    MemoryTradeStore,
    make_block,
    make_fill,
    tx_hash,
)

from cow_settlement_sync.backoff import BackoffExecutor
from cow_settlement_sync.chain.client import BlockSourceTransientError
from cow_settlement_sync.enrichment.orders_api import SettlementApiTransientError
from cow_settlement_sync.networks import SETTLEMENT_CONTRACT_ADDRESS, NetworkConfig
from cow_settlement_sync.storage.database import DatabaseManager
from cow_settlement_sync.storage.store import TradeStore
from cow_settlement_sync.sync.historical import (
    HistoricalSyncController,
    HistoricalSyncError,
    SyncState,
    compute_target_block,
)


@pytest.fixture
def slow_chain() -> NetworkConfig:
    """A network producing one block per day, so one month is 30 blocks."""
    return NetworkConfig(
        chain_id=1,
        name="Ethereum Mainnet",
        settlement_contract=SETTLEMENT_CONTRACT_ADDRESS,
        api_base_url="https://api.cow.fi/mainnet/api/v1",
        rpc_url="https://rpc.example.org",
        block_time_seconds=86_400,
    )


@pytest.fixture
def source() -> FakeBlockSource:
    return FakeBlockSource(
        head=100,
        blocks={
            95: make_block(95, [(tx_hash(95), SETTLEMENT_CONTRACT_ADDRESS)]),
            80: make_block(80, [(tx_hash(80), SETTLEMENT_CONTRACT_ADDRESS)]),
        },
    )


@pytest.fixture
def fills() -> FakeFillsClient:
    return FakeFillsClient({tx_hash(95): [make_fill()], tx_hash(80): [make_fill(), make_fill("buy")]})


def _controller(
    network: NetworkConfig,
    source: FakeBlockSource,
    fills: FakeFillsClient,
    store: MemoryTradeStore,
    backoff: BackoffExecutor,
    sleep: AsyncMock,
    **kwargs,
) -> HistoricalSyncController:
    kwargs.setdefault("months", 1)
    return HistoricalSyncController(network, source, fills, store, backoff=backoff, sleep=sleep, **kwargs)


def test_compute_target_block() -> None:
    assert compute_target_block(10_000_000, blocks_per_day=7200, months=4) == 10_000_000 - 864_000
    assert compute_target_block(1000, blocks_per_day=7200, months=4) == 0


class TestInitialize:
    """Tests for window computation."""

    @pytest.mark.asyncio
    async def test_window_from_lookback(
        self,
        slow_chain: NetworkConfig,
        source: FakeBlockSource,
        fills: FakeFillsClient,
        memory_store: MemoryTradeStore,
        fast_backoff: BackoffExecutor,
        fake_sleep: AsyncMock,
    ) -> None:
        controller = _controller(slow_chain, source, fills, memory_store, fast_backoff, fake_sleep)

        window = await controller.initialize()

        assert (window.latest_block, window.target_block) == (100, 70)
        assert window.block_count == 31
        assert controller.state is SyncState.INITIALIZED
        assert controller.progress.snapshot().target_block == 70

    def test_lookback_is_capped_unless_forced(
        self,
        slow_chain: NetworkConfig,
        source: FakeBlockSource,
        fills: FakeFillsClient,
        memory_store: MemoryTradeStore,
        fast_backoff: BackoffExecutor,
        fake_sleep: AsyncMock,
    ) -> None:
        capped = _controller(slow_chain, source, fills, memory_store, fast_backoff, fake_sleep, months=12)
        forced = _controller(
            slow_chain, source, fills, memory_store, fast_backoff, fake_sleep, months=12, force=True
        )

        assert capped.months == 6
        assert forced.months == 12

    @pytest.mark.asyncio
    async def test_target_moves_to_earliest_available_block(
        self,
        slow_chain: NetworkConfig,
        fills: FakeFillsClient,
        memory_store: MemoryTradeStore,
        fast_backoff: BackoffExecutor,
        fake_sleep: AsyncMock,
    ) -> None:
        pruned = FakeBlockSource(head=100, earliest=85)
        controller = _controller(slow_chain, pruned, fills, memory_store, fast_backoff, fake_sleep)

        window = await controller.initialize()

        assert window.target_block == 85

    @pytest.mark.asyncio
    async def test_fails_when_head_is_unavailable(
        self,
        slow_chain: NetworkConfig,
        fills: FakeFillsClient,
        memory_store: MemoryTradeStore,
        fast_backoff: BackoffExecutor,
        fake_sleep: AsyncMock,
    ) -> None:
        broken = FakeBlockSource(head=100, earliest=200)
        controller = _controller(slow_chain, broken, fills, memory_store, fast_backoff, fake_sleep)

        with pytest.raises(HistoricalSyncError):
            await controller.initialize()


class TestBlockScan:
    """Tests for the block-by-block scan."""

    @pytest.mark.asyncio
    async def test_visits_blocks_from_head_down_to_target(
        self,
        slow_chain: NetworkConfig,
        source: FakeBlockSource,
        fills: FakeFillsClient,
        memory_store: MemoryTradeStore,
        fast_backoff: BackoffExecutor,
        fake_sleep: AsyncMock,
    ) -> None:
        controller = _controller(slow_chain, source, fills, memory_store, fast_backoff, fake_sleep)
        await controller.initialize()
        source.block_calls.clear()

        snapshot = await controller.run()

        assert source.block_calls == list(range(100, 69, -1))
        assert controller.state is SyncState.DONE
        assert fills.calls == [tx_hash(95), tx_hash(80)]
        assert len(memory_store.records) == 3
        assert snapshot.saved_orders == 3
        assert snapshot.last_processed_block == 70

    @pytest.mark.asyncio
    async def test_cooldown_between_blocks_but_not_after_last(
        self,
        slow_chain: NetworkConfig,
        source: FakeBlockSource,
        fills: FakeFillsClient,
        memory_store: MemoryTradeStore,
        fast_backoff: BackoffExecutor,
        fake_sleep: AsyncMock,
    ) -> None:
        controller = _controller(slow_chain, source, fills, memory_store, fast_backoff, fake_sleep)

        await controller.run()

        assert [c.args[0] for c in fake_sleep.await_args_list] == [600.0] * 30

    @pytest.mark.asyncio
    async def test_block_errors_are_counted_and_skipped(
        self,
        slow_chain: NetworkConfig,
        source: FakeBlockSource,
        fills: FakeFillsClient,
        memory_store: MemoryTradeStore,
        fast_backoff: BackoffExecutor,
        fake_sleep: AsyncMock,
    ) -> None:
        source.block_errors[90] = ValueError("malformed block body")
        fills.errors[tx_hash(95)] = SettlementApiTransientError("api unavailable", status_code=503)
        controller = _controller(slow_chain, source, fills, memory_store, fast_backoff, fake_sleep)

        snapshot = await controller.run()

        assert snapshot.errors == 2
        assert controller.state is SyncState.DONE
        assert sorted(memory_store.records) == [(tx_hash(80), 0), (tx_hash(80), 1)]

    @pytest.mark.asyncio
    async def test_known_transactions_are_not_enriched(
        self,
        slow_chain: NetworkConfig,
        source: FakeBlockSource,
        fills: FakeFillsClient,
        memory_store: MemoryTradeStore,
        fast_backoff: BackoffExecutor,
        fake_sleep: AsyncMock,
    ) -> None:
        first = _controller(slow_chain, source, fills, memory_store, fast_backoff, fake_sleep)
        await first.run()
        stored = dict(memory_store.records)
        fills.calls.clear()

        second = _controller(slow_chain, source, fills, memory_store, fast_backoff, fake_sleep)
        snapshot = await second.run()

        assert fills.calls == []
        assert snapshot.skipped_duplicates == 2
        assert memory_store.records == stored

    @pytest.mark.asyncio
    async def test_partially_stored_transaction_is_retried_next_run(
        self,
        slow_chain: NetworkConfig,
        source: FakeBlockSource,
        fills: FakeFillsClient,
        memory_store: MemoryTradeStore,
        fast_backoff: BackoffExecutor,
        fake_sleep: AsyncMock,
    ) -> None:
        memory_store.failing_fills.add((tx_hash(80), 1))
        first = await _controller(slow_chain, source, fills, memory_store, fast_backoff, fake_sleep).run()

        assert first.errors == 1
        assert sorted(memory_store.records) == [(tx_hash(95), 0)]

        memory_store.failing_fills.clear()
        fills.calls.clear()
        second = await _controller(slow_chain, source, fills, memory_store, fast_backoff, fake_sleep).run()

        assert fills.calls == [tx_hash(80)]
        assert second.skipped_duplicates == 1
        assert memory_store.records[(tx_hash(80), 1)].kind == "buy"

    @pytest.mark.asyncio
    async def test_reprocess_replaces_known_transactions(
        self,
        slow_chain: NetworkConfig,
        source: FakeBlockSource,
        fills: FakeFillsClient,
        memory_store: MemoryTradeStore,
        fast_backoff: BackoffExecutor,
        fake_sleep: AsyncMock,
    ) -> None:
        await _controller(slow_chain, source, fills, memory_store, fast_backoff, fake_sleep).run()
        fills.fills[tx_hash(80)] = [make_fill("buy")]
        fills.calls.clear()

        controller = _controller(
            slow_chain, source, fills, memory_store, fast_backoff, fake_sleep, reprocess=True
        )
        snapshot = await controller.run()

        assert fills.calls == [tx_hash(95), tx_hash(80)]
        assert snapshot.skipped_duplicates == 0
        assert sorted(memory_store.records) == [(tx_hash(80), 0), (tx_hash(95), 0)]
        assert memory_store.records[(tx_hash(80), 0)].kind == "buy"

    @pytest.mark.asyncio
    async def test_unreachable_database_is_counted_and_scan_continues(
        self,
        slow_chain: NetworkConfig,
        source: FakeBlockSource,
        fills: FakeFillsClient,
        fast_backoff: BackoffExecutor,
        fake_sleep: AsyncMock,
    ) -> None:
        # Nothing listens on port 1, so every connection attempt is refused.
        db = DatabaseManager("postgresql+asyncpg://u:p@127.0.0.1:1/db")
        store = TradeStore(db, slow_chain.chain_id)
        controller = _controller(slow_chain, source, fills, store, fast_backoff, fake_sleep)
        await controller.initialize()
        source.block_calls.clear()

        try:
            snapshot = await controller.run()
        finally:
            await db.dispose_async()

        assert controller.state is SyncState.DONE
        assert source.block_calls == list(range(100, 69, -1))
        assert fills.calls == [tx_hash(95), tx_hash(80)]
        assert snapshot.saved_orders == 0
        # Per transaction: the duplicate check, each fill write and the rollback fail.
        assert snapshot.errors == 7
        assert snapshot.last_processed_block == 70


class TestLogScan:
    """Tests for the log-driven scan."""

    @pytest.mark.asyncio
    async def test_processes_only_blocks_with_trades(
        self,
        slow_chain: NetworkConfig,
        source: FakeBlockSource,
        fills: FakeFillsClient,
        memory_store: MemoryTradeStore,
        fast_backoff: BackoffExecutor,
        fake_sleep: AsyncMock,
    ) -> None:
        controller = _controller(
            slow_chain,
            source,
            fills,
            memory_store,
            fast_backoff,
            fake_sleep,
            scan_mode="logs",
            log_chunk_size=10,
            min_log_chunk_size=5,
            chunk_delay_seconds=2.0,
        )
        await controller.initialize()
        source.block_calls.clear()

        snapshot = await controller.run()

        assert source.log_calls == [(91, 100), (81, 90), (71, 80), (70, 70)]
        assert source.block_calls == [95, 80]
        assert fills.calls == [tx_hash(95), tx_hash(80)]
        assert [c.args[0] for c in fake_sleep.await_args_list] == [2.0] * 3
        assert snapshot.saved_orders == 3
        assert snapshot.last_processed_block == 70

    @pytest.mark.asyncio
    async def test_failed_chunk_is_split(
        self,
        slow_chain: NetworkConfig,
        source: FakeBlockSource,
        fills: FakeFillsClient,
        memory_store: MemoryTradeStore,
        fast_backoff: BackoffExecutor,
        fake_sleep: AsyncMock,
    ) -> None:
        source.log_errors[(81, 90)] = BlockSourceTransientError("block range too large")
        controller = _controller(
            slow_chain,
            source,
            fills,
            memory_store,
            fast_backoff,
            fake_sleep,
            scan_mode="logs",
            log_chunk_size=10,
            min_log_chunk_size=5,
        )

        await controller.run()

        assert source.log_calls == [
            (91, 100),
            (81, 90),
            (81, 90),
            (81, 90),
            (86, 90),
            (81, 85),
            (71, 80),
            (70, 70),
        ]
        assert fills.calls == [tx_hash(95), tx_hash(80)]

    @pytest.mark.asyncio
    async def test_minimum_chunk_falls_back_to_block_scan(
        self,
        slow_chain: NetworkConfig,
        source: FakeBlockSource,
        fills: FakeFillsClient,
        memory_store: MemoryTradeStore,
        fast_backoff: BackoffExecutor,
        fake_sleep: AsyncMock,
    ) -> None:
        source.log_errors[(96, 100)] = BlockSourceTransientError("query returned more than 10000 results")
        controller = _controller(
            slow_chain,
            source,
            fills,
            memory_store,
            fast_backoff,
            fake_sleep,
            scan_mode="logs",
            log_chunk_size=5,
            min_log_chunk_size=5,
            cooldown_seconds=0,
        )
        await controller.initialize()
        source.block_calls.clear()

        await controller.run()

        assert source.block_calls == [100, 99, 98, 97, 96, 95, 80]
        assert fills.calls == [tx_hash(95), tx_hash(80)]


@pytest.mark.asyncio
async def test_close_releases_resources(
    slow_chain: NetworkConfig,
    source: FakeBlockSource,
    fills: FakeFillsClient,
    memory_store: MemoryTradeStore,
    fast_backoff: BackoffExecutor,
    fake_sleep: AsyncMock,
) -> None:
    controller = _controller(slow_chain, source, fills, memory_store, fast_backoff, fake_sleep)

    await controller.close()

    assert source.closed and fills.closed and memory_store.closed
