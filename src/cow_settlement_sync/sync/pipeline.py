"""Block processing pipeline shared by the historical and realtime syncs.

For a block the pipeline fetches it, selects settlement transactions, skips
transactions that are already stored, fetches their order fills and writes
one trade record per fill. ``run_range`` walks a block range in either
direction and applies one of two checkpoint policies:

- ``EVERY_BLOCK``: a failed block is logged and counted and the walk goes on;
  the checkpoint follows every visited block (historical backfill).
- ``FULL_BATCH``: the first failed block aborts the walk; the checkpoint only
  moves once the whole range succeeded (realtime polling).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from cow_settlement_sync.backoff import BackoffExecutor
from cow_settlement_sync.chain.client import BlockSource
from cow_settlement_sync.chain.models import SettlementTransaction
from cow_settlement_sync.chain.settlement import filter_settlement_transactions
from cow_settlement_sync.enrichment.orders_api import OrderFillsClient
from cow_settlement_sync.networks import NetworkConfig
from cow_settlement_sync.storage.repos import TradeRecord
from cow_settlement_sync.storage.store import TradeStore, TradeStoreError
from cow_settlement_sync.sync.progress import ProgressTracker

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    """Block walk direction."""

    ASCENDING = "ascending"
    DESCENDING = "descending"


class CheckpointPolicy(str, Enum):
    """When the last-processed checkpoint advances."""

    EVERY_BLOCK = "every_block"
    FULL_BATCH = "full_batch"


class BlockProcessingError(Exception):
    """Raised when a block could not be fully processed."""

    def __init__(self, block_number: int, message: str) -> None:
        super().__init__(f"Block {block_number}: {message}")
        self.block_number = block_number


@dataclass(frozen=True)
class BlockOutcome:
    """Result of processing one block."""

    block_number: int
    found: bool
    settlements: int = 0
    saved: int = 0
    skipped: int = 0


def block_sequence(first: int, last: int, direction: Direction) -> range:
    """Inclusive block numbers from ``first`` to ``last`` in walk order."""
    if direction is Direction.ASCENDING:
        if first > last:
            raise ValueError(f"Ascending range must have first <= last (got {first}..{last})")
        return range(first, last + 1)
    if first < last:
        raise ValueError(f"Descending range must have first >= last (got {first}..{last})")
    return range(first, last - 1, -1)


class BlockPipeline:
    """Turns blocks into persisted trade records for one network."""

    def __init__(
        self,
        network: NetworkConfig,
        block_source: BlockSource,
        fills_client: OrderFillsClient,
        store: TradeStore,
        progress: ProgressTracker,
        *,
        backoff: BackoffExecutor,
        skip_known: bool = True,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        """Initialize the pipeline.

        Args:
            network: Network being synced.
            block_source: RPC block source.
            fills_client: Settlement API client.
            store: Network-scoped trade store.
            progress: Tracker updated after every unit of work.
            backoff: Retry wrapper for every network-bound call.
            skip_known: Skip transactions that already have stored fills.
            sleep: Awaitable sleep used for cooldowns (injectable for tests).
        """
        self.network = network
        self.progress = progress
        self._source = block_source
        self._fills = fills_client
        self._store = store
        self._backoff = backoff
        self._skip_known = skip_known
        self._sleep = sleep

    async def _is_known(self, settlement: SettlementTransaction) -> bool:
        if not self._skip_known:
            return False
        try:
            return await self._store.exists(settlement.hash)
        except TradeStoreError as e:
            # Fall through to a normal write; upserts are idempotent.
            logger.error("Duplicate check failed for %s: %s", settlement.hash, e)
            self.progress.record_error()
            return False

    async def process_settlement(self, settlement: SettlementTransaction) -> tuple[int, bool]:
        """Enrich and persist one settlement transaction.

        Returns:
            (records saved, whether the transaction was skipped as known).

        Raises:
            BlockProcessingError: If the order fills could not be fetched.
        """
        if await self._is_known(settlement):
            logger.debug("Skipping known settlement %s", settlement.hash)
            self.progress.record_skipped()
            return 0, True

        try:
            fills = await self._backoff.run(
                lambda: self._fills.fetch_order_fills(settlement.hash),
                f"fetch_order_fills({settlement.hash})",
            )
        except Exception as e:
            raise BlockProcessingError(
                settlement.block_number, f"order fills for {settlement.hash} unavailable: {e}"
            ) from e

        self.progress.record_events(len(fills))
        if not fills:
            logger.info("No orders found for settlement %s", settlement.hash)

        saved = 0
        failed = 0
        for index, fill in enumerate(fills):
            record = TradeRecord.from_fill(
                chain_id=self.network.chain_id,
                settlement=settlement,
                fill=fill,
                fill_index=index,
            )
            try:
                await self._store.upsert(record)
            except TradeStoreError as e:
                logger.error("Failed to store fill %d of %s: %s", index, settlement.hash, e)
                self.progress.record_error()
                failed += 1
                continue
            saved += 1
            logger.debug(
                "Saved %s order %s -> %s (block %d)",
                fill.kind,
                fill.sell_amount,
                fill.buy_amount,
                settlement.block_number,
            )

        if failed:
            # A partially stored transaction would look known to the next run.
            saved = 0 if await self._forget(settlement) else saved
        elif not self._skip_known:
            # Only re-processing a stored transaction can leave stale fill rows behind.
            try:
                await self._store.prune_surplus_fills(settlement.hash, len(fills))
            except TradeStoreError as e:
                logger.error("Failed to prune stale fills of %s: %s", settlement.hash, e)
                self.progress.record_error()

        for _ in range(saved):
            self.progress.record_saved()
        self.progress.record_processed()
        return saved, False

    async def _forget(self, settlement: SettlementTransaction) -> bool:
        """Drop every stored fill of a transaction so a re-run fetches it again."""
        try:
            await self._store.prune_surplus_fills(settlement.hash, 0)
        except TradeStoreError as e:
            logger.error(
                "Failed to roll back partial fills of %s; re-run with reprocessing to repair it: %s",
                settlement.hash,
                e,
            )
            self.progress.record_error()
            return False
        logger.warning("Rolled back partial fills of %s; it will be retried on the next run", settlement.hash)
        return True

    async def process_block(self, number: int) -> BlockOutcome:
        """Fetch one block and persist the fills of its settlement transactions.

        Raises:
            BlockProcessingError: If the block or any of its fills could not be fetched.
        """
        self.progress.set_current_block(number)
        try:
            block = await self._backoff.run(
                lambda: self._source.get_block(number, include_transactions=True),
                f"get_block({number})",
            )
        except Exception as e:
            raise BlockProcessingError(number, f"fetch failed: {e}") from e

        if block is None:
            logger.warning("Block %d not found on %s; skipping", number, self.network.label)
            return BlockOutcome(block_number=number, found=False)

        settlements = filter_settlement_transactions(block, self.network.settlement_contract)
        if not settlements:
            return BlockOutcome(block_number=number, found=True)

        logger.info("Block %d: found %d settlement transactions", number, len(settlements))
        saved = 0
        skipped = 0
        for settlement in settlements:
            tx_saved, tx_skipped = await self.process_settlement(settlement)
            saved += tx_saved
            skipped += int(tx_skipped)

        return BlockOutcome(
            block_number=number,
            found=True,
            settlements=len(settlements),
            saved=saved,
            skipped=skipped,
        )

    async def cooldown(self, seconds: float) -> None:
        """Sleep between blocks with the tracker's cooldown flag raised."""
        if seconds <= 0:
            return
        self.progress.begin_cooldown(seconds)
        try:
            await self._sleep(seconds)
        finally:
            self.progress.end_cooldown()

    async def run_range(
        self,
        first: int,
        last: int,
        *,
        direction: Direction,
        policy: CheckpointPolicy,
        cooldown_seconds: float = 0.0,
    ) -> list[BlockOutcome]:
        """Process blocks ``first`` through ``last`` inclusive.

        Args:
            first: First block to visit.
            last: Final block to visit.
            direction: Walk direction; must agree with the order of first/last.
            policy: Failure and checkpoint policy.
            cooldown_seconds: Pause between blocks, skipped after the final one.

        Returns:
            Outcomes of the successfully processed blocks in visit order.

        Raises:
            BlockProcessingError: Under FULL_BATCH, on the first failed block.
        """
        outcomes: list[BlockOutcome] = []
        for number in block_sequence(first, last, direction):
            try:
                outcomes.append(await self.process_block(number))
            except BlockProcessingError as e:
                if policy is CheckpointPolicy.FULL_BATCH:
                    raise
                logger.error("Error processing block %d on %s: %s", number, self.network.label, e)
                self.progress.record_error()

            if policy is CheckpointPolicy.EVERY_BLOCK:
                self.progress.set_last_processed_block(number)
            if number != last:
                await self.cooldown(cooldown_seconds)

        if policy is CheckpointPolicy.FULL_BATCH:
            self.progress.set_last_processed_block(last)
        return outcomes
