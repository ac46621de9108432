"""Historical backfill: walk blocks backwards from the head to a target block.

The target is derived from a lookback window in 30-day months and the
network's estimated blocks per day. Blocks are visited strictly in
decreasing order with a long cooldown between blocks to stay under RPC
provider rate limits. A failed block is logged and counted and the walk
continues with the next, earlier block.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Literal

from cow_settlement_sync.backoff import BackoffExecutor
from cow_settlement_sync.chain.client import BlockSource
from cow_settlement_sync.enrichment.orders_api import OrderFillsClient
from cow_settlement_sync.networks import NetworkConfig
from cow_settlement_sync.storage.store import TradeStore
from cow_settlement_sync.sync.pipeline import (
    BlockPipeline,
    BlockProcessingError,
    CheckpointPolicy,
    Direction,
)
from cow_settlement_sync.sync.progress import ProgressSnapshot, ProgressTracker, format_report
from cow_settlement_sync.sync.ranges import BlockRangeQueue

logger = logging.getLogger(__name__)

DAYS_PER_MONTH = 30
DEFAULT_LOOKBACK_MONTHS = 4
DEFAULT_MAX_LOOKBACK_MONTHS = 6
DEFAULT_COOLDOWN_SECONDS = 600.0
DEFAULT_LOG_CHUNK_SIZE = 100
DEFAULT_MIN_LOG_CHUNK_SIZE = 10
DEFAULT_CHUNK_DELAY_SECONDS = 2.0

ScanMode = Literal["blocks", "logs"]


class SyncState(str, Enum):
    """Historical sync lifecycle states."""

    IDLE = "idle"
    INITIALIZED = "initialized"
    SCANNING = "scanning"
    DONE = "done"
    ERROR = "error"


class HistoricalSyncError(Exception):
    """Raised when the historical sync cannot determine its block window."""


@dataclass(frozen=True)
class SyncWindow:
    """Inclusive block window ``target_block..latest_block`` of a backfill."""

    latest_block: int
    target_block: int

    @property
    def block_count(self) -> int:
        return self.latest_block - self.target_block + 1


def compute_target_block(latest_block: int, *, blocks_per_day: int, months: int) -> int:
    """Block reached by looking ``months`` 30-day months back from ``latest_block``."""
    blocks_back = blocks_per_day * months * DAYS_PER_MONTH
    return max(latest_block - blocks_back, 0)


class HistoricalSyncController:
    """Backfills one network from the chain head down to a time-bounded target.

    Example:
        ```python
        controller = HistoricalSyncController(network, source, fills, store, backoff=executor)
        await controller.initialize()
        snapshot = await controller.run()
        await controller.close()
        ```
    """

    def __init__(
        self,
        network: NetworkConfig,
        block_source: BlockSource,
        fills_client: OrderFillsClient,
        store: TradeStore,
        *,
        backoff: BackoffExecutor,
        months: int = DEFAULT_LOOKBACK_MONTHS,
        max_months: int = DEFAULT_MAX_LOOKBACK_MONTHS,
        force: bool = False,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        scan_mode: ScanMode = "blocks",
        log_chunk_size: int = DEFAULT_LOG_CHUNK_SIZE,
        min_log_chunk_size: int = DEFAULT_MIN_LOG_CHUNK_SIZE,
        chunk_delay_seconds: float = DEFAULT_CHUNK_DELAY_SECONDS,
        reprocess: bool = False,
        progress: ProgressTracker | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        """Initialize the controller.

        Args:
            network: Network to backfill.
            block_source: RPC block source.
            fills_client: Settlement API client.
            store: Network-scoped trade store.
            backoff: Retry wrapper for every network-bound call.
            months: Lookback window in 30-day months.
            max_months: Cap on ``months`` unless ``force`` is set.
            force: Allow lookback windows beyond ``max_months``.
            cooldown_seconds: Pause between blocks.
            scan_mode: ``blocks`` visits every block; ``logs`` only visits
                blocks that emitted settlement Trade events.
            log_chunk_size: Block range per log request in log-scan mode.
            min_log_chunk_size: Failing ranges are not split below this size.
            chunk_delay_seconds: Pause between log chunks.
            reprocess: Re-fetch transactions that are already stored and
                replace their rows instead of skipping them.
            progress: Tracker to update; a new one is created if omitted.
            sleep: Awaitable sleep (injectable for tests).
        """
        if months < 1:
            raise ValueError("months must be >= 1")

        self.network = network
        self._source = block_source
        self._fills = fills_client
        self._store = store
        self._backoff = backoff
        self._months = months if force else min(months, max_months)
        if self._months != months:
            logger.warning(
                "Lookback of %d months exceeds the %d month limit; using %d (use force to override)",
                months,
                max_months,
                self._months,
            )
        self._cooldown = cooldown_seconds
        self._scan_mode = scan_mode
        self._log_chunk_size = log_chunk_size
        self._min_log_chunk_size = min_log_chunk_size
        self._chunk_delay = chunk_delay_seconds
        self._progress = progress or ProgressTracker()
        self._pipeline = BlockPipeline(
            network,
            block_source,
            fills_client,
            store,
            self._progress,
            backoff=backoff,
            skip_known=not reprocess,
            sleep=sleep,
        )

        self._state = SyncState.IDLE
        self._window: SyncWindow | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def progress(self) -> ProgressTracker:
        return self._progress

    @property
    def months(self) -> int:
        return self._months

    @property
    def window(self) -> SyncWindow | None:
        return self._window

    async def _is_available(self, number: int) -> bool:
        block = await self._backoff.run(
            lambda: self._source.get_block(number, include_transactions=False),
            f"get_block({number})",
        )
        return block is not None

    async def _resolve_available_target(self, latest: int, target: int) -> int:
        """Move the target forward to the earliest block the RPC node still serves."""
        if await self._is_available(target):
            return target
        if not await self._is_available(latest):
            raise HistoricalSyncError(f"Head block {latest} is not available on {self.network.label}")

        lo, hi = target, latest
        while lo + 1 < hi:
            mid = (lo + hi) // 2
            if await self._is_available(mid):
                hi = mid
            else:
                lo = mid
        logger.warning(
            "Target block %d is beyond the RPC node's history on %s; starting from block %d",
            target,
            self.network.label,
            hi,
        )
        return hi

    async def initialize(self) -> SyncWindow:
        """Determine the block window to backfill."""
        latest = await self._backoff.run(self._source.latest_block_number, "latest_block_number")
        target = compute_target_block(
            latest, blocks_per_day=self.network.blocks_per_day, months=self._months
        )
        target = await self._resolve_available_target(latest, target)

        self._window = SyncWindow(latest_block=latest, target_block=target)
        self._progress.set_current_block(latest)
        self._progress.set_target_block(target)
        self._state = SyncState.INITIALIZED
        logger.info(
            "Historical sync on %s: blocks %d down to %d (%d blocks, ~%d months)",
            self.network.label,
            latest,
            target,
            self._window.block_count,
            self._months,
        )
        return self._window

    async def _scan_blocks(self, window: SyncWindow) -> None:
        await self._pipeline.run_range(
            window.latest_block,
            window.target_block,
            direction=Direction.DESCENDING,
            policy=CheckpointPolicy.EVERY_BLOCK,
            cooldown_seconds=self._cooldown,
        )

    async def _scan_logs(self, window: SyncWindow) -> None:
        queue = BlockRangeQueue(
            window.target_block,
            window.latest_block,
            chunk_size=self._log_chunk_size,
            min_chunk_size=self._min_log_chunk_size,
            direction=Direction.DESCENDING,
        )
        contract = self.network.settlement_contract

        while (chunk := queue.next()) is not None:
            try:
                logs = await self._backoff.run(
                    lambda: self._source.get_trade_logs(contract, chunk.start, chunk.end),
                    f"get_trade_logs({chunk})",
                )
            except Exception as e:
                if queue.split(chunk):
                    logger.warning("Log scan of blocks %s failed (%s); splitting the range", chunk, e)
                    continue
                logger.warning(
                    "Log scan of blocks %s failed at minimum size (%s); scanning block by block", chunk, e
                )
                await self._pipeline.run_range(
                    chunk.end,
                    chunk.start,
                    direction=Direction.DESCENDING,
                    policy=CheckpointPolicy.EVERY_BLOCK,
                    cooldown_seconds=self._cooldown,
                )
            else:
                for number in sorted({log.block_number for log in logs}, reverse=True):
                    try:
                        await self._pipeline.process_block(number)
                    except BlockProcessingError as e:
                        logger.error("Error processing block %d on %s: %s", number, self.network.label, e)
                        self._progress.record_error()
                self._progress.set_current_block(chunk.start)
                self._progress.set_last_processed_block(chunk.start)

            if not queue.exhausted:
                await self._pipeline.cooldown(self._chunk_delay)

    async def run(self) -> ProgressSnapshot:
        """Run the backfill to its target block and return the final progress."""
        window = self._window or await self.initialize()
        self._state = SyncState.SCANNING
        try:
            if self._scan_mode == "logs":
                await self._scan_logs(window)
            else:
                await self._scan_blocks(window)
        except Exception:
            self._state = SyncState.ERROR
            raise

        self._state = SyncState.DONE
        snapshot = self._progress.snapshot()
        logger.info(
            "%s",
            format_report(snapshot, title=f"Historical sync complete: {self.network.label}"),
        )
        return snapshot

    async def close(self) -> None:
        """Release the RPC, HTTP and database resources used by this controller."""
        await self._fills.aclose()
        await self._source.aclose()
        await self._store.close()
