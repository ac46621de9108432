"""Realtime follower: poll the chain head and process new blocks in order.

Each poll processes every block after the last checkpoint up to the current
head, oldest first. The checkpoint only moves once the whole batch succeeded,
so a failed block is retried from the start of its batch on the next poll.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from cow_settlement_sync.backoff import BackoffExecutor
from cow_settlement_sync.chain.client import BlockSource
from cow_settlement_sync.enrichment.orders_api import OrderFillsClient
from cow_settlement_sync.networks import NetworkConfig
from cow_settlement_sync.storage.store import TradeStore
from cow_settlement_sync.sync.pipeline import (
    BlockOutcome,
    BlockPipeline,
    CheckpointPolicy,
    Direction,
)
from cow_settlement_sync.sync.progress import (
    DEFAULT_REPORT_INTERVAL_SECONDS,
    ProgressReporter,
    ProgressTracker,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
ERROR_DELAY_MULTIPLIER = 2


class RealtimeState(str, Enum):
    """Realtime sync lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class RealtimeSyncController:
    """Follows the head of one network until stopped.

    Example:
        ```python
        controller = RealtimeSyncController(network, source, fills, store, backoff=executor)
        loop.add_signal_handler(signal.SIGINT, controller.stop)
        await controller.run()
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
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        cooldown_seconds: float = 0.0,
        report_interval_seconds: float = DEFAULT_REPORT_INTERVAL_SECONDS,
        progress: ProgressTracker | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        """Initialize the controller.

        Args:
            network: Network to follow.
            block_source: RPC block source.
            fills_client: Settlement API client.
            store: Network-scoped trade store.
            backoff: Retry wrapper for every network-bound call.
            poll_interval_seconds: Pause between head polls.
            cooldown_seconds: Pause between blocks within one batch.
            report_interval_seconds: Interval of the periodic progress report.
            progress: Tracker to update; a new one is created if omitted.
            sleep: Awaitable sleep (injectable for tests).
        """
        self.network = network
        self._source = block_source
        self._fills = fills_client
        self._store = store
        self._backoff = backoff
        self._poll_interval = poll_interval_seconds
        self._cooldown = cooldown_seconds
        self._sleep = sleep
        self._progress = progress or ProgressTracker()
        self._reporter = ProgressReporter(
            self._progress,
            title=f"Realtime sync: {network.label}",
            interval_seconds=report_interval_seconds,
        )
        self._pipeline = BlockPipeline(
            network,
            block_source,
            fills_client,
            store,
            self._progress,
            backoff=backoff,
            skip_known=True,
            sleep=sleep,
        )

        self._state = RealtimeState.IDLE
        self._stop_requested = False
        self._last_block: int | None = None

    @property
    def state(self) -> RealtimeState:
        return self._state

    @property
    def progress(self) -> ProgressTracker:
        return self._progress

    @property
    def last_block(self) -> int | None:
        """Newest block whose whole batch has been processed."""
        return self._last_block

    async def _head(self) -> int:
        return await self._backoff.run(self._source.latest_block_number, "latest_block_number")

    async def initialize(self) -> int:
        """Start following from the current head; blocks up to it are not processed."""
        head = await self._head()
        self._last_block = head
        self._progress.set_current_block(head)
        self._progress.set_last_processed_block(head)
        logger.info("Realtime sync on %s starting after block %d", self.network.label, head)
        return head

    async def poll_once(self) -> list[BlockOutcome]:
        """Process every block between the checkpoint and the current head.

        Raises:
            BlockProcessingError: If any block of the batch failed. The
                checkpoint is left unchanged.
        """
        if self._last_block is None:
            await self.initialize()
            return []

        head = await self._head()
        if head <= self._last_block:
            return []

        first = self._last_block + 1
        logger.debug("Processing blocks %d..%d on %s", first, head, self.network.label)
        outcomes = await self._pipeline.run_range(
            first,
            head,
            direction=Direction.ASCENDING,
            policy=CheckpointPolicy.FULL_BATCH,
            cooldown_seconds=self._cooldown,
        )
        self._last_block = head
        return outcomes

    def stop(self) -> None:
        """Request a graceful stop after the current poll."""
        if self._state is RealtimeState.RUNNING:
            self._state = RealtimeState.STOPPING
        self._stop_requested = True
        logger.info("Stop requested for realtime sync on %s", self.network.label)

    async def _wait(self, seconds: float) -> None:
        if seconds > 0 and not self._stop_requested:
            await self._sleep(seconds)

    async def run(self) -> None:
        """Poll until ``stop()`` is called, then release all resources."""
        self._state = RealtimeState.RUNNING
        self._reporter.start()
        try:
            if self._last_block is None:
                await self.initialize()
            while not self._stop_requested:
                try:
                    await self.poll_once()
                except Exception as e:
                    logger.error("Realtime sync error on %s: %s", self.network.label, e)
                    self._progress.record_error()
                    await self._wait(self._poll_interval * ERROR_DELAY_MULTIPLIER)
                    continue
                await self._wait(self._poll_interval)
        finally:
            await self._reporter.stop()
            self._reporter.report_now()
            await self.close()
            self._state = RealtimeState.STOPPED
            logger.info("Realtime sync on %s stopped", self.network.label)

    async def close(self) -> None:
        """Release the RPC, HTTP and database resources used by this controller."""
        await self._fills.aclose()
        await self._source.aclose()
        await self._store.close()
