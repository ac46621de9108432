"""Retention: remove stored trades older than a point in time.

The cutoff time is resolved to a block on the network, so every row can be
judged by its block number even when its block timestamp is missing.
Planning is read-only; deletion happens only when a plan is executed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from cow_settlement_sync.backoff import BackoffExecutor
from cow_settlement_sync.chain.client import BlockSource
from cow_settlement_sync.storage.database import DatabaseManager
from cow_settlement_sync.storage.repos import TradeRecord, TradeRepository
from cow_settlement_sync.sync.historical import DAYS_PER_MONTH

logger = logging.getLogger(__name__)


def cutoff_from_months(months: int, *, now: datetime | None = None) -> datetime:
    """Point in time ``months`` 30-day months before ``now``."""
    if months < 1:
        raise ValueError("months must be >= 1")
    now = now or datetime.now(UTC)
    return now - timedelta(days=months * DAYS_PER_MONTH)


@dataclass(frozen=True)
class RetentionPlan:
    """What a prune would delete on one network."""

    chain_id: int
    cutoff_time: datetime
    first_kept_block: int
    total_records: int
    records_to_delete: int
    newest_deleted: TradeRecord | None
    oldest_kept: TradeRecord | None

    @property
    def records_to_keep(self) -> int:
        return self.total_records - self.records_to_delete

    @property
    def delete_percentage(self) -> float:
        if self.total_records == 0:
            return 0.0
        return 100.0 * self.records_to_delete / self.total_records


class TradeRetention:
    """Plans and executes deletion of old trade records."""

    def __init__(
        self,
        db: DatabaseManager,
        block_source: BlockSource,
        *,
        backoff: BackoffExecutor | None = None,
    ) -> None:
        self._db = db
        self._source = block_source
        self._backoff = backoff or BackoffExecutor()

    async def plan(self, chain_id: int, cutoff: datetime) -> RetentionPlan:
        """Count what would be deleted for a cutoff time without deleting anything."""
        cutoff_block = await self._backoff.run(
            lambda: self._source.find_block_at_or_before(cutoff),
            f"find_block_at_or_before({cutoff.isoformat()})",
        )
        first_kept_block = cutoff_block + 1

        async with self._db.get_async_session() as session:
            repo = TradeRepository(session)
            total = await repo.count(chain_id)
            to_delete = await repo.count_before_block(chain_id, first_kept_block)
            newest_deleted = await repo.newest_before_block(chain_id, first_kept_block)
            oldest_kept = await repo.oldest_from_block(chain_id, first_kept_block)

        return RetentionPlan(
            chain_id=chain_id,
            cutoff_time=cutoff,
            first_kept_block=first_kept_block,
            total_records=total,
            records_to_delete=to_delete,
            newest_deleted=newest_deleted,
            oldest_kept=oldest_kept,
        )

    async def execute(self, plan: RetentionPlan) -> int:
        """Delete the records a plan selected; returns the number of deleted rows."""
        if plan.records_to_delete == 0:
            logger.info("Nothing to prune on chain %d", plan.chain_id)
            return 0
        async with self._db.get_async_session() as session:
            deleted = await TradeRepository(session).delete_before_block(plan.chain_id, plan.first_kept_block)
        logger.info("Pruned %d trade records on chain %d", deleted, plan.chain_id)
        return deleted


def _describe(record: TradeRecord | None) -> str:
    if record is None:
        return "-"
    when = record.block_timestamp.isoformat() if record.block_timestamp else "unknown time"
    return f"block {record.block_number} ({when}) tx {record.tx_hash}"


def format_plan(plan: RetentionPlan, *, network_label: str) -> str:
    lines = [
        f"Retention plan for {network_label}",
        f"  Cutoff: {plan.cutoff_time.isoformat()} (keeping blocks >= {plan.first_kept_block})",
        f"  Total records: {plan.total_records}",
        f"  To delete: {plan.records_to_delete} ({plan.delete_percentage:.1f}%)",
        f"  To keep: {plan.records_to_keep}",
        f"  Newest deleted: {_describe(plan.newest_deleted)}",
        f"  Oldest kept: {_describe(plan.oldest_kept)}",
    ]
    return "\n".join(lines)
