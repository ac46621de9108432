"""Repository pattern implementation for data access.

This module provides the settlement trade repository and the DTO used to
move trade records between the sync pipeline and the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from cow_settlement_sync.storage.models import SettlementTradeModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from cow_settlement_sync.chain.models import SettlementTransaction
    from cow_settlement_sync.enrichment.models import OrderFill

logger = logging.getLogger(__name__)

# Columns rewritten when an existing (chain_id, tx_hash, fill_index) row is upserted.
_REPLACED_COLUMNS = (
    "block_number",
    "block_timestamp",
    "order_uid",
    "kind",
    "sell_token",
    "buy_token",
    "receiver",
    "sell_amount",
    "buy_amount",
    "executed_sell_amount",
    "executed_sell_amount_before_fees",
    "executed_buy_amount",
    "order_created_at",
    "updated_at",
)


@dataclass
class TradeRecord:
    """Data transfer object for one persisted order fill."""

    chain_id: int
    tx_hash: str
    fill_index: int
    block_number: int
    kind: str
    sell_token: str
    buy_token: str
    sell_amount: str
    buy_amount: str
    executed_sell_amount: str
    executed_sell_amount_before_fees: str
    executed_buy_amount: str
    block_timestamp: datetime | None = None
    order_uid: str | None = None
    receiver: str | None = None
    order_created_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SettlementTradeModel) -> TradeRecord:
        return cls(
            chain_id=model.chain_id,
            tx_hash=model.tx_hash,
            fill_index=model.fill_index,
            block_number=model.block_number,
            kind=model.kind,
            sell_token=model.sell_token,
            buy_token=model.buy_token,
            sell_amount=model.sell_amount,
            buy_amount=model.buy_amount,
            executed_sell_amount=model.executed_sell_amount,
            executed_sell_amount_before_fees=model.executed_sell_amount_before_fees,
            executed_buy_amount=model.executed_buy_amount,
            block_timestamp=model.block_timestamp,
            order_uid=model.order_uid,
            receiver=model.receiver,
            order_created_at=model.order_created_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @classmethod
    def from_fill(
        cls,
        *,
        chain_id: int,
        settlement: SettlementTransaction,
        fill: OrderFill,
        fill_index: int,
    ) -> TradeRecord:
        """Build the record for the ``fill_index``-th fill of a settlement."""
        return cls(
            chain_id=chain_id,
            tx_hash=settlement.hash.lower(),
            fill_index=fill_index,
            block_number=settlement.block_number,
            block_timestamp=settlement.block_timestamp,
            kind=fill.kind,
            sell_token=fill.sell_token,
            buy_token=fill.buy_token,
            sell_amount=fill.sell_amount,
            buy_amount=fill.buy_amount,
            executed_sell_amount=fill.executed_sell_amount,
            executed_sell_amount_before_fees=fill.executed_sell_amount_before_fees,
            executed_buy_amount=fill.executed_buy_amount,
            order_uid=fill.uid,
            receiver=fill.receiver,
            order_created_at=fill.creation_date,
        )

    def to_values(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "tx_hash": self.tx_hash.lower(),
            "fill_index": self.fill_index,
            "block_number": self.block_number,
            "block_timestamp": self.block_timestamp,
            "order_uid": self.order_uid,
            "kind": self.kind,
            "sell_token": self.sell_token.lower(),
            "buy_token": self.buy_token.lower(),
            "receiver": self.receiver.lower() if self.receiver else None,
            "sell_amount": self.sell_amount,
            "buy_amount": self.buy_amount,
            "executed_sell_amount": self.executed_sell_amount,
            "executed_sell_amount_before_fees": self.executed_sell_amount_before_fees,
            "executed_buy_amount": self.executed_buy_amount,
            "order_created_at": self.order_created_at,
        }


@dataclass(frozen=True)
class TradeStats:
    """Aggregate view over one network's stored trades."""

    chain_id: int
    total_records: int
    total_transactions: int
    first_block: int | None
    last_block: int | None
    first_timestamp: datetime | None
    last_timestamp: datetime | None
    distinct_sell_tokens: int
    distinct_buy_tokens: int


class TradeRepository:
    """Repository for settlement trade records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def exists_tx(self, chain_id: int, tx_hash: str) -> bool:
        """Check whether any fill of the transaction is stored."""
        result = await self.session.execute(
            select(SettlementTradeModel.fill_index)
            .where(
                SettlementTradeModel.chain_id == chain_id,
                SettlementTradeModel.tx_hash == tx_hash.lower(),
            )
            .limit(1)
        )
        return result.first() is not None

    async def upsert(self, record: TradeRecord) -> TradeRecord:
        """Insert or fully replace the row keyed by (chain_id, tx_hash, fill_index)."""
        now = datetime.now(UTC)
        values = record.to_values()
        index_elements = ["chain_id", "tx_hash", "fill_index"]

        if self.session.get_bind().dialect.name == "sqlite":
            stmt = sqlite_insert(SettlementTradeModel).values(**values, created_at=now, updated_at=now)
        else:
            stmt = pg_insert(SettlementTradeModel).values(**values, created_at=now, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={column: getattr(stmt.excluded, column) for column in _REPLACED_COLUMNS},
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return record

    async def delete_surplus_fills(self, chain_id: int, tx_hash: str, fill_count: int) -> int:
        """Delete fills of a transaction with ``fill_index >= fill_count``."""
        result = await self.session.execute(
            delete(SettlementTradeModel).where(
                SettlementTradeModel.chain_id == chain_id,
                SettlementTradeModel.tx_hash == tx_hash.lower(),
                SettlementTradeModel.fill_index >= fill_count,
            )
        )
        return int(result.rowcount or 0)

    async def count(self, chain_id: int | None = None) -> int:
        stmt = select(func.count()).select_from(SettlementTradeModel)
        if chain_id is not None:
            stmt = stmt.where(SettlementTradeModel.chain_id == chain_id)
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def count_before_block(self, chain_id: int, block_number: int) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(SettlementTradeModel)
            .where(
                SettlementTradeModel.chain_id == chain_id,
                SettlementTradeModel.block_number < block_number,
            )
        )
        return int(result.scalar_one())

    async def newest_before_block(self, chain_id: int, block_number: int) -> TradeRecord | None:
        result = await self.session.execute(
            select(SettlementTradeModel)
            .where(
                SettlementTradeModel.chain_id == chain_id,
                SettlementTradeModel.block_number < block_number,
            )
            .order_by(SettlementTradeModel.block_number.desc(), SettlementTradeModel.fill_index.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return TradeRecord.from_model(model) if model else None

    async def oldest_from_block(self, chain_id: int, block_number: int) -> TradeRecord | None:
        result = await self.session.execute(
            select(SettlementTradeModel)
            .where(
                SettlementTradeModel.chain_id == chain_id,
                SettlementTradeModel.block_number >= block_number,
            )
            .order_by(SettlementTradeModel.block_number.asc(), SettlementTradeModel.fill_index.asc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return TradeRecord.from_model(model) if model else None

    async def delete_before_block(self, chain_id: int, block_number: int) -> int:
        """Delete every record of the network below ``block_number``."""
        result = await self.session.execute(
            delete(SettlementTradeModel).where(
                SettlementTradeModel.chain_id == chain_id,
                SettlementTradeModel.block_number < block_number,
            )
        )
        deleted = int(result.rowcount or 0)
        logger.info("Deleted %d trade records below block %d (chain %d)", deleted, block_number, chain_id)
        return deleted

    async def list_latest(self, chain_id: int, *, limit: int = 20) -> list[TradeRecord]:
        result = await self.session.execute(
            select(SettlementTradeModel)
            .where(SettlementTradeModel.chain_id == chain_id)
            .order_by(SettlementTradeModel.block_number.desc(), SettlementTradeModel.fill_index.asc())
            .limit(limit)
        )
        return [TradeRecord.from_model(m) for m in result.scalars().all()]

    async def stats(self, chain_id: int) -> TradeStats:
        result = await self.session.execute(
            select(
                func.count(),
                func.count(func.distinct(SettlementTradeModel.tx_hash)),
                func.min(SettlementTradeModel.block_number),
                func.max(SettlementTradeModel.block_number),
                func.min(SettlementTradeModel.block_timestamp),
                func.max(SettlementTradeModel.block_timestamp),
                func.count(func.distinct(SettlementTradeModel.sell_token)),
                func.count(func.distinct(SettlementTradeModel.buy_token)),
            ).where(SettlementTradeModel.chain_id == chain_id)
        )
        row = result.one()
        return TradeStats(
            chain_id=chain_id,
            total_records=int(row[0]),
            total_transactions=int(row[1]),
            first_block=row[2],
            last_block=row[3],
            first_timestamp=row[4],
            last_timestamp=row[5],
            distinct_sell_tokens=int(row[6]),
            distinct_buy_tokens=int(row[7]),
        )
