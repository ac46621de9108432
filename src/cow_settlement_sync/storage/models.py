"""SQLAlchemy models for persistent storage.

This module defines the database schema for settlement trade records.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# uint256 values have at most 78 decimal digits.
AMOUNT_LENGTH = 80


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class SettlementTradeModel(Base):
    """One order fill settled by a settlement transaction.

    Amounts are stored as decimal strings so 18-decimal token amounts keep
    full precision on every backend.
    """

    __tablename__ = "settlement_trades"

    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True, nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True, nullable=False)
    fill_index: Mapped[int] = mapped_column(Integer, primary_key=True, nullable=False)

    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    order_uid: Mapped[str | None] = mapped_column(String(114), nullable=True)
    kind: Mapped[str] = mapped_column(String(4), nullable=False)
    sell_token: Mapped[str] = mapped_column(String(42), nullable=False)
    buy_token: Mapped[str] = mapped_column(String(42), nullable=False)
    receiver: Mapped[str | None] = mapped_column(String(42), nullable=True)

    sell_amount: Mapped[str] = mapped_column(String(AMOUNT_LENGTH), nullable=False)
    buy_amount: Mapped[str] = mapped_column(String(AMOUNT_LENGTH), nullable=False)
    executed_sell_amount: Mapped[str] = mapped_column(String(AMOUNT_LENGTH), nullable=False)
    executed_sell_amount_before_fees: Mapped[str] = mapped_column(
        String(AMOUNT_LENGTH), nullable=False
    )
    executed_buy_amount: Mapped[str] = mapped_column(String(AMOUNT_LENGTH), nullable=False)

    order_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_settlement_trades_tx_hash", "tx_hash"),
        Index("idx_settlement_trades_chain_block", "chain_id", "block_number"),
        Index("idx_settlement_trades_block_timestamp", "block_timestamp"),
    )
