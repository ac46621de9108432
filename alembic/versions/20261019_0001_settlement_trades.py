"""Create the settlement_trades table.

Revision ID: 001_settlement_trades
Revises:
Create Date: 2026-10-19 00:01:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_settlement_trades"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "settlement_trades",
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("fill_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("order_uid", sa.String(114), nullable=True),
        sa.Column("kind", sa.String(4), nullable=False),
        sa.Column("sell_token", sa.String(42), nullable=False),
        sa.Column("buy_token", sa.String(42), nullable=False),
        sa.Column("receiver", sa.String(42), nullable=True),
        sa.Column("sell_amount", sa.String(80), nullable=False),
        sa.Column("buy_amount", sa.String(80), nullable=False),
        sa.Column("executed_sell_amount", sa.String(80), nullable=False),
        sa.Column("executed_sell_amount_before_fees", sa.String(80), nullable=False),
        sa.Column("executed_buy_amount", sa.String(80), nullable=False),
        sa.Column("order_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("chain_id", "tx_hash", "fill_index"),
    )
    op.create_index("idx_settlement_trades_tx_hash", "settlement_trades", ["tx_hash"])
    op.create_index(
        "idx_settlement_trades_chain_block", "settlement_trades", ["chain_id", "block_number"]
    )
    op.create_index(
        "idx_settlement_trades_block_timestamp", "settlement_trades", ["block_timestamp"]
    )


def downgrade() -> None:
    op.drop_index("idx_settlement_trades_block_timestamp", table_name="settlement_trades")
    op.drop_index("idx_settlement_trades_chain_block", table_name="settlement_trades")
    op.drop_index("idx_settlement_trades_tx_hash", table_name="settlement_trades")
    op.drop_table("settlement_trades")
