"""Storage layer - Database schema, repositories and the trade store."""

from cow_settlement_sync.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from cow_settlement_sync.storage.models import Base, SettlementTradeModel
from cow_settlement_sync.storage.repos import TradeRecord, TradeRepository, TradeStats
from cow_settlement_sync.storage.store import TradeStore, TradeStoreError

__all__ = [
    "Base",
    "DatabaseManager",
    "SettlementTradeModel",
    "TradeRecord",
    "TradeRepository",
    "TradeStats",
    "TradeStore",
    "TradeStoreError",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
