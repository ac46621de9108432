"""Network-scoped persistence gateway used by the sync pipeline."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from cow_settlement_sync.storage.database import DatabaseManager
from cow_settlement_sync.storage.repos import TradeRecord, TradeRepository

logger = logging.getLogger(__name__)

# Driver-level connection failures (asyncpg, aiosqlite) surface as OSError subclasses.
_STORE_ERRORS = (SQLAlchemyError, OSError)


class TradeStoreError(Exception):
    """Raised when the database rejects or cannot serve a store operation."""


class TradeStore:
    """Duplicate checks and idempotent writes for one network's trades.

    Each call runs in its own short transaction, so a failing write only
    loses that one record.
    """

    def __init__(self, db: DatabaseManager, chain_id: int, *, owns_database: bool = False) -> None:
        """Initialize the store.

        Args:
            db: Database manager providing sessions.
            chain_id: Network whose records this store reads and writes.
            owns_database: Dispose the database engine on close().
        """
        self._db = db
        self.chain_id = chain_id
        self._owns_database = owns_database

    async def exists(self, tx_hash: str) -> bool:
        """Check whether the transaction already has stored fills."""
        try:
            async with self._db.get_async_session() as session:
                return await TradeRepository(session).exists_tx(self.chain_id, tx_hash)
        except _STORE_ERRORS as e:
            raise TradeStoreError(f"exists({tx_hash}) failed: {e}") from e

    async def upsert(self, record: TradeRecord) -> None:
        """Insert or replace one record; repeated calls leave the same final row."""
        if record.chain_id != self.chain_id:
            raise ValueError(f"Record for chain {record.chain_id} written to store for chain {self.chain_id}")
        try:
            async with self._db.get_async_session() as session:
                await TradeRepository(session).upsert(record)
        except _STORE_ERRORS as e:
            raise TradeStoreError(
                f"upsert({record.tx_hash}#{record.fill_index}) failed: {e}"
            ) from e

    async def prune_surplus_fills(self, tx_hash: str, fill_count: int) -> int:
        """Remove stored fills with ``fill_index >= fill_count``; 0 removes them all."""
        try:
            async with self._db.get_async_session() as session:
                removed = await TradeRepository(session).delete_surplus_fills(
                    self.chain_id, tx_hash, fill_count
                )
        except _STORE_ERRORS as e:
            raise TradeStoreError(f"prune_surplus_fills({tx_hash}) failed: {e}") from e
        if removed:
            logger.info("Removed %d stale fills of %s", removed, tx_hash)
        return removed

    async def close(self) -> None:
        if self._owns_database:
            await self._db.dispose_async()
