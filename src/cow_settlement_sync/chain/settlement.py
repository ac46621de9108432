"""Selection of settlement contract transactions from a block."""

from cow_settlement_sync.chain.models import Block, SettlementTransaction


def filter_settlement_transactions(
    block: Block, settlement_contract: str
) -> list[SettlementTransaction]:
    """Return the block's transactions addressed to the settlement contract.

    Addresses are compared case-insensitively, so checksummed and lowercase
    forms match. Block order is preserved.
    """
    target = settlement_contract.lower()
    return [
        SettlementTransaction(
            hash=tx.hash,
            block_number=block.number,
            block_timestamp=block.timestamp,
            to=tx.to,
        )
        for tx in block.transactions
        if tx.to is not None and tx.to.lower() == target
    ]
