"""Work queue of block ranges for batched log scans.

Ranges are cut lazily from a cursor, so only the split frontier of the
current chunk is ever held in memory. A failed range is split in half and
both halves go to the front of the queue; ranges at the minimum size are not
split and the caller handles them another way.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass

from cow_settlement_sync.sync.pipeline import Direction


@dataclass(frozen=True)
class BlockRange:
    """Inclusive block range ``start..end`` with ``start <= end``."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Invalid block range {self.start}..{self.end}")

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def halves(self) -> tuple[BlockRange, BlockRange]:
        mid = self.start + self.size // 2
        return BlockRange(self.start, mid - 1), BlockRange(mid, self.end)

    def __str__(self) -> str:
        return f"{self.start}..{self.end}"


class BlockRangeQueue:
    """Chunks ``low..high`` into ranges visited in the given direction.

    Example:
        ```python
        queue = BlockRangeQueue(900, 1000, chunk_size=50, min_chunk_size=10)
        while (chunk := queue.next()) is not None:
            try:
                await scan(chunk)
            except ScanError:
                if not queue.split(chunk):
                    await scan_block_by_block(chunk)
        ```
    """

    def __init__(
        self,
        low: int,
        high: int,
        *,
        chunk_size: int,
        min_chunk_size: int,
        direction: Direction = Direction.DESCENDING,
    ) -> None:
        if low > high:
            raise ValueError(f"Invalid block range {low}..{high}")
        if chunk_size < 1 or min_chunk_size < 1:
            raise ValueError("Chunk sizes must be positive")
        if min_chunk_size > chunk_size:
            raise ValueError("min_chunk_size must not exceed chunk_size")

        self.low = low
        self.high = high
        self.chunk_size = chunk_size
        self.min_chunk_size = min_chunk_size
        self.direction = direction
        self._pending: deque[BlockRange] = deque()
        self._cursor = high if direction is Direction.DESCENDING else low
        self.splits = 0

    def __len__(self) -> int:
        return len(self._pending)

    def _cursor_exhausted(self) -> bool:
        if self.direction is Direction.DESCENDING:
            return self._cursor < self.low
        return self._cursor > self.high

    def _cut_chunk(self) -> BlockRange:
        if self.direction is Direction.DESCENDING:
            start = max(self.low, self._cursor - self.chunk_size + 1)
            chunk = BlockRange(start, self._cursor)
            self._cursor = start - 1
        else:
            end = min(self.high, self._cursor + self.chunk_size - 1)
            chunk = BlockRange(self._cursor, end)
            self._cursor = end + 1
        return chunk

    @property
    def exhausted(self) -> bool:
        return not self._pending and self._cursor_exhausted()

    def next(self) -> BlockRange | None:
        """Take the next range to scan, or None when all work is done."""
        if self._pending:
            return self._pending.popleft()
        if self._cursor_exhausted():
            return None
        return self._cut_chunk()

    def split(self, block_range: BlockRange) -> bool:
        """Requeue both halves of a failed range at the front.

        Returns:
            False if the range is already at the minimum size and was not split.
        """
        if block_range.size <= self.min_chunk_size:
            return False
        lower, upper = block_range.halves()
        first, second = (upper, lower) if self.direction is Direction.DESCENDING else (lower, upper)
        self._pending.appendleft(second)
        self._pending.appendleft(first)
        self.splits += 1
        return True
