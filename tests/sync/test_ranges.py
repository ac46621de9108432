"""Tests for the block range work queue."""

import pytest

from cow_settlement_sync.sync.pipeline import Direction
from cow_settlement_sync.sync.ranges import BlockRange, BlockRangeQueue


def _drain(queue: BlockRangeQueue) -> list[tuple[int, int]]:
    ranges = []
    while (chunk := queue.next()) is not None:
        ranges.append((chunk.start, chunk.end))
    return ranges


class TestBlockRange:
    """Tests for BlockRange."""

    def test_size_and_halves(self) -> None:
        block_range = BlockRange(10, 19)
        lower, upper = block_range.halves()

        assert block_range.size == 10
        assert (lower.start, lower.end, upper.start, upper.end) == (10, 14, 15, 19)

    def test_rejects_inverted_range(self) -> None:
        with pytest.raises(ValueError):
            BlockRange(5, 4)


class TestBlockRangeQueue:
    """Tests for BlockRangeQueue."""

    def test_descending_chunks_cover_range_newest_first(self) -> None:
        queue = BlockRangeQueue(0, 249, chunk_size=100, min_chunk_size=10)
        assert _drain(queue) == [(150, 249), (50, 149), (0, 49)]
        assert queue.exhausted

    def test_ascending_chunks(self) -> None:
        queue = BlockRangeQueue(0, 249, chunk_size=100, min_chunk_size=10, direction=Direction.ASCENDING)
        assert _drain(queue) == [(0, 99), (100, 199), (200, 249)]

    def test_single_block_range(self) -> None:
        assert _drain(BlockRangeQueue(7, 7, chunk_size=100, min_chunk_size=10)) == [(7, 7)]

    def test_split_requeues_halves_at_front(self) -> None:
        queue = BlockRangeQueue(0, 199, chunk_size=100, min_chunk_size=10)
        first = queue.next()
        assert first == BlockRange(100, 199)

        assert queue.split(first) is True
        assert len(queue) == 2
        assert _drain(queue) == [(150, 199), (100, 149), (0, 99)]
        assert queue.splits == 1

    def test_split_stops_at_minimum_size(self) -> None:
        queue = BlockRangeQueue(0, 9, chunk_size=10, min_chunk_size=10)
        chunk = queue.next()

        assert queue.split(chunk) is False
        assert queue.next() is None

    def test_pending_work_stays_bounded(self) -> None:
        queue = BlockRangeQueue(0, 1023, chunk_size=1024, min_chunk_size=1)
        chunk = queue.next()
        largest = 0
        while chunk is not None and queue.split(chunk):
            largest = max(largest, len(queue))
            chunk = queue.next()

        # Always splitting the newest half keeps one pending range per level.
        assert largest <= 11
        assert chunk == BlockRange(1023, 1023)

    @pytest.mark.parametrize(
        ("kwargs", "message"),
        [
            ({"chunk_size": 0, "min_chunk_size": 1}, "positive"),
            ({"chunk_size": 5, "min_chunk_size": 10}, "min_chunk_size"),
        ],
    )
    def test_rejects_bad_sizes(self, kwargs: dict, message: str) -> None:
        with pytest.raises(ValueError, match=message):
            BlockRangeQueue(0, 100, **kwargs)
