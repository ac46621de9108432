"""Blockchain RPC block source with client-side rate limiting.

This module provides a thin, retry-unaware adapter over an Ethereum
JSON-RPC endpoint:
- Latest block number and blocks by number (optionally with transactions)
- Event logs for the log-scan historical mode
- Timestamp to block resolution for retention

Callers wrap these calls with ``BackoffExecutor``; every failure other than a
missing block is raised as ``BlockSourceTransientError``.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import aiohttp
from web3 import AsyncWeb3
from web3.exceptions import BlockNotFound, Web3Exception
from web3.providers import AsyncHTTPProvider

from cow_settlement_sync.backoff import RetryableError
from cow_settlement_sync.chain.models import Block, LogEntry, to_hex

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 10
DEFAULT_REQUEST_TIMEOUT = 30

SETTLEMENT_TRADE_EVENT = "Trade(address,address,address,uint256,uint256,uint256,bytes)"
TRADE_EVENT_TOPIC = to_hex(AsyncWeb3.keccak(text=SETTLEMENT_TRADE_EVENT))

_TRANSIENT_ERRORS = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, OSError)


class BlockSourceError(Exception):
    """Base exception for block source errors."""


class BlockSourceTransientError(BlockSourceError, RetryableError):
    """Raised when an RPC call fails in a way that may succeed on retry."""


class RequestThrottle:
    """Spaces RPC calls evenly, at most ``max_per_second`` per second.

    Callers are served one at a time; each one waits for the slot after the
    previous caller's.
    """

    def __init__(
        self,
        max_per_second: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        if max_per_second <= 0:
            raise ValueError("max_per_second must be positive")
        self.interval = 1.0 / max_per_second
        self._clock = clock
        self._sleep = sleep
        self._next_slot = float("-inf")
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._next_slot > now:
                await self._sleep(self._next_slot - now)
                now = self._next_slot
            self._next_slot = now + self.interval


class BlockSource:
    """Block access over an Ethereum-compatible JSON-RPC endpoint.

    Example:
        ```python
        source = BlockSource("https://arb1.arbitrum.io/rpc")
        head = await source.latest_block_number()
        block = await source.get_block(head, include_transactions=True)
        await source.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        w3: AsyncWeb3[AsyncHTTPProvider] | None = None,
    ) -> None:
        """Initialize the block source.

        Args:
            rpc_url: RPC endpoint URL.
            max_requests_per_second: Client-side rate limit for RPC calls.
            request_timeout: Per-request HTTP timeout in seconds.
            w3: Pre-built web3 client (tests inject a mock here).
        """
        self._rpc_url = rpc_url
        self._w3 = w3 or AsyncWeb3(
            AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout)},
            )
        )
        self._throttle = RequestThrottle(max_requests_per_second)

    async def _guarded(self, name: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run one rate-limited RPC call, mapping failures to BlockSourceTransientError."""
        await self._throttle.wait()
        try:
            return await call()
        except BlockNotFound:
            raise
        except _TRANSIENT_ERRORS as e:
            raise BlockSourceTransientError(f"RPC {name} failed: {e}") from e

    async def latest_block_number(self) -> int:
        """Get the current chain head number."""
        return int(await self._guarded("block_number", lambda: self._w3.eth.block_number))

    async def get_block(self, number: int, *, include_transactions: bool = True) -> Block | None:
        """Get a block by number.

        Args:
            number: Block number.
            include_transactions: Fetch full transaction objects instead of hashes.

        Returns:
            The block, or None if the node does not have it.
        """
        try:
            data = await self._guarded(
                f"get_block({number})",
                lambda: self._w3.eth.get_block(number, full_transactions=include_transactions),
            )
        except BlockNotFound:
            logger.debug("Block %d not found", number)
            return None
        if data is None:
            return None
        return Block.from_rpc(data)

    async def get_logs(
        self,
        *,
        address: str,
        topics: list[str],
        from_block: int,
        to_block: int,
    ) -> list[LogEntry]:
        """Fetch event log locations via ``eth_getLogs``."""
        filter_params = {
            "address": AsyncWeb3.to_checksum_address(address),
            "topics": topics,
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        logs = await self._guarded("get_logs", lambda: self._w3.eth.get_logs(filter_params))
        return [LogEntry.from_rpc(log) for log in logs]

    async def get_trade_logs(self, settlement_contract: str, from_block: int, to_block: int) -> list[LogEntry]:
        """Fetch settlement ``Trade`` event locations in an inclusive block range."""
        return await self.get_logs(
            address=settlement_contract,
            topics=[TRADE_EVENT_TOPIC],
            from_block=from_block,
            to_block=to_block,
        )

    async def _require_block(self, number: int) -> Block:
        block = await self.get_block(number, include_transactions=False)
        if block is None:
            raise BlockSourceError(f"Block {number} is not available from the RPC node")
        return block

    async def find_block_at_or_before(self, ts: datetime) -> int:
        """Resolve a timestamp to the latest block at-or-before it.

        Binary search over block timestamps between genesis and the head.
        Returns -1 when ``ts`` is earlier than the genesis block.
        """
        if ts.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")

        genesis = await self._require_block(0)
        if ts < genesis.timestamp:
            return -1
        if ts == genesis.timestamp:
            return 0

        latest_number = await self.latest_block_number()
        latest = await self._require_block(latest_number)
        if ts >= latest.timestamp:
            return latest_number

        lo = 0
        hi = latest_number
        while lo + 1 < hi:
            mid = (lo + hi) // 2
            mid_block = await self._require_block(mid)
            if mid_block.timestamp <= ts:
                lo = mid
            else:
                hi = mid
        return lo

    async def aclose(self) -> None:
        """Close the async HTTP provider session."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if not callable(disconnect):
            return
        try:
            result = disconnect()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Failed to close RPC provider session (rpc=%s): %s", self._rpc_url, e)
