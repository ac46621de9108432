"""Settlement API client returning the order fills of a settlement transaction.

``GET {base}/transactions/{tx_hash}/orders`` lists the orders settled by a
transaction. A 404 means the API knows no orders for the hash and is mapped
to an empty list. Responses with orders can optionally be cached in Redis;
settled transactions do not change, empty answers are never cached because
the API may not have indexed a fresh settlement yet.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from redis.asyncio import Redis

from cow_settlement_sync.backoff import RetryableError
from cow_settlement_sync.enrichment.models import OrderFill

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_CACHE_TTL_SECONDS = 24 * 3600
DEFAULT_REDIS_KEY_PREFIX = "cow:fills:"


class SettlementApiError(Exception):
    """Base exception for settlement API errors."""


class SettlementApiTransientError(SettlementApiError, RetryableError):
    """Raised for non-2xx responses (other than 404) and transport failures."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OrderFillsClient:
    """Fetches order fills for settlement transactions.

    Example:
        ```python
        async with OrderFillsClient("https://api.cow.fi/mainnet/api/v1", chain_id=1) as client:
            fills = await client.fetch_order_fills("0xabc...")
        ```
    """

    def __init__(
        self,
        base_url: str,
        *,
        chain_id: int,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        key_prefix: str = DEFAULT_REDIS_KEY_PREFIX,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Settlement API base URL (e.g. ``https://api.cow.fi/mainnet/api/v1``).
            chain_id: Chain id, used to namespace cache keys.
            http_client: Shared HTTP client; one is created (and owned) if omitted.
            timeout: Request timeout for an owned HTTP client.
            redis: Optional Redis client for caching responses.
            cache_ttl_seconds: TTL of cached responses.
            key_prefix: Redis key prefix.
        """
        self._base_url = base_url.rstrip("/")
        self._chain_id = chain_id
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._key_prefix = key_prefix

    def orders_url(self, tx_hash: str) -> str:
        return f"{self._base_url}/transactions/{tx_hash}/orders"

    def _cache_key(self, tx_hash: str) -> str:
        return f"{self._key_prefix}{self._chain_id}:{tx_hash.lower()}"

    async def _get_cached(self, tx_hash: str) -> list[OrderFill] | None:
        if self._redis is None:
            return None
        try:
            raw = await self._redis.get(self._cache_key(tx_hash))
        except Exception as e:
            logger.warning("Fill cache get failed for %s: %s", tx_hash, e)
            return None
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            return [OrderFill.from_dict(item) for item in json.loads(raw)]
        except (ValueError, TypeError) as e:
            logger.warning("Discarding unreadable cached fills for %s: %s", tx_hash, e)
            return None

    async def _set_cached(self, tx_hash: str, fills: list[OrderFill]) -> None:
        if self._redis is None or not fills:
            return
        try:
            payload = json.dumps([fill.to_dict() for fill in fills])
            await self._redis.setex(self._cache_key(tx_hash), self._cache_ttl, payload)
        except Exception as e:
            logger.warning("Fill cache set failed for %s: %s", tx_hash, e)

    @staticmethod
    def _parse_fills(tx_hash: str, payload: Any) -> list[OrderFill]:
        if not isinstance(payload, list):
            logger.warning(
                "Settlement API returned %s instead of a list for %s; treating as empty",
                type(payload).__name__,
                tx_hash,
            )
            return []

        fills: list[OrderFill] = []
        for item in payload:
            if not isinstance(item, dict):
                logger.warning("Skipping non-object order entry for %s", tx_hash)
                continue
            try:
                fills.append(OrderFill.from_dict(item))
            except ValueError as e:
                logger.warning("Skipping malformed order for %s: %s", tx_hash, e)
        return fills

    async def fetch_order_fills(self, tx_hash: str) -> list[OrderFill]:
        """Fetch the order fills settled by a transaction.

        Args:
            tx_hash: Settlement transaction hash.

        Returns:
            The fills, or an empty list when the API has none (404).

        Raises:
            SettlementApiTransientError: On non-2xx responses other than 404
                and on transport failures.
        """
        cached = await self._get_cached(tx_hash)
        if cached is not None:
            logger.debug("Fill cache hit for %s", tx_hash)
            return cached

        url = self.orders_url(tx_hash)
        try:
            response = await self._http.get(url)
        except httpx.TransportError as e:
            raise SettlementApiTransientError(f"Request to {url} failed: {e}") from e

        if response.status_code == 404:
            logger.debug("No orders found for %s", tx_hash)
            return []
        if not response.is_success:
            raise SettlementApiTransientError(
                f"Settlement API returned {response.status_code} for {tx_hash}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError:
            logger.warning("Settlement API returned a non-JSON body for %s; treating as empty", tx_hash)
            return []

        fills = self._parse_fills(tx_hash, payload)
        await self._set_cached(tx_hash, fills)
        return fills

    async def aclose(self) -> None:
        """Close the owned HTTP client."""
        if self._owns_http_client:
            await self._http.aclose()

    async def __aenter__(self) -> OrderFillsClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()
