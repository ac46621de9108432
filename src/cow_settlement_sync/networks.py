"""Explicit network configuration table.

Every network the sync can run against is listed in ``KNOWN_NETWORKS``. A
runnable ``NetworkConfig`` is only produced when an RPC endpoint has been
configured for the chain id; the chain id is never inferred from the RPC URL.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from web3 import Web3

logger = logging.getLogger(__name__)

SETTLEMENT_CONTRACT_ADDRESS = "0x9008D19f58AAbD9eD0d60971565AA8510560ab41"
SECONDS_PER_DAY = 86_400


class NetworkConfigError(ValueError):
    """Raised when a network configuration is missing or invalid."""


@dataclass(frozen=True)
class NetworkDefaults:
    """Static facts about a supported network."""

    chain_id: int
    name: str
    api_base_url: str
    block_time_seconds: float


KNOWN_NETWORKS: dict[int, NetworkDefaults] = {
    1: NetworkDefaults(
        chain_id=1,
        name="Ethereum Mainnet",
        api_base_url="https://api.cow.fi/mainnet/api/v1",
        block_time_seconds=12.0,
    ),
    42161: NetworkDefaults(
        chain_id=42161,
        name="Arbitrum One",
        api_base_url="https://api.cow.fi/arbitrum_one/api/v1",
        block_time_seconds=0.25,
    ),
}


def _is_http_url(url: str) -> bool:
    return url.startswith(("http://", "https://"))


@dataclass(frozen=True)
class NetworkConfig:
    """Immutable, validated configuration for one network."""

    chain_id: int
    name: str
    settlement_contract: str
    api_base_url: str
    rpc_url: str
    block_time_seconds: float

    def __post_init__(self) -> None:
        if self.chain_id <= 0:
            raise NetworkConfigError(f"Invalid chain id: {self.chain_id}")
        if not Web3.is_address(self.settlement_contract):
            raise NetworkConfigError(
                f"Invalid settlement contract address for chain {self.chain_id}: "
                f"{self.settlement_contract!r}"
            )
        if not _is_http_url(self.api_base_url):
            raise NetworkConfigError(
                f"Settlement API base URL for chain {self.chain_id} must be HTTP(S)"
            )
        if not _is_http_url(self.rpc_url):
            raise NetworkConfigError(f"RPC URL for chain {self.chain_id} must be HTTP(S)")
        if self.block_time_seconds <= 0:
            raise NetworkConfigError(f"Block time for chain {self.chain_id} must be positive")
        # Trailing slashes would produce '//transactions' in request paths.
        object.__setattr__(self, "api_base_url", self.api_base_url.rstrip("/"))

    @property
    def blocks_per_day(self) -> int:
        """Estimated number of blocks produced per day."""
        return round(SECONDS_PER_DAY / self.block_time_seconds)

    @property
    def label(self) -> str:
        return f"{self.name} ({self.chain_id})"


def build_network_table(
    chain_ids: Iterable[int],
    *,
    rpc_urls: Mapping[int, str],
    api_url_overrides: Mapping[int, str] | None = None,
    settlement_contract: str = SETTLEMENT_CONTRACT_ADDRESS,
) -> list[NetworkConfig]:
    """Build validated network configurations in the requested order.

    Args:
        chain_ids: Chain ids to include, in run order. Duplicates are dropped.
        rpc_urls: RPC endpoint per chain id. Every requested chain needs one.
        api_url_overrides: Optional settlement API base URL per chain id.
        settlement_contract: Settlement contract address shared by all networks.

    Returns:
        One NetworkConfig per distinct requested chain id.

    Raises:
        NetworkConfigError: If a chain id is unknown, has no RPC URL, or any
            value fails validation.
    """
    overrides = api_url_overrides or {}
    networks: list[NetworkConfig] = []
    seen: set[int] = set()

    for chain_id in chain_ids:
        if chain_id in seen:
            continue
        seen.add(chain_id)

        defaults = KNOWN_NETWORKS.get(chain_id)
        if defaults is None:
            supported = ", ".join(str(c) for c in sorted(KNOWN_NETWORKS))
            raise NetworkConfigError(f"Unsupported chain id {chain_id} (supported: {supported})")

        rpc_url = rpc_urls.get(chain_id)
        if not rpc_url:
            raise NetworkConfigError(
                f"No RPC URL configured for {defaults.name} (chain {chain_id}); set RPC_URLS"
            )

        networks.append(
            NetworkConfig(
                chain_id=chain_id,
                name=defaults.name,
                settlement_contract=settlement_contract,
                api_base_url=overrides.get(chain_id, defaults.api_base_url),
                rpc_url=rpc_url,
                block_time_seconds=defaults.block_time_seconds,
            )
        )

    logger.debug("Resolved networks: %s", ", ".join(n.label for n in networks))
    return networks
