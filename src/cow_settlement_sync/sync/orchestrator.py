"""Run the historical backfill across several networks one after another."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from cow_settlement_sync.networks import NetworkConfig
from cow_settlement_sync.sync.progress import ProgressSnapshot

logger = logging.getLogger(__name__)


class NetworkSyncController(Protocol):
    """What the orchestrator needs from a per-network controller."""

    async def run(self) -> ProgressSnapshot: ...

    async def close(self) -> None: ...


ControllerFactory = Callable[[NetworkConfig], Awaitable[NetworkSyncController]]


@dataclass(frozen=True)
class NetworkRunResult:
    """Outcome of one network's sync."""

    network: NetworkConfig
    snapshot: ProgressSnapshot | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class MultiNetworkOrchestrator:
    """Runs one controller per network, sequentially.

    A failure on one network is logged and recorded and the remaining
    networks still run.
    """

    def __init__(self, networks: Sequence[NetworkConfig], controller_factory: ControllerFactory) -> None:
        if not networks:
            raise ValueError("At least one network is required")
        self.networks = list(networks)
        self._factory = controller_factory

    async def _run_network(self, network: NetworkConfig) -> NetworkRunResult:
        logger.info("Starting historical sync for %s", network.label)
        try:
            controller = await self._factory(network)
        except Exception as e:
            logger.error("Could not set up sync for %s: %s", network.label, e)
            return NetworkRunResult(network=network, error=str(e))

        try:
            snapshot = await controller.run()
        except Exception as e:
            logger.exception("Historical sync failed for %s", network.label)
            return NetworkRunResult(network=network, error=str(e))
        finally:
            try:
                await controller.close()
            except Exception as e:
                logger.warning("Error closing resources for %s: %s", network.label, e)

        logger.info("Historical sync finished for %s", network.label)
        return NetworkRunResult(network=network, snapshot=snapshot)

    async def run(self) -> list[NetworkRunResult]:
        results = [await self._run_network(network) for network in self.networks]
        failed = [r.network.label for r in results if not r.succeeded]
        if failed:
            logger.warning("Historical sync failed on %d network(s): %s", len(failed), ", ".join(failed))
        else:
            logger.info("Historical sync finished on all %d network(s)", len(results))
        return results
