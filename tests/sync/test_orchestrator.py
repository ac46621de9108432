"""Tests for the multi-network orchestrator."""

from unittest.mock import AsyncMock

import pytest

from cow_settlement_sync.networks import SETTLEMENT_CONTRACT_ADDRESS, NetworkConfig
from cow_settlement_sync.sync.orchestrator import MultiNetworkOrchestrator
from cow_settlement_sync.sync.progress import ProgressTracker


def _network(chain_id: int, name: str) -> NetworkConfig:
    return NetworkConfig(
        chain_id=chain_id,
        name=name,
        settlement_contract=SETTLEMENT_CONTRACT_ADDRESS,
        api_base_url=f"https://api.cow.fi/{chain_id}/api/v1",
        rpc_url=f"https://rpc-{chain_id}.example.org",
        block_time_seconds=12.0,
    )


MAINNET = _network(1, "Ethereum Mainnet")
GNOSIS = _network(100, "Gnosis Chain")
ARBITRUM = _network(42161, "Arbitrum One")


def _controller(*, fails: bool = False) -> AsyncMock:
    controller = AsyncMock()
    if fails:
        controller.run.side_effect = RuntimeError("rpc exploded")
    else:
        controller.run.return_value = ProgressTracker().snapshot()
    return controller


class TestMultiNetworkOrchestrator:
    """Tests for MultiNetworkOrchestrator."""

    def test_requires_networks(self) -> None:
        with pytest.raises(ValueError):
            MultiNetworkOrchestrator([], AsyncMock())

    @pytest.mark.asyncio
    async def test_runs_networks_in_order(self) -> None:
        controllers = {1: _controller(), 100: _controller()}
        started: list[int] = []

        async def factory(network: NetworkConfig) -> AsyncMock:
            started.append(network.chain_id)
            return controllers[network.chain_id]

        results = await MultiNetworkOrchestrator([MAINNET, GNOSIS], factory).run()

        assert started == [1, 100]
        assert [r.network.chain_id for r in results] == [1, 100]
        assert all(r.succeeded for r in results)
        for controller in controllers.values():
            controller.run.assert_awaited_once()
            controller.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_network_does_not_stop_the_rest(self) -> None:
        controllers = {1: _controller(fails=True), 100: _controller()}

        async def factory(network: NetworkConfig) -> AsyncMock:
            return controllers[network.chain_id]

        results = await MultiNetworkOrchestrator([MAINNET, GNOSIS], factory).run()

        assert [r.succeeded for r in results] == [False, True]
        assert results[0].error == "rpc exploded"
        assert results[0].snapshot is None
        assert results[1].snapshot is not None
        controllers[1].close.assert_awaited_once()
        controllers[100].run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_factory_failure_is_recorded(self) -> None:
        healthy = _controller()

        async def factory(network: NetworkConfig) -> AsyncMock:
            if network.chain_id == 100:
                raise ConnectionError("database unreachable")
            return healthy

        results = await MultiNetworkOrchestrator([GNOSIS, ARBITRUM], factory).run()

        assert results[0].error == "database unreachable"
        assert results[1].succeeded
        healthy.run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_failure_does_not_fail_the_network(self) -> None:
        controller = _controller()
        controller.close.side_effect = OSError("socket already closed")

        async def factory(network: NetworkConfig) -> AsyncMock:
            return controller

        results = await MultiNetworkOrchestrator([MAINNET], factory).run()

        assert results[0].succeeded
