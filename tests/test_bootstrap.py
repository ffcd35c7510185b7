"""Tests for the startup readiness gate."""

from unittest.mock import AsyncMock, patch

import pytest
from awx_mock import MockAwxGateway

from inventory_controller.bootstrap import (
    BootstrapError,
    bootstrap,
    verify_organization,
    wait_for_gateway,
)
from inventory_controller.config import Config
from inventory_controller.gateway import AwxConnectionError, OrganizationNotFoundError


def make_config(**overrides: object) -> Config:
    defaults: dict[str, object] = {
        "awx_token": "secret",
        "wait_timeout_seconds": 10,
        "wait_interval_seconds": 1,
    }
    defaults.update(overrides)
    return Config(**defaults)  # type: ignore[arg-type]


class TestWaitForGateway:
    """Tests for wait_for_gateway."""

    @pytest.mark.asyncio
    async def test_immediately_ready(self) -> None:
        gateway = MockAwxGateway()

        assert await wait_for_gateway(gateway, 10, 1) is True
        assert gateway.ping_count == 1

    @pytest.mark.asyncio
    async def test_ready_after_retries(self) -> None:
        gateway = MockAwxGateway(unreachable_pings=2)

        with patch("inventory_controller.bootstrap.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await wait_for_gateway(gateway, 10, 1) is True

        assert gateway.ping_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        """Test that a gateway that never answers times out."""
        gateway = MockAwxGateway(unreachable_pings=1000)

        assert await wait_for_gateway(gateway, 0.05, 0.01) is False
        assert gateway.ping_count >= 1


class TestVerifyOrganization:
    """Tests for verify_organization."""

    @pytest.mark.asyncio
    async def test_found(self) -> None:
        gateway = MockAwxGateway({"Platform": 7})
        assert await verify_organization(gateway, "Platform") == 7

    @pytest.mark.asyncio
    async def test_missing(self) -> None:
        with pytest.raises(OrganizationNotFoundError, match="Platform"):
            await verify_organization(MockAwxGateway({}), "Platform")


class TestBootstrap:
    """Tests for the full readiness gate."""

    @pytest.mark.asyncio
    async def test_success(self) -> None:
        gateway = MockAwxGateway()

        assert await bootstrap(gateway, make_config()) == 1
        assert gateway.method_calls("create_inventory") == []

    @pytest.mark.asyncio
    async def test_unavailable(self) -> None:
        gateway = MockAwxGateway(unreachable_pings=1000)
        config = make_config()

        with patch("inventory_controller.bootstrap.wait_for_gateway", new=AsyncMock(return_value=False)):
            with pytest.raises(BootstrapError, match="did not become available within 10s"):
                await bootstrap(gateway, config)

        assert gateway.method_calls("find_organization") == []

    @pytest.mark.asyncio
    async def test_missing_organization(self) -> None:
        with pytest.raises(BootstrapError, match="organization 'Platform' not found"):
            await bootstrap(MockAwxGateway({}), make_config(organization="Platform"))

    @pytest.mark.asyncio
    async def test_lookup_failure(self) -> None:
        gateway = MockAwxGateway(fail_on={"find_organization": AwxConnectionError("reset")})

        with pytest.raises(BootstrapError, match="failed to get organization ID"):
            await bootstrap(gateway, make_config())
