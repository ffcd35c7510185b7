"""Startup readiness gate.

Runs once before the reconciliation engine starts:
1. Poll the AWX ping endpoint until it answers or the timeout elapses
2. Resolve (never create) the configured organization

Either failure is fatal; the controller never starts half-connected.
"""

from __future__ import annotations

import asyncio
import logging
import time

from .config import Config
from .gateway import GatewayError, InventoryGateway, OrganizationNotFoundError

logger = logging.getLogger(__name__)


class BootstrapError(Exception):
    """Raised when the readiness gate fails."""

    pass


async def wait_for_gateway(
    gateway: InventoryGateway,
    timeout_seconds: float,
    interval_seconds: float,
) -> bool:
    """Wait for the inventory gateway to become reachable.

    Args:
        gateway: Gateway to probe.
        timeout_seconds: Maximum time to wait.
        interval_seconds: Delay between probes.

    Returns:
        True once a probe succeeds, False on timeout.
    """
    start_time = time.monotonic()
    attempt = 0

    while (time.monotonic() - start_time) < timeout_seconds:
        attempt += 1
        if await gateway.ping():
            logger.info("AWX is available", extra={"attempts": attempt})
            return True

        logger.debug("AWX not yet available, waiting...", extra={"attempt": attempt})
        await asyncio.sleep(interval_seconds)

    logger.error(f"AWX did not become available within {timeout_seconds}s")
    return False


async def verify_organization(gateway: InventoryGateway, name: str) -> int:
    """Resolve the organization id by name.

    Raises:
        OrganizationNotFoundError: If no organization has that name.
    """
    organization_id = await gateway.find_organization(name)
    if organization_id is None:
        raise OrganizationNotFoundError(name)
    logger.info(
        "Organization verified",
        extra={"organization": name, "organization_id": organization_id},
    )
    return organization_id


async def bootstrap(gateway: InventoryGateway, config: Config) -> int:
    """Run the readiness gate.

    Returns:
        The organization id.

    Raises:
        BootstrapError: If AWX never answers or the organization is missing.
    """
    logger.info(
        "Waiting for AWX availability...",
        extra={
            "awx_url": config.base_url,
            "timeout_seconds": config.wait_timeout_seconds,
            "interval_seconds": config.wait_interval_seconds,
        },
    )
    ready = await wait_for_gateway(
        gateway, config.wait_timeout_seconds, config.wait_interval_seconds
    )
    if not ready:
        raise BootstrapError(f"AWX did not become available within {config.wait_timeout_seconds}s")

    try:
        organization_id = await verify_organization(gateway, config.organization)
    except OrganizationNotFoundError as e:
        raise BootstrapError(str(e)) from e
    except GatewayError as e:
        raise BootstrapError(f"failed to get organization ID: {e}") from e

    logger.info("Controller initialized. Inventories will be created per namespace as needed.")
    return organization_id
