"""Event-driven reconciliation of VirtualMachines into AWX inventories.

The engine drives one loop:
1. Subscribe to VM change notifications
2. Classify each notification (upsert, delete or skip)
3. Resolve the AWX inventory for the notification's namespace
4. Apply an idempotent host upsert or delete
5. When the stream closes, wait a fixed delay and subscribe again

Notifications are processed strictly one at a time in delivery order, so the
namespace -> inventory cache needs no locking. A fresh subscription replays
every VM as ADDED; because upserts and deletes are idempotent, the replay
converges to the same AWX state however often a VM was seen before.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncGenerator, AsyncIterator, Iterable, MutableMapping
from dataclasses import dataclass
from enum import Enum

from .gateway import InventoryGateway, OrganizationNotFoundError
from .models import ChangeNotification, EventKind, HostUpsert, InventoryRef, inventory_name
from .watcher import ResourceWatcher

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY_SECONDS = 5.0

_SHUTDOWN = object()


class Effect(str, Enum):
    """What a notification does to the remote inventory."""

    UPSERT = "upsert"
    DELETE = "delete"
    SKIP = "skip"


def classify(notification: ChangeNotification) -> Effect:
    """Map a notification to its effect.

    A VM without an address has nothing to publish yet, so ADDED and
    MODIFIED notifications without one are skipped.
    """
    if notification.kind == EventKind.REMOVED:
        return Effect.DELETE
    if notification.record is None or not notification.record.has_address:
        return Effect.SKIP
    return Effect.UPSERT


@dataclass
class SyncResult:
    """Outcome of reconciling a finite batch of notifications."""

    processed: int = 0
    skipped: int = 0
    failed: int = 0
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.failed == 0


class ReconciliationEngine:
    """Mirror VM lifecycle events into AWX, one inventory per namespace.

    The cache is injected so callers can pre-seed or observe it; it maps a
    namespace to the AWX inventory id and lives as long as the process.
    """

    def __init__(
        self,
        gateway: InventoryGateway,
        watcher: ResourceWatcher,
        *,
        organization: str,
        inventory_prefix: str = "",
        namespace: str | None = None,
        cache: MutableMapping[str, int] | None = None,
        reconnect_delay_seconds: float = DEFAULT_RECONNECT_DELAY_SECONDS,
        group_label: str | None = None,
        resolve_on_delete: bool = False,
    ) -> None:
        self._gateway = gateway
        self._watcher = watcher
        self._organization = organization
        self._inventory_prefix = inventory_prefix
        self._namespace = namespace
        self._cache: MutableMapping[str, int] = cache if cache is not None else {}
        self._reconnect_delay_seconds = reconnect_delay_seconds
        self._group_label = group_label
        self._resolve_on_delete = resolve_on_delete

        self._shutdown_event = asyncio.Event()
        self._subscriptions = 0

    @property
    def cache(self) -> MutableMapping[str, int]:
        return self._cache

    @property
    def subscriptions(self) -> int:
        """Number of subscriptions opened so far."""
        return self._subscriptions

    def inventory_refs(self) -> list[InventoryRef]:
        return [InventoryRef(namespace, inv_id) for namespace, inv_id in self._cache.items()]

    # -------------------------------------------------------------------------
    # Subscription loop
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Process notifications until shutdown is requested.

        Raises:
            WatchError: If a subscription cannot be established at all.
        """
        logger.info(
            "Starting reconciliation engine",
            extra={
                "namespace": self._namespace or "*",
                "organization": self._organization,
                "inventory_prefix": self._inventory_prefix,
            },
        )

        while not self._shutdown_event.is_set():
            self._subscriptions += 1
            subscription = self._watcher.subscribe(self._namespace)
            try:
                await self._consume(subscription)
            finally:
                await subscription.aclose()

            if self._shutdown_event.is_set():
                break

            logger.warning(
                "Watch channel closed, re-subscribing",
                extra={
                    "delay_seconds": self._reconnect_delay_seconds,
                    "subscriptions": self._subscriptions,
                },
            )
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self._reconnect_delay_seconds
                )
            except TimeoutError:
                pass

        logger.info("Reconciliation engine stopped")

    def shutdown(self) -> None:
        """Signal the engine to stop at the next subscription read."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def _consume(self, subscription: AsyncGenerator[ChangeNotification, None]) -> None:
        while True:
            notification = await self._next(subscription)
            if notification is None or notification is _SHUTDOWN:
                return
            await self.process(notification)

    async def _next(self, subscription: AsyncIterator[ChangeNotification]) -> object | None:
        """Read the next notification, or _SHUTDOWN if shutdown wins the race.

        Returns None when the subscription ends.
        """
        if self._shutdown_event.is_set():
            return _SHUTDOWN

        read = asyncio.ensure_future(_read_next(subscription))
        stop = asyncio.ensure_future(self._shutdown_event.wait())
        try:
            await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()

        if read.done():
            return read.result()

        read.cancel()
        try:
            await read
        except asyncio.CancelledError:
            pass
        return _SHUTDOWN

    # -------------------------------------------------------------------------
    # Notification handling
    # -------------------------------------------------------------------------

    async def process(self, notification: ChangeNotification) -> bool:
        """Handle one notification without letting its failure escape.

        Returns:
            True if the notification was applied or skipped, False on error.
        """
        try:
            await self.handle(notification)
        except Exception as e:
            logger.error(
                "Failed to process notification",
                extra={
                    "namespace": notification.namespace,
                    "vm": notification.name,
                    "event": notification.kind.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return False
        return True

    async def handle(self, notification: ChangeNotification) -> Effect:
        """Apply one notification; errors propagate to the caller."""
        effect = classify(notification)

        if effect == Effect.SKIP:
            # MODIFIED without an address repeats while the IP is assigned; stay quiet
            if notification.kind == EventKind.ADDED:
                logger.warning(
                    "VM has no IP address, skipping",
                    extra={"namespace": notification.namespace, "vm": notification.name},
                )
            return effect

        if effect == Effect.UPSERT:
            logger.info(
                "Publishing VM",
                extra={
                    "namespace": notification.namespace,
                    "vm": notification.name,
                    "event": notification.kind.value,
                    "address": notification.record.address if notification.record else None,
                },
            )
            await self._upsert(notification)
        else:
            await self._delete(notification.namespace, notification.name)
        return effect

    async def _upsert(self, notification: ChangeNotification) -> None:
        vm = notification.record
        assert vm is not None

        inventory_id = await self.resolve_inventory(vm.namespace)
        command = HostUpsert.from_record(inventory_id, vm)
        host_id = await self._gateway.upsert_host(
            command.inventory_id, command.host_name, command.variables
        )

        group_name = vm.labels.get(self._group_label) if self._group_label else None
        if group_name:
            group_id = await self._gateway.find_or_create_group(inventory_id, group_name)
            await self._gateway.add_host_to_group(group_id, host_id)

    async def _delete(self, namespace: str, name: str) -> None:
        inventory_id = self._cache.get(namespace)
        if inventory_id is None and self._resolve_on_delete:
            inventory_id = await self._lookup_inventory(namespace)

        if inventory_id is None:
            logger.debug(
                "No inventory for namespace, nothing to delete",
                extra={"namespace": namespace, "vm": name},
            )
            return

        deleted = await self._gateway.delete_host(inventory_id, name)
        logger.info(
            "VM removed" if deleted else "VM already absent from inventory",
            extra={"namespace": namespace, "vm": name, "inventory_id": inventory_id},
        )

    # -------------------------------------------------------------------------
    # Inventory resolution
    # -------------------------------------------------------------------------

    async def resolve_inventory(self, namespace: str) -> int:
        """Return the inventory id for a namespace, creating it on first use.

        Raises:
            OrganizationNotFoundError: If the configured organization is missing.
        """
        cached = self._cache.get(namespace)
        if cached is not None:
            return cached

        name = inventory_name(self._inventory_prefix, namespace)

        # Looked up every miss; misses are rare and the organization may be recreated
        organization_id = await self._gateway.find_organization(self._organization)
        if organization_id is None:
            raise OrganizationNotFoundError(self._organization)

        inventory_id = await self._gateway.find_inventory(name)
        if inventory_id is None:
            logger.info(
                "Creating inventory",
                extra={"inventory_name": name, "namespace": namespace},
            )
            inventory_id = await self._gateway.create_inventory(name, organization_id)
            logger.info(
                "Inventory created",
                extra={"inventory_name": name, "inventory_id": inventory_id},
            )
        else:
            logger.info(
                "Inventory already exists",
                extra={"inventory_name": name, "inventory_id": inventory_id},
            )

        self._cache[namespace] = inventory_id
        return inventory_id

    async def _lookup_inventory(self, namespace: str) -> int | None:
        """Find an existing inventory by name without creating it."""
        inventory_id = await self._gateway.find_inventory(
            inventory_name(self._inventory_prefix, namespace)
        )
        if inventory_id is not None:
            self._cache[namespace] = inventory_id
        return inventory_id

    # -------------------------------------------------------------------------
    # Batch reconciliation
    # -------------------------------------------------------------------------

    async def reconcile_snapshot(
        self, notifications: Iterable[ChangeNotification]
    ) -> SyncResult:
        """Process a finite batch of notifications in order."""
        start = time.monotonic()
        result = SyncResult()

        for notification in notifications:
            if self._shutdown_event.is_set():
                break
            if not await self.process(notification):
                result.failed += 1
            elif classify(notification) == Effect.SKIP:
                result.skipped += 1
            else:
                result.processed += 1

        result.duration_seconds = time.monotonic() - start
        logger.info(
            "Snapshot reconciled",
            extra={
                "processed": result.processed,
                "skipped": result.skipped,
                "failed": result.failed,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result


async def _read_next(subscription: AsyncIterator[ChangeNotification]) -> ChangeNotification | None:
    try:
        return await subscription.__anext__()
    except StopAsyncIteration:
        return None
