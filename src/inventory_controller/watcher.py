"""Kubernetes VirtualMachine watcher.

Turns the Kubernetes watch API into an async stream of ChangeNotifications.

The official client's watch is a blocking generator, so each subscription
drains it on a daemon thread into an asyncio queue. Closing the subscription
abandons that thread instead of waiting for its read to return, so shutdown
never blocks on an idle watch. A server-side timeout bounds every watch; when
it expires the stream simply ends and the caller decides whether to re-subscribe. A fresh
watch (without a resourceVersion) replays every existing object as ADDED.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import AsyncGenerator, Iterator
from typing import Any, Protocol

from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException
from pydantic import ValidationError
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from .models import ChangeNotification, EventKind, VirtualMachineObject, VmRecord

logger = logging.getLogger(__name__)

VM_API_GROUP = "virtualization.deckhouse.io"
VM_API_VERSION = "v1alpha2"
VM_PLURAL = "virtualmachines"

HTTP_STATUS_GONE = 410

# Watch event types mapped to notification kinds; BOOKMARK and ERROR carry no VM
EVENT_KINDS: dict[str, EventKind] = {
    "ADDED": EventKind.ADDED,
    "MODIFIED": EventKind.MODIFIED,
    "DELETED": EventKind.REMOVED,
}

_END_OF_STREAM = object()


class WatchError(Exception):
    """Raised when the API server refuses to open a watch."""

    pass


class ResourceWatcher(Protocol):
    """Source of VM change notifications."""

    def subscribe(self, namespace: str | None) -> AsyncGenerator[ChangeNotification, None]:
        """Open a fresh subscription, cluster-wide when namespace is None.

        The iterator ends when the underlying channel closes; it never
        reconnects on its own.
        """
        ...


def decode_event(event_type: str, obj: dict[str, Any] | None) -> ChangeNotification | None:
    """Decode one raw watch event into a notification.

    Returns None for event types that carry no VM and for objects that cannot
    be identified by namespace and name.
    """
    kind = EVENT_KINDS.get(event_type)
    if kind is None:
        logger.debug("Ignoring watch event", extra={"event_type": event_type})
        return None

    try:
        vm = VirtualMachineObject.model_validate(obj or {})
    except ValidationError as e:
        logger.warning(
            "Skipping malformed VirtualMachine object",
            extra={"event_type": event_type, "error": str(e)},
        )
        return None

    if not vm.identified:
        return None

    if kind == EventKind.REMOVED:
        return ChangeNotification.removed(vm.metadata.namespace or "", vm.metadata.name or "")

    record = vm.to_record()
    return ChangeNotification(kind, record.namespace, record.name, record)


def load_kubernetes_config() -> None:
    """Load in-cluster config, falling back to the local kubeconfig.

    Raises:
        WatchError: If neither configuration source is usable.
    """
    try:
        config.load_incluster_config()
    except config.ConfigException:
        try:
            config.load_kube_config()
        except (config.ConfigException, OSError) as e:
            raise WatchError(f"failed to load Kubernetes configuration: {e}") from e


class KubernetesWatcher:
    """ResourceWatcher backed by the custom objects API."""

    def __init__(
        self,
        api: client.CustomObjectsApi | None = None,
        *,
        timeout_seconds: int = 300,
    ) -> None:
        self._api = api or client.CustomObjectsApi()
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_environment(cls, *, timeout_seconds: int = 300) -> KubernetesWatcher:
        load_kubernetes_config()
        return cls(timeout_seconds=timeout_seconds)

    def _list_call(self, namespace: str | None) -> tuple[Any, dict[str, Any]]:
        kwargs: dict[str, Any] = {
            "group": VM_API_GROUP,
            "version": VM_API_VERSION,
            "plural": VM_PLURAL,
        }
        if namespace:
            kwargs["namespace"] = namespace
            return self._api.list_namespaced_custom_object, kwargs
        return self._api.list_cluster_custom_object, kwargs

    async def list_vms(self, namespace: str | None = None) -> list[VmRecord]:
        """List the current VirtualMachines as records.

        Raises:
            WatchError: If the API server rejects the list call.
        """
        func, kwargs = self._list_call(namespace)
        try:
            body = await asyncio.to_thread(func, **kwargs)
        except ApiException as e:
            raise WatchError(f"failed to list VirtualMachines: {e.status} {e.reason}") from e

        records = []
        for item in body.get("items", []):
            notification = decode_event("ADDED", item)
            if notification is not None and notification.record is not None:
                records.append(notification.record)
        return records

    async def subscribe(self, namespace: str | None) -> AsyncGenerator[ChangeNotification, None]:
        func, kwargs = self._list_call(namespace)
        w = watch.Watch()
        stream = w.stream(func, timeout_seconds=self._timeout_seconds, **kwargs)
        queue: asyncio.Queue[tuple[Any, BaseException | None]] = asyncio.Queue()
        stopped = threading.Event()
        opened = False

        thread = threading.Thread(
            target=_pump,
            args=(stream, queue, asyncio.get_running_loop(), stopped),
            name=f"vm-watch-{namespace or 'all'}",
            daemon=True,
        )
        thread.start()

        logger.info(
            "Watch started",
            extra={"namespace": namespace or "*", "timeout_seconds": self._timeout_seconds},
        )

        try:
            while True:
                try:
                    event, error = await queue.get()
                    if error is not None:
                        raise error
                except ApiException as e:
                    if e.status == HTTP_STATUS_GONE or opened:
                        logger.warning(
                            "Watch closed by API server",
                            extra={"status": e.status, "reason": e.reason},
                        )
                        return
                    raise WatchError(f"failed to start watch: {e.status} {e.reason}") from e
                except (Urllib3HTTPError, OSError) as e:
                    logger.warning("Watch connection lost", extra={"error": str(e)})
                    return

                if event is _END_OF_STREAM:
                    logger.info("Watch stream ended", extra={"namespace": namespace or "*"})
                    return

                opened = True
                if event.get("type") == "ERROR":
                    status = event.get("raw_object") or event.get("object")
                    code = status.get("code") if isinstance(status, dict) else None
                    if code == HTTP_STATUS_GONE:
                        logger.warning("Watch resource version expired", extra={"status": code})
                        return
                    logger.warning(
                        "Watch error event, skipping",
                        extra={"status": code, "detail": str(status)},
                    )
                    continue

                notification = decode_event(event.get("type", ""), event.get("object"))
                if notification is not None:
                    yield notification
        finally:
            # The reader may stay blocked until the server-side timeout; it is a
            # daemon and drops whatever it reads after this point
            stopped.set()
            w.stop()


def _pump(
    stream: Iterator[dict[str, Any]],
    queue: asyncio.Queue[tuple[Any, BaseException | None]],
    loop: asyncio.AbstractEventLoop,
    stopped: threading.Event,
) -> None:
    """Drain the blocking watch stream into the subscriber's queue."""

    def post(item: Any, error: BaseException | None = None) -> bool:
        if stopped.is_set():
            return False
        try:
            loop.call_soon_threadsafe(queue.put_nowait, (item, error))
        except RuntimeError:
            # Event loop already closed
            return False
        return True

    try:
        for event in stream:
            if not post(event):
                return
    except Exception as e:
        post(None, e)
        return
    post(_END_OF_STREAM)
