"""Domain records and boundary models.

The domain side is plain frozen dataclasses that the engine passes around:
1. VmRecord - observed state of one virtual machine
2. ChangeNotification - one watch event, already classified by kind
3. InventoryRef / HostUpsert - cache entries and commands for the gateway

The boundary side is pydantic models that validate untrusted payloads
(Kubernetes objects and AWX API responses) before they become domain records.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Domain Records
# =============================================================================


class EventKind(str, Enum):
    """Kinds of change notifications produced by a resource watcher."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    REMOVED = "REMOVED"


@dataclass(frozen=True)
class VmRecord:
    """Observed state of one virtual machine at the moment of a notification."""

    name: str
    namespace: str
    address: str | None = None
    labels: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("name cannot be empty")
        if not self.namespace:
            raise ValueError("namespace cannot be empty")
        # "" and None both mean the VM has no address yet
        if self.address is not None and not self.address.strip():
            object.__setattr__(self, "address", None)
        # Read-only copy; the caller keeps its own dict
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels)))

    @property
    def has_address(self) -> bool:
        return self.address is not None


@dataclass(frozen=True)
class ChangeNotification:
    """A single change event for one tracked VM.

    ``record`` carries the full current object for ADDED and MODIFIED; a
    REMOVED notification only identifies the VM by namespace and name.
    """

    kind: EventKind
    namespace: str
    name: str
    record: VmRecord | None = None

    def __post_init__(self) -> None:
        if self.kind != EventKind.REMOVED and self.record is None:
            raise ValueError(f"{self.kind.value} notification requires a record")

    @classmethod
    def added(cls, record: VmRecord) -> ChangeNotification:
        return cls(EventKind.ADDED, record.namespace, record.name, record)

    @classmethod
    def modified(cls, record: VmRecord) -> ChangeNotification:
        return cls(EventKind.MODIFIED, record.namespace, record.name, record)

    @classmethod
    def removed(cls, namespace: str, name: str) -> ChangeNotification:
        return cls(EventKind.REMOVED, namespace, name)


@dataclass(frozen=True)
class InventoryRef:
    """Resolved AWX inventory for one namespace."""

    namespace: str
    inventory_id: int


@dataclass(frozen=True)
class HostUpsert:
    """Command to create or update one host in an inventory.

    ``variables`` is a nested document; the gateway owns its wire encoding.
    """

    inventory_id: int
    host_name: str
    variables: dict[str, Any]

    @classmethod
    def from_record(cls, inventory_id: int, vm: VmRecord) -> HostUpsert:
        return cls(
            inventory_id=inventory_id,
            host_name=vm.name,
            variables={
                "vm_name": vm.name,
                "vm_namespace": vm.namespace,
                "labels": dict(vm.labels),
                "ansible_host": vm.address,
            },
        )


def inventory_name(prefix: str, namespace: str) -> str:
    """Build the AWX inventory name for a namespace.

    An empty prefix is dropped entirely rather than joined with a blank.
    """
    prefix = prefix.strip()
    if not prefix:
        return namespace
    return f"{prefix} {namespace}"


# =============================================================================
# Kubernetes Payloads
# =============================================================================


class ObjectMeta(BaseModel):
    """Subset of Kubernetes object metadata used by the controller."""

    model_config = {"extra": "ignore"}

    name: str | None = None
    namespace: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)

    @field_validator("labels", mode="before")
    @classmethod
    def default_labels(cls, v: Any) -> Any:
        # The API server sends null for objects without labels
        return v if v is not None else {}


class VirtualMachineStatus(BaseModel):
    """Subset of the VirtualMachine status subresource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    ip_address: str | None = Field(None, alias="ipAddress")


class VirtualMachineObject(BaseModel):
    """A ``virtualmachines.virtualization.deckhouse.io`` object body."""

    model_config = {"extra": "ignore"}

    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    status: VirtualMachineStatus | None = None

    @property
    def identified(self) -> bool:
        return bool(self.metadata.name and self.metadata.namespace)

    def to_record(self) -> VmRecord:
        """Convert to a domain record.

        Raises:
            ValueError: If the object lacks a name or namespace.
        """
        return VmRecord(
            name=self.metadata.name or "",
            namespace=self.metadata.namespace or "",
            address=self.status.ip_address if self.status else None,
            labels=dict(self.metadata.labels),
        )


# =============================================================================
# AWX API Responses
# =============================================================================


class AwxObject(BaseModel):
    """Any AWX resource; only the identity fields are modelled."""

    model_config = {"extra": "ignore"}

    id: int
    name: str | None = None


class Host(AwxObject):
    """AWX host resource. ``variables`` is the JSON/YAML string AWX stores."""

    inventory: int | None = None
    variables: str | None = None


class ListResponse(BaseModel):
    """Paged list envelope returned by AWX collection endpoints."""

    model_config = {"extra": "ignore"}

    count: int = 0
    results: list[AwxObject] = Field(default_factory=list)

    def first_id(self) -> int | None:
        return self.results[0].id if self.results else None
