"""Provisioning backend interface.

The engine never provisions anything itself. Every read and mutation goes
through a Backend. Backend methods are blocking; the engine runs them in
worker threads.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from .models import ConvergeError, ResourceKind, ResourceRef


class ResourceStatus(str, Enum):
    """Provisioning status of a live resource."""

    SUCCEEDED = "Succeeded"
    PROVISIONING = "Provisioning"
    FAILED = "Failed"
    SOFT_DELETED = "SoftDeleted"


class NameAvailability(str, Enum):
    """Result of a global name availability check."""

    AVAILABLE = "Available"
    TAKEN = "Taken"
    SOFT_DELETED = "SoftDeleted"


class BackendError(ConvergeError):
    """Raised by a backend when an operation fails.

    Attributes:
        transient: True when retrying the same call may succeed.
    """

    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class NotFoundError(BackendError):
    """Raised when the target resource does not exist."""

    pass


class PurgeProtectedError(BackendError):
    """Raised when a purge is attempted on a purge-protected resource."""

    pass


@dataclass(frozen=True)
class ObservedResource:
    """A live resource as reported by the backend."""

    ref: ResourceRef
    properties: Mapping[str, Any] = field(default_factory=dict)
    tags: Mapping[str, str] = field(default_factory=dict)
    status: ResourceStatus = ResourceStatus.SUCCEEDED

    @property
    def key(self) -> str:
        return self.ref.key

    @property
    def soft_deleted(self) -> bool:
        return self.status == ResourceStatus.SOFT_DELETED

    @property
    def purge_protected(self) -> bool:
        return bool(self.properties.get("enablePurgeProtection"))

    @property
    def private_address(self) -> str | None:
        """Private IP of an endpoint, once allocated."""
        value = self.properties.get("privateIpAddress")
        return str(value) if value else None


@dataclass(frozen=True, order=True)
class ZoneId:
    """Identity of a private zone: owning scope and DNS name."""

    scope: str
    name: str

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(ResourceKind.PRIVATE_ZONE, self.scope, self.name)

    @classmethod
    def from_ref(cls, ref: ResourceRef) -> ZoneId:
        if ref.kind != ResourceKind.PRIVATE_ZONE or ref.scope is None:
            raise ValueError(f"{ref.key} is not a private zone")
        return cls(scope=ref.scope, name=ref.name)


@dataclass(frozen=True)
class PrivateZone:
    """Read-only snapshot of a private zone.

    Attributes:
        zone: Zone identity.
        links: Network scopes linked to the zone.
        records: Relative record name -> addresses.
    """

    zone: ZoneId
    links: frozenset[str] = frozenset()
    records: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.zone.name.lower()

    def is_linked(self, network_scope: str) -> bool:
        return network_scope in self.links

    def lookup(self, record_name: str) -> tuple[str, ...]:
        return tuple(self.records.get(record_name.lower(), ()))


@runtime_checkable
class Backend(Protocol):
    """Operations the engine needs from a provisioning backend."""

    def exists(self, ref: ResourceRef) -> bool:
        """True if the resource is live (soft-deleted does not count)."""
        ...

    def get(self, ref: ResourceRef) -> ObservedResource | None:
        """Read a resource; soft-deleted resources are returned with that status."""
        ...

    def create(
        self, ref: ResourceRef, properties: Mapping[str, Any], tags: Mapping[str, str]
    ) -> ObservedResource: ...

    def update(
        self, ref: ResourceRef, properties: Mapping[str, Any], tags: Mapping[str, str]
    ) -> ObservedResource: ...

    def delete(self, ref: ResourceRef, purge: bool = False) -> None:
        """Delete a resource; ``purge`` also removes a soft-deleted copy."""
        ...

    def name_availability(self, ref: ResourceRef) -> NameAvailability:
        """Availability of a globally unique name for ``ref``.

        A name held by ``ref`` itself is Available.
        """
        ...

    def can_read(self, ref: ResourceRef) -> bool: ...

    def link_zone(self, zone: ZoneId, network_scope: str) -> None: ...

    def upsert_record(self, zone: ZoneId, record_name: str, address: str) -> None: ...

    def delete_record(self, zone: ZoneId, record_name: str) -> None: ...

    def list_zones(self) -> list[PrivateZone]: ...

    def list_owned(self, deployment: str) -> list[ObservedResource]:
        """Live resources stamped with this deployment's ownership tags."""
        ...
