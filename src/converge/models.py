"""Pydantic models for the declared state with validation.

These models provide:
1. Type-safe parsing of the declared-state document
2. Kind-specific naming constraints checked at the boundary
3. Typed references (dependencies, existing resources, secrets) instead of
   string interpolation
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator


class ConvergeError(Exception):
    """Base class for engine errors."""

    pass


# =============================================================================
# Resource Kinds
# =============================================================================


class ResourceKind(str, Enum):
    """Kinds of resources the engine manages."""

    SCOPE = "scope"
    NETWORK = "network"
    SECRET_STORE = "secret-store"
    GATEWAY = "gateway"
    MANAGED_IDENTITY = "managed-identity"
    PRIVATE_ZONE = "private-zone"
    ENDPOINT = "endpoint"
    STORAGE_ACCOUNT = "storage-account"
    CONTAINER_REGISTRY = "container-registry"
    DNS_RESOLVER = "dns-resolver"


@dataclass(frozen=True)
class KindSchema:
    """Naming constraints and lifecycle traits for a resource kind.

    Attributes:
        kind: The resource kind.
        name_pattern: Regex the name must fully match.
        min_length: Minimum name length.
        max_length: Maximum name length.
        globally_unique: Name must be unique across all tenants, not just the scope.
        immutable_properties: Properties that force a replace when they drift.
        soft_delete: Deleted resources are retained and keep their name reserved.
        high_risk: Changes to this kind always need a careful review.
        azure_type: ARM resource type used by the Azure backend.
        api_version: ARM API version used by the Azure backend.
    """

    kind: ResourceKind
    name_pattern: str
    min_length: int
    max_length: int
    globally_unique: bool = False
    immutable_properties: frozenset[str] = frozenset({"location"})
    soft_delete: bool = False
    high_risk: bool = False
    azure_type: str = ""
    api_version: str = ""

    def name_errors(self, name: str) -> list[str]:
        """Return every naming-constraint violation for a name."""
        errors: list[str] = []
        if not (self.min_length <= len(name) <= self.max_length):
            errors.append(
                f"{self.kind.value} name must be {self.min_length}-{self.max_length} "
                f"characters (got {len(name)})"
            )
        if not re.fullmatch(self.name_pattern, name):
            errors.append(
                f"{self.kind.value} name '{name}' must match pattern {self.name_pattern}"
            )
        if self.kind == ResourceKind.SECRET_STORE and "--" in name:
            errors.append("secret-store name cannot contain consecutive hyphens")
        return errors


_DNS_NAME_PATTERN = r"^(?=.{1,253}$)([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"

KIND_SCHEMAS: dict[ResourceKind, KindSchema] = {
    ResourceKind.SCOPE: KindSchema(
        kind=ResourceKind.SCOPE,
        name_pattern=r"^[-\w.()]*[-\w()]$",
        min_length=1,
        max_length=90,
        azure_type="Microsoft.Resources/resourceGroups",
        api_version="2022-09-01",
    ),
    ResourceKind.NETWORK: KindSchema(
        kind=ResourceKind.NETWORK,
        name_pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*[a-zA-Z0-9_]$",
        min_length=2,
        max_length=64,
        azure_type="Microsoft.Network/virtualNetworks",
        api_version="2023-09-01",
    ),
    ResourceKind.SECRET_STORE: KindSchema(
        kind=ResourceKind.SECRET_STORE,
        name_pattern=r"^[a-zA-Z][a-zA-Z0-9-]*[a-zA-Z0-9]$",
        min_length=3,
        max_length=24,
        globally_unique=True,
        immutable_properties=frozenset({"location", "tenantId"}),
        soft_delete=True,
        high_risk=True,
        azure_type="Microsoft.KeyVault/vaults",
        api_version="2023-07-01",
    ),
    ResourceKind.GATEWAY: KindSchema(
        kind=ResourceKind.GATEWAY,
        name_pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*[a-zA-Z0-9_]$",
        min_length=1,
        max_length=80,
        immutable_properties=frozenset({"location", "gatewayType", "network"}),
        high_risk=True,
        azure_type="Microsoft.Network/virtualNetworkGateways",
        api_version="2023-09-01",
    ),
    ResourceKind.MANAGED_IDENTITY: KindSchema(
        kind=ResourceKind.MANAGED_IDENTITY,
        name_pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_-]*$",
        min_length=3,
        max_length=128,
        high_risk=True,
        azure_type="Microsoft.ManagedIdentity/userAssignedIdentities",
        api_version="2023-01-31",
    ),
    ResourceKind.PRIVATE_ZONE: KindSchema(
        kind=ResourceKind.PRIVATE_ZONE,
        name_pattern=_DNS_NAME_PATTERN,
        min_length=1,
        max_length=253,
        immutable_properties=frozenset(),
        high_risk=True,
        azure_type="Microsoft.Network/privateDnsZones",
        api_version="2020-06-01",
    ),
    ResourceKind.ENDPOINT: KindSchema(
        kind=ResourceKind.ENDPOINT,
        name_pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*[a-zA-Z0-9_]$",
        min_length=2,
        max_length=64,
        immutable_properties=frozenset({"location", "subnet", "targetResource", "groupId"}),
        azure_type="Microsoft.Network/privateEndpoints",
        api_version="2023-09-01",
    ),
    ResourceKind.STORAGE_ACCOUNT: KindSchema(
        kind=ResourceKind.STORAGE_ACCOUNT,
        name_pattern=r"^[a-z0-9]+$",
        min_length=3,
        max_length=24,
        globally_unique=True,
        immutable_properties=frozenset({"location", "accountKind"}),
        azure_type="Microsoft.Storage/storageAccounts",
        api_version="2023-01-01",
    ),
    ResourceKind.CONTAINER_REGISTRY: KindSchema(
        kind=ResourceKind.CONTAINER_REGISTRY,
        name_pattern=r"^[a-zA-Z0-9]+$",
        min_length=5,
        max_length=50,
        globally_unique=True,
        azure_type="Microsoft.ContainerRegistry/registries",
        api_version="2023-07-01",
    ),
    ResourceKind.DNS_RESOLVER: KindSchema(
        kind=ResourceKind.DNS_RESOLVER,
        name_pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_-]*[a-zA-Z0-9_]$",
        min_length=1,
        max_length=80,
        immutable_properties=frozenset({"location", "network"}),
        azure_type="Microsoft.Network/dnsResolvers",
        api_version="2022-07-01",
    ),
}


def get_kind_schema(kind: ResourceKind) -> KindSchema:
    """Get the schema for a resource kind."""
    return KIND_SCHEMAS[kind]


# Properties a secret store must carry before anything may reference it
SECURED_STORE_INVARIANTS: dict[str, Any] = {
    "enableSoftDelete": True,
    "enablePurgeProtection": True,
}

# Default tags that should be present on every declared resource
DEFAULT_REQUIRED_TAGS: tuple[str, ...] = ("project", "environment", "component")

# Ownership tags stamped by the engine
OWNER_TAG = "managedBy"
OWNER_TAG_VALUE = "converge"
DEPLOYMENT_TAG = "deployment"

# Declared properties the engine consumes itself rather than the backend
ENGINE_PROPERTIES = frozenset({"joinZones", "recordName", "linkedNetworks"})


# =============================================================================
# References
# =============================================================================


@dataclass(frozen=True, order=True)
class ResourceRef:
    """Identity of a resource: kind, scope and name."""

    kind: ResourceKind
    scope: str | None
    name: str

    @property
    def key(self) -> str:
        """Stable identifier used for ordering, logging and lookups."""
        if self.kind == ResourceKind.SCOPE:
            return f"scope/{self.name}"
        return f"{self.kind.value}/{self.scope}/{self.name}"

    def __str__(self) -> str:
        return self.key

    @classmethod
    def parse(cls, value: str | dict[str, Any], default_scope: str | None) -> ResourceRef:
        """Parse a dependency reference.

        Accepted forms:
            "kind/name"              same scope as the referring resource
            "kind/scope/name"        explicit scope
            "scope/name"             a scope resource
            {kind, scope?, name}     mapping form

        Raises:
            ValueError: If the reference is malformed or names an unknown kind.
        """
        if isinstance(value, dict):
            try:
                kind = ResourceKind(value["kind"])
                name = value["name"]
            except (KeyError, ValueError) as e:
                raise ValueError(f"Invalid resource reference: {value}") from e
            scope = value.get("scope", default_scope)
            if kind == ResourceKind.SCOPE:
                scope = None
            return cls(kind=kind, scope=scope, name=name)

        parts = value.split("/")
        try:
            kind = ResourceKind(parts[0])
        except ValueError as e:
            raise ValueError(f"Unknown resource kind in reference '{value}'") from e

        if kind == ResourceKind.SCOPE:
            if len(parts) != 2 or not parts[1]:
                raise ValueError(f"Scope reference must be 'scope/<name>': '{value}'")
            return cls(kind=kind, scope=None, name=parts[1])
        if len(parts) == 2 and parts[1]:
            if default_scope is None:
                raise ValueError(f"Reference '{value}' needs an explicit scope")
            return cls(kind=kind, scope=default_scope, name=parts[1])
        if len(parts) == 3 and parts[1] and parts[2]:
            return cls(kind=kind, scope=parts[1], name=parts[2])
        raise ValueError(f"Invalid resource reference: '{value}'")


class SecretReference(BaseModel):
    """A secret-valued property resolved by the backend at apply time."""

    model_config = {"extra": "forbid", "frozen": True}

    scope: Annotated[str, Field(min_length=1)]
    store: Annotated[str, Field(min_length=1)]
    entry: Annotated[str, Field(min_length=1)]

    @property
    def store_ref(self) -> ResourceRef:
        """Reference to the secret store holding the entry."""
        return ResourceRef(ResourceKind.SECRET_STORE, self.scope, self.store)

    def to_wire(self) -> dict[str, Any]:
        """Serialized form passed to (and reported back by) the backend."""
        return {"secretRef": {"scope": self.scope, "store": self.store, "entry": self.entry}}


class ExistingResourceRef(BaseModel):
    """A resource the plan relies on but does not manage."""

    model_config = {"extra": "forbid"}

    kind: ResourceKind
    scope: str | None = None
    name: Annotated[str, Field(min_length=1)]
    # Property values the resource must already have
    requires: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_scope(self) -> ExistingResourceRef:
        if self.kind != ResourceKind.SCOPE and not self.scope:
            raise ValueError(f"existing {self.kind.value} '{self.name}' needs a scope")
        if self.kind == ResourceKind.SCOPE:
            self.scope = None
        return self

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(self.kind, self.scope, self.name)


def _convert_secret_refs(value: Any) -> Any:
    """Turn ``{"secretRef": {...}}`` mappings into SecretReference objects."""
    if isinstance(value, SecretReference):
        return value
    if isinstance(value, dict):
        if set(value.keys()) == {"secretRef"} and isinstance(value["secretRef"], dict):
            return SecretReference.model_validate(value["secretRef"])
        return {k: _convert_secret_refs(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_convert_secret_refs(v) for v in value]
    return value


def iter_secret_refs(value: Any) -> list[SecretReference]:
    """Collect every SecretReference nested in a property value."""
    found: list[SecretReference] = []
    if isinstance(value, SecretReference):
        found.append(value)
    elif isinstance(value, dict):
        for v in value.values():
            found.extend(iter_secret_refs(v))
    elif isinstance(value, list):
        for v in value:
            found.extend(iter_secret_refs(v))
    return found


def to_wire(value: Any) -> Any:
    """Serialize property values for the backend (secret refs stay references)."""
    if isinstance(value, SecretReference):
        return value.to_wire()
    if isinstance(value, dict):
        return {k: to_wire(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_wire(v) for v in value]
    return value


# =============================================================================
# Resources
# =============================================================================


class ResourceSpec(BaseModel):
    """A declared resource."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    kind: ResourceKind
    scope: str | None = None
    name: Annotated[str, Field(min_length=1)]
    properties: dict[str, Any] = Field(default_factory=dict, alias="declaredProperties")
    tags: dict[str, str] = Field(default_factory=dict)
    # Raw references; resolved against the resource's scope by ``dependency_refs``
    depends_on: list[str | dict[str, Any]] = Field(default_factory=list, alias="dependsOn")

    @field_validator("properties", mode="before")
    @classmethod
    def convert_secret_references(cls, v: Any) -> Any:
        if v is None:
            return {}
        return _convert_secret_refs(v)

    @field_validator("tags", mode="before")
    @classmethod
    def stringify_tags(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v

    @model_validator(mode="after")
    def validate_identity(self) -> ResourceSpec:
        if self.kind == ResourceKind.SCOPE:
            # A scope's parent is outside the plan's control
            self.scope = None
        elif not self.scope:
            raise ValueError(f"{self.kind.value} '{self.name}' must declare a scope")

        errors = get_kind_schema(self.kind).name_errors(self.name)
        if errors:
            raise ValueError("; ".join(errors))

        for dep in self.depends_on:
            ResourceRef.parse(dep, self.scope)
        for zone_ref in self.joined_zone_refs():
            if zone_ref.kind != ResourceKind.PRIVATE_ZONE:
                raise ValueError(
                    f"joinZones entry '{zone_ref.key}' of '{self.name}' is not a private zone"
                )
        return self

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(self.kind, self.scope, self.name)

    @property
    def key(self) -> str:
        return self.ref.key

    @property
    def schema(self) -> KindSchema:
        return get_kind_schema(self.kind)

    def dependency_refs(self) -> list[ResourceRef]:
        """Explicit dependencies resolved against this resource's scope."""
        return [ResourceRef.parse(dep, self.scope) for dep in self.depends_on]

    def secret_refs(self) -> list[SecretReference]:
        """Secret references nested anywhere in the declared properties."""
        return iter_secret_refs(self.properties)

    def joined_zone_refs(self) -> list[ResourceRef]:
        """Private zones an endpoint registers into (``joinZones``)."""
        if self.kind != ResourceKind.ENDPOINT:
            return []
        return [
            ResourceRef.parse(
                z if "/" in str(z) or isinstance(z, dict) else f"private-zone/{z}",
                self.scope,
            )
            for z in self.properties.get("joinZones", []) or []
        ]

    def linked_networks(self) -> list[str]:
        """Network scopes a private zone is linked to.

        Defaults to the zone's own scope when ``linkedNetworks`` is not declared.
        """
        if self.kind != ResourceKind.PRIVATE_ZONE:
            return []
        declared = self.properties.get("linkedNetworks")
        if declared is None:
            return [self.scope] if self.scope else []
        return [str(n) for n in declared]

    def record_name(self) -> str:
        """Record name an endpoint registers under (defaults to its name)."""
        return str(self.properties.get("recordName") or self.name).lower()


class DeploymentMetadata(BaseModel):
    """Document-level metadata."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=64)] = "default"
    description: str | None = None


class DeclaredState(BaseModel):
    """The declared-state document."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    api_version: str = Field("converge/v1", alias="apiVersion")
    metadata: DeploymentMetadata = Field(default_factory=DeploymentMetadata)
    required_tags: list[str] = Field(
        default_factory=lambda: list(DEFAULT_REQUIRED_TAGS), alias="requiredTags"
    )
    existing: list[ExistingResourceRef] = Field(default_factory=list)
    resources: list[ResourceSpec] = Field(default_factory=list)

    @field_validator("api_version")
    @classmethod
    def validate_api_version(cls, v: str) -> str:
        if v != "converge/v1":
            raise ValueError(f"unsupported apiVersion '{v}' (expected converge/v1)")
        return v

    @model_validator(mode="after")
    def validate_unique_keys(self) -> DeclaredState:
        seen: set[str] = set()
        duplicates: list[str] = []
        for resource in self.resources:
            if resource.key in seen:
                duplicates.append(resource.key)
            seen.add(resource.key)
        existing_keys = {e.ref.key for e in self.existing}
        overlap = sorted(seen & existing_keys)
        if duplicates:
            raise ValueError(f"duplicate resources declared: {sorted(set(duplicates))}")
        if overlap:
            raise ValueError(f"resources declared both managed and existing: {overlap}")
        return self

    @property
    def deployment_name(self) -> str:
        return self.metadata.name

    def get(self, key: str) -> ResourceSpec | None:
        """Look up a declared resource by key."""
        for resource in self.resources:
            if resource.key == key:
                return resource
        return None

    def existing_by_key(self) -> dict[str, ExistingResourceRef]:
        return {e.ref.key: e for e in self.existing}
