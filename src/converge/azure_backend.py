"""Azure Resource Manager backend.

Maps engine resources onto ARM using the generic resource API of
``ResourceManagementClient`` (``*_by_id`` operations), so every kind is
handled the same way. Scopes are resource groups. Private zones are Private
DNS zones; zone links are ``virtualNetworkLinks`` and registrations are A
record sets.

SECURITY: Authentication is Managed Identity only (see security.py).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from azure.core.rest import HttpRequest
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, ResourceGroup

from .backend import (
    BackendError,
    NameAvailability,
    NotFoundError,
    ObservedResource,
    PrivateZone,
    PurgeProtectedError,
    ResourceStatus,
    ZoneId,
)
from .models import (
    DEPLOYMENT_TAG,
    ENGINE_PROPERTIES,
    KIND_SCHEMAS,
    OWNER_TAG,
    OWNER_TAG_VALUE,
    ResourceKind,
    ResourceRef,
    SecretReference,
    get_kind_schema,
)
from .security import get_managed_identity_credential

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRIVATE_DNS_API_VERSION = "2020-06-01"
RECORD_TTL_SECONDS = 10

# HTTP status codes worth retrying
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Kinds with a provider-level checkNameAvailability action
NAME_CHECK_PROVIDERS: dict[ResourceKind, str] = {
    ResourceKind.SECRET_STORE: "Microsoft.KeyVault",
    ResourceKind.STORAGE_ACCOUNT: "Microsoft.Storage",
    ResourceKind.CONTAINER_REGISTRY: "Microsoft.ContainerRegistry",
}

_PROVISIONING_STATES: dict[str, ResourceStatus] = {
    "succeeded": ResourceStatus.SUCCEEDED,
    "failed": ResourceStatus.FAILED,
    "canceled": ResourceStatus.FAILED,
}


def _classify(e: AzureError, what: str) -> BackendError:
    """Translate an Azure SDK error into a BackendError."""
    if isinstance(e, ResourceNotFoundError):
        return NotFoundError(f"{what}: not found")
    if isinstance(e, HttpResponseError):
        status = e.status_code or 0
        return BackendError(f"{what}: {e.message}", transient=status in TRANSIENT_STATUS_CODES)
    # Connection and timeout errors carry no status code
    return BackendError(f"{what}: {e}", transient=True)


def _wire_value(value: Any, subscription_id: str) -> Any:
    """Serialize secret references as Key Vault references."""
    if isinstance(value, SecretReference):
        vault_id = (
            f"/subscriptions/{subscription_id}/resourceGroups/{value.scope}"
            f"/providers/Microsoft.KeyVault/vaults/{value.store}"
        )
        return {"reference": {"keyVault": {"id": vault_id}, "secretName": value.entry}}
    if isinstance(value, dict):
        return {k: _wire_value(v, subscription_id) for k, v in value.items()}
    if isinstance(value, list):
        return [_wire_value(v, subscription_id) for v in value]
    return value


class AzureBackend:
    """Backend implementation on top of ARM."""

    def __init__(
        self,
        subscription_id: str,
        location: str,
        client: ResourceManagementClient | None = None,
    ) -> None:
        self._subscription_id = subscription_id
        self._location = location
        if client is None:
            credential = get_managed_identity_credential()
            client = ResourceManagementClient(
                credential=credential,
                subscription_id=subscription_id,
            )
        self._client = client
        self._type_to_kind = {s.azure_type.lower(): k for k, s in KIND_SCHEMAS.items()}

    # -------------------------------------------------------------------------
    # Identity helpers
    # -------------------------------------------------------------------------

    def resource_id(self, ref: ResourceRef) -> str:
        base = f"/subscriptions/{self._subscription_id}/resourceGroups"
        if ref.kind == ResourceKind.SCOPE:
            return f"{base}/{ref.name}"
        schema = get_kind_schema(ref.kind)
        return f"{base}/{ref.scope}/providers/{schema.azure_type}/{ref.name}"

    def _deleted_vault_id(self, name: str) -> str:
        return (
            f"/subscriptions/{self._subscription_id}/providers/Microsoft.KeyVault"
            f"/locations/{self._location}/deletedVaults/{name}"
        )

    def _ref_from_id(self, resource_id: str, resource_type: str) -> ResourceRef | None:
        kind = self._type_to_kind.get(resource_type.lower())
        parts = resource_id.split("/")
        try:
            scope = parts[parts.index("resourceGroups") + 1]
        except (ValueError, IndexError):
            return None
        if kind is None:
            return None
        return ResourceRef(kind, scope, parts[-1])

    def _call(self, what: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except AzureError as e:
            error = _classify(e, what)
            logger.debug(
                "Azure call failed",
                extra={"operation": what, "error": str(e), "transient": error.transient},
            )
            raise error from e

    def _send(self, method: str, url: str, json: Any = None) -> dict[str, Any]:
        """Issue a raw ARM request for operations the generic API does not cover."""
        request = HttpRequest(method, url, json=json)
        response = self._client._send_request(request)
        if response.status_code == 404:
            raise ResourceNotFoundError(response=response)
        if response.status_code >= 400:
            raise HttpResponseError(response=response)
        if not response.content:
            return {}
        return response.json()

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def _observed(
        self,
        ref: ResourceRef,
        properties: Mapping[str, Any] | None,
        tags: Any,
        location: str | None,
    ) -> ObservedResource:
        props = dict(properties or {})
        state = str(props.get("provisioningState", "Succeeded")).lower()
        status = _PROVISIONING_STATES.get(state, ResourceStatus.PROVISIONING)
        if location:
            props["location"] = location
        if ref.kind == ResourceKind.ENDPOINT:
            configs = props.get("customDnsConfigs") or []
            if configs and configs[0].get("ipAddresses"):
                props["privateIpAddress"] = configs[0]["ipAddresses"][0]
        return ObservedResource(ref=ref, properties=props, tags=dict(tags or {}), status=status)

    def _get_deleted_vault(self, ref: ResourceRef) -> ObservedResource | None:
        try:
            deleted = self._call(
                f"get deleted {ref.key}",
                lambda: self._client.resources.get_by_id(
                    self._deleted_vault_id(ref.name), get_kind_schema(ref.kind).api_version
                ),
            )
        except NotFoundError:
            return None
        props = dict(deleted.properties or {})
        return ObservedResource(
            ref=ref,
            properties={
                "enableSoftDelete": True,
                "enablePurgeProtection": bool(props.get("purgeProtectionEnabled")),
                "scheduledPurgeDate": props.get("scheduledPurgeDate"),
            },
            tags=dict(props.get("tags") or {}),
            status=ResourceStatus.SOFT_DELETED,
        )

    def exists(self, ref: ResourceRef) -> bool:
        if ref.kind == ResourceKind.SCOPE:
            return self._call(
                f"check {ref.key}", lambda: self._client.resource_groups.check_existence(ref.name)
            )
        return self._call(
            f"check {ref.key}",
            lambda: self._client.resources.check_existence_by_id(
                self.resource_id(ref), get_kind_schema(ref.kind).api_version
            ),
        )

    def get(self, ref: ResourceRef) -> ObservedResource | None:
        try:
            if ref.kind == ResourceKind.SCOPE:
                group = self._call(
                    f"get {ref.key}", lambda: self._client.resource_groups.get(ref.name)
                )
                state = group.properties.provisioning_state if group.properties else None
                return self._observed(
                    ref, {"provisioningState": state or "Succeeded"}, group.tags, group.location
                )
            resource = self._call(
                f"get {ref.key}",
                lambda: self._client.resources.get_by_id(
                    self.resource_id(ref), get_kind_schema(ref.kind).api_version
                ),
            )
            return self._observed(ref, resource.properties, resource.tags, resource.location)
        except NotFoundError:
            if get_kind_schema(ref.kind).soft_delete:
                return self._get_deleted_vault(ref)
            return None

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def _put(
        self, ref: ResourceRef, properties: Mapping[str, Any], tags: Mapping[str, str]
    ) -> ObservedResource:
        location = str(properties.get("location") or self._location)
        if ref.kind == ResourceKind.SCOPE:
            group = self._call(
                f"put {ref.key}",
                lambda: self._client.resource_groups.create_or_update(
                    ref.name, ResourceGroup(location=location, tags=dict(tags))
                ),
            )
            return self._observed(ref, {}, group.tags, group.location)

        if ref.kind == ResourceKind.PRIVATE_ZONE:
            location = "global"
        body = {
            k: _wire_value(v, self._subscription_id)
            for k, v in properties.items()
            if k not in ENGINE_PROPERTIES and k != "location"
        }
        schema = get_kind_schema(ref.kind)
        poller = self._call(
            f"put {ref.key}",
            lambda: self._client.resources.begin_create_or_update_by_id(
                self.resource_id(ref),
                schema.api_version,
                GenericResource(location=location, properties=body, tags=dict(tags)),
            ),
        )
        resource = self._call(f"put {ref.key}", poller.result)
        return self._observed(ref, resource.properties, resource.tags, resource.location)

    def create(
        self, ref: ResourceRef, properties: Mapping[str, Any], tags: Mapping[str, str]
    ) -> ObservedResource:
        return self._put(ref, properties, tags)

    def update(
        self, ref: ResourceRef, properties: Mapping[str, Any], tags: Mapping[str, str]
    ) -> ObservedResource:
        return self._put(ref, properties, tags)

    def delete(self, ref: ResourceRef, purge: bool = False) -> None:
        try:
            if ref.kind == ResourceKind.SCOPE:
                poller = self._call(
                    f"delete {ref.key}", lambda: self._client.resource_groups.begin_delete(ref.name)
                )
            else:
                poller = self._call(
                    f"delete {ref.key}",
                    lambda: self._client.resources.begin_delete_by_id(
                        self.resource_id(ref), get_kind_schema(ref.kind).api_version
                    ),
                )
            self._call(f"delete {ref.key}", poller.result)
        except NotFoundError:
            logger.debug("Resource already absent", extra={"resource": ref.key})

        if purge and get_kind_schema(ref.kind).soft_delete:
            deleted = self._get_deleted_vault(ref)
            if deleted is None:
                return
            if deleted.purge_protected:
                raise PurgeProtectedError(
                    f"{ref.key} has purge protection enabled and cannot be purged; "
                    f"scheduled purge date {deleted.properties.get('scheduledPurgeDate')}"
                )
            url = (
                f"{self._deleted_vault_id(ref.name)}/purge"
                f"?api-version={get_kind_schema(ref.kind).api_version}"
            )
            self._call(f"purge {ref.key}", lambda: self._send("POST", url))
            logger.info("Purge requested", extra={"resource": ref.key})

    # -------------------------------------------------------------------------
    # Preconditions
    # -------------------------------------------------------------------------

    def name_availability(self, ref: ResourceRef) -> NameAvailability:
        if self.exists(ref):
            return NameAvailability.AVAILABLE
        schema = get_kind_schema(ref.kind)
        if schema.soft_delete and self._get_deleted_vault(ref) is not None:
            return NameAvailability.SOFT_DELETED

        provider = NAME_CHECK_PROVIDERS.get(ref.kind)
        if provider is None:
            return NameAvailability.AVAILABLE
        url = (
            f"/subscriptions/{self._subscription_id}/providers/{provider}"
            f"/checkNameAvailability?api-version={schema.api_version}"
        )
        result = self._call(
            f"check name {ref.name}",
            lambda: self._send("POST", url, json={"name": ref.name, "type": schema.azure_type}),
        )
        available = result.get("nameAvailable")
        return NameAvailability.AVAILABLE if available else NameAvailability.TAKEN

    def can_read(self, ref: ResourceRef) -> bool:
        try:
            observed = self.get(ref)
        except BackendError:
            return False
        return observed is not None and not observed.soft_deleted

    # -------------------------------------------------------------------------
    # Private zones
    # -------------------------------------------------------------------------

    def _network_id(self, network_scope: str) -> str:
        networks = self._call(
            f"list networks in {network_scope}",
            lambda: list(
                self._client.resources.list_by_resource_group(
                    network_scope,
                    filter="resourceType eq 'Microsoft.Network/virtualNetworks'",
                )
            ),
        )
        if not networks:
            raise NotFoundError(f"No virtual network found in scope '{network_scope}'")
        return networks[0].id

    def link_zone(self, zone: ZoneId, network_scope: str) -> None:
        link_id = f"{self.resource_id(zone.ref)}/virtualNetworkLinks/{network_scope}-link"
        body = GenericResource(
            location="global",
            properties={
                "virtualNetwork": {"id": self._network_id(network_scope)},
                "registrationEnabled": False,
            },
        )
        poller = self._call(
            f"link {zone.name} to {network_scope}",
            lambda: self._client.resources.begin_create_or_update_by_id(
                link_id, PRIVATE_DNS_API_VERSION, body
            ),
        )
        self._call(f"link {zone.name} to {network_scope}", poller.result)

    def upsert_record(self, zone: ZoneId, record_name: str, address: str) -> None:
        record_id = f"{self.resource_id(zone.ref)}/A/{record_name.lower()}"
        body = GenericResource(
            properties={"ttl": RECORD_TTL_SECONDS, "aRecords": [{"ipv4Address": address}]}
        )
        poller = self._call(
            f"upsert {record_name}.{zone.name}",
            lambda: self._client.resources.begin_create_or_update_by_id(
                record_id, PRIVATE_DNS_API_VERSION, body
            ),
        )
        self._call(f"upsert {record_name}.{zone.name}", poller.result)

    def delete_record(self, zone: ZoneId, record_name: str) -> None:
        record_id = f"{self.resource_id(zone.ref)}/A/{record_name.lower()}"
        try:
            poller = self._call(
                f"delete {record_name}.{zone.name}",
                lambda: self._client.resources.begin_delete_by_id(
                    record_id, PRIVATE_DNS_API_VERSION
                ),
            )
            self._call(f"delete {record_name}.{zone.name}", poller.result)
        except NotFoundError:
            pass

    def list_zones(self) -> list[PrivateZone]:
        zone_type = get_kind_schema(ResourceKind.PRIVATE_ZONE).azure_type
        resources = self._call(
            "list zones",
            lambda: list(self._client.resources.list(filter=f"resourceType eq '{zone_type}'")),
        )
        zones: list[PrivateZone] = []
        for resource in resources:
            ref = self._ref_from_id(resource.id, resource.type)
            if ref is None:
                continue
            base = f"{resource.id}?api-version={PRIVATE_DNS_API_VERSION}"
            links_doc = self._call(
                f"list links {ref.name}",
                lambda: self._send("GET", base.replace("?", "/virtualNetworkLinks?")),
            )
            records_doc = self._call(
                f"list records {ref.name}", lambda: self._send("GET", base.replace("?", "/A?"))
            )

            links: set[str] = set()
            for link in links_doc.get("value", []):
                network_id = link.get("properties", {}).get("virtualNetwork", {}).get("id", "")
                parts = network_id.split("/")
                if "resourceGroups" in parts:
                    links.add(parts[parts.index("resourceGroups") + 1])

            records = {
                record["name"].lower(): tuple(
                    a["ipv4Address"] for a in record.get("properties", {}).get("aRecords", [])
                )
                for record in records_doc.get("value", [])
            }
            zones.append(
                PrivateZone(zone=ZoneId.from_ref(ref), links=frozenset(links), records=records)
            )
        return sorted(zones, key=lambda z: z.zone)

    def list_owned(self, deployment: str) -> list[ObservedResource]:
        tag_filter = f"tagName eq '{OWNER_TAG}' and tagValue eq '{OWNER_TAG_VALUE}'"
        owned: list[ObservedResource] = []

        groups = self._call(
            "list owned scopes", lambda: list(self._client.resource_groups.list(filter=tag_filter))
        )
        for group in groups:
            if (group.tags or {}).get(DEPLOYMENT_TAG) == deployment:
                ref = ResourceRef(ResourceKind.SCOPE, None, group.name)
                owned.append(self._observed(ref, {}, group.tags, group.location))

        resources = self._call(
            "list owned resources", lambda: list(self._client.resources.list(filter=tag_filter))
        )
        for resource in resources:
            if (resource.tags or {}).get(DEPLOYMENT_TAG) != deployment:
                continue
            ref = self._ref_from_id(resource.id, resource.type)
            if ref is not None:
                owned.append(self._observed(ref, resource.properties, resource.tags, resource.location))
        return owned
