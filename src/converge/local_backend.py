"""In-process backend that simulates a cloud control plane.

Used for development, dry runs against a saved environment and tests. It
enforces the control-plane rules the engine depends on: scopes must exist,
globally unique names are reserved (including soft-deleted ones for the
retention window), purge protection cannot be bypassed or disabled, and zone
links and records are idempotent.

State can be persisted to a JSON file so consecutive CLI invocations see
the same environment.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

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
from .config import DEFAULT_SOFT_DELETE_RETENTION_DAYS
from .models import (
    DEPLOYMENT_TAG,
    OWNER_TAG,
    OWNER_TAG_VALUE,
    ResourceKind,
    ResourceRef,
    get_kind_schema,
)

logger = logging.getLogger(__name__)

STATE_FILE_VERSION = 1
SECONDS_PER_DAY = 86400


def _ref_to_dict(ref: ResourceRef) -> dict[str, Any]:
    return {"kind": ref.kind.value, "scope": ref.scope, "name": ref.name}


def _ref_from_dict(data: dict[str, Any]) -> ResourceRef:
    return ResourceRef(ResourceKind(data["kind"]), data.get("scope"), data["name"])


class LocalBackend:
    """Thread-safe in-memory backend with optional JSON persistence."""

    def __init__(
        self,
        state_file: Path | None = None,
        retention_days: int = DEFAULT_SOFT_DELETE_RETENTION_DAYS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._lock = threading.RLock()
        self._state_file = state_file
        self._retention_seconds = retention_days * SECONDS_PER_DAY
        self._clock = clock

        self._live: dict[str, dict[str, Any]] = {}
        self._deleted: dict[str, dict[str, Any]] = {}
        self._links: dict[str, set[str]] = {}
        self._records: dict[str, dict[str, list[str]]] = {}
        # Names held outside this environment: (kind, lowercase name) -> soft-deleted flag
        self._foreign: dict[tuple[str, str], bool] = {}
        self._unreadable: set[str] = set()
        self._next_address = 0

        if state_file is not None and state_file.exists():
            self._load()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load(self) -> None:
        assert self._state_file is not None
        try:
            data = json.loads(self._state_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BackendError(f"Cannot read local state file {self._state_file}: {e}") from e

        if data.get("version") != STATE_FILE_VERSION:
            raise BackendError(
                f"Unsupported local state file version {data.get('version')}: {self._state_file}"
            )

        self._live = data.get("resources", {})
        self._deleted = data.get("deleted", {})
        self._links = {k: set(v) for k, v in data.get("links", {}).items()}
        self._records = data.get("records", {})
        self._foreign = {
            (entry["kind"], entry["name"].lower()): bool(entry.get("softDeleted"))
            for entry in data.get("foreignNames", [])
        }
        self._next_address = int(data.get("nextAddress", 0))
        logger.debug(
            "Loaded local state",
            extra={"path": str(self._state_file), "resources": len(self._live)},
        )

    def _save(self) -> None:
        if self._state_file is None:
            return
        data = {
            "version": STATE_FILE_VERSION,
            "resources": self._live,
            "deleted": self._deleted,
            "links": {k: sorted(v) for k, v in self._links.items()},
            "records": self._records,
            "foreignNames": [
                {"kind": kind, "name": name, "softDeleted": soft}
                for (kind, name), soft in sorted(self._foreign.items())
            ],
            "nextAddress": self._next_address,
        }
        tmp = self._state_file.with_suffix(self._state_file.suffix + ".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
            tmp.replace(self._state_file)
        except OSError as e:
            raise BackendError(f"Cannot write local state file {self._state_file}: {e}") from e

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _expire_soft_deleted(self) -> None:
        now = self._clock()
        expired = [
            key
            for key, record in self._deleted.items()
            if now - record["deletedAt"] >= self._retention_seconds
        ]
        for key in expired:
            logger.info("Soft-deleted resource expired", extra={"resource": key})
            del self._deleted[key]

    @staticmethod
    def _observed(record: dict[str, Any], status: ResourceStatus | None = None) -> ObservedResource:
        return ObservedResource(
            ref=_ref_from_dict(record["ref"]),
            properties=copy.deepcopy(record["properties"]),
            tags=dict(record["tags"]),
            status=status or ResourceStatus(record["status"]),
        )

    def _allocate_address(self) -> str:
        n = self._next_address
        self._next_address += 1
        return f"10.1.{n // 250}.{4 + n % 250}"

    def _holder_of(self, kind: ResourceKind, name: str) -> str | None:
        for key, record in self._live.items():
            ref = record["ref"]
            if ref["kind"] == kind.value and ref["name"].lower() == name.lower():
                return key
        return None

    def _deleted_with_name(self, kind: ResourceKind, name: str) -> str | None:
        for key, record in self._deleted.items():
            ref = record["ref"]
            if ref["kind"] == kind.value and ref["name"].lower() == name.lower():
                return key
        return None

    # -------------------------------------------------------------------------
    # Test and seeding hooks
    # -------------------------------------------------------------------------

    def reserve_foreign_name(self, kind: ResourceKind, name: str, soft_deleted: bool = False) -> None:
        """Mark a globally unique name as held outside this environment."""
        with self._lock:
            self._foreign[(kind.value, name.lower())] = soft_deleted
            self._save()

    def mark_unreadable(self, ref: ResourceRef) -> None:
        """Deny read access to a resource."""
        with self._lock:
            self._unreadable.add(ref.key)

    def set_status(self, ref: ResourceRef, status: ResourceStatus) -> None:
        """Force the provisioning status of a live resource."""
        with self._lock:
            if ref.key not in self._live:
                raise NotFoundError(f"{ref.key} not found")
            self._live[ref.key]["status"] = status.value
            self._save()

    def set_properties(self, ref: ResourceRef, properties: Mapping[str, Any]) -> None:
        """Overwrite live properties out of band (simulates manual drift)."""
        with self._lock:
            if ref.key not in self._live:
                raise NotFoundError(f"{ref.key} not found")
            self._live[ref.key]["properties"].update(copy.deepcopy(dict(properties)))
            self._save()

    # -------------------------------------------------------------------------
    # Backend protocol
    # -------------------------------------------------------------------------

    def exists(self, ref: ResourceRef) -> bool:
        with self._lock:
            return ref.key in self._live

    def get(self, ref: ResourceRef) -> ObservedResource | None:
        with self._lock:
            self._expire_soft_deleted()
            if ref.key in self._unreadable:
                raise BackendError(f"Read access denied for {ref.key}")
            if ref.key in self._live:
                return self._observed(self._live[ref.key])
            if ref.key in self._deleted:
                return self._observed(self._deleted[ref.key], ResourceStatus.SOFT_DELETED)
            return None

    def create(
        self, ref: ResourceRef, properties: Mapping[str, Any], tags: Mapping[str, str]
    ) -> ObservedResource:
        with self._lock:
            self._expire_soft_deleted()
            schema = get_kind_schema(ref.kind)

            if ref.scope is not None:
                scope_key = ResourceRef(ResourceKind.SCOPE, None, ref.scope).key
                if scope_key not in self._live:
                    raise NotFoundError(f"Scope '{ref.scope}' not found for {ref.key}")

            if schema.globally_unique:
                availability = self.name_availability(ref)
                if availability == NameAvailability.TAKEN:
                    raise BackendError(f"Name '{ref.name}' is already taken ({ref.kind.value})")
                if availability == NameAvailability.SOFT_DELETED:
                    raise BackendError(
                        f"Name '{ref.name}' is held by a soft-deleted {ref.kind.value}; "
                        "purge it or choose a different name"
                    )

            if ref.key in self._live:
                return self.update(ref, properties, tags)

            props = copy.deepcopy(dict(properties))
            if schema.soft_delete:
                props.setdefault("enableSoftDelete", True)
            if ref.kind == ResourceKind.ENDPOINT:
                props["privateIpAddress"] = self._allocate_address()
            if ref.kind == ResourceKind.PRIVATE_ZONE:
                self._links.setdefault(ref.key, set())
                self._records.setdefault(ref.key, {})

            self._live[ref.key] = {
                "ref": _ref_to_dict(ref),
                "properties": props,
                "tags": dict(tags),
                "status": ResourceStatus.SUCCEEDED.value,
            }
            self._save()
            logger.debug("Created resource", extra={"resource": ref.key})
            return self._observed(self._live[ref.key])

    def update(
        self, ref: ResourceRef, properties: Mapping[str, Any], tags: Mapping[str, str]
    ) -> ObservedResource:
        with self._lock:
            record = self._live.get(ref.key)
            if record is None:
                raise NotFoundError(f"{ref.key} not found")

            current = record["properties"]
            if current.get("enablePurgeProtection") and properties.get(
                "enablePurgeProtection"
            ) is False:
                raise BackendError(f"Purge protection cannot be disabled on {ref.key}")

            current.update(copy.deepcopy(dict(properties)))
            record["tags"] = dict(tags)
            record["status"] = ResourceStatus.SUCCEEDED.value
            self._save()
            logger.debug("Updated resource", extra={"resource": ref.key})
            return self._observed(record)

    def _remove_live(self, key: str) -> None:
        record = self._live.pop(key)
        ref = _ref_from_dict(record["ref"])
        self._links.pop(key, None)
        self._records.pop(key, None)
        if get_kind_schema(ref.kind).soft_delete:
            record["deletedAt"] = self._clock()
            self._deleted[key] = record

    def delete(self, ref: ResourceRef, purge: bool = False) -> None:
        with self._lock:
            self._expire_soft_deleted()

            if ref.key in self._live:
                if ref.kind == ResourceKind.SCOPE:
                    children = [
                        k for k, r in self._live.items() if r["ref"].get("scope") == ref.name
                    ]
                    for child in children:
                        self._remove_live(child)
                self._remove_live(ref.key)
                logger.debug("Deleted resource", extra={"resource": ref.key})

            if purge and ref.key in self._deleted:
                if self._deleted[ref.key]["properties"].get("enablePurgeProtection"):
                    self._save()
                    raise PurgeProtectedError(
                        f"{ref.key} has purge protection enabled and cannot be purged; "
                        "it will be removed when the retention period ends"
                    )
                del self._deleted[ref.key]
                logger.debug("Purged resource", extra={"resource": ref.key})

            self._save()

    def name_availability(self, ref: ResourceRef) -> NameAvailability:
        with self._lock:
            self._expire_soft_deleted()
            foreign = self._foreign.get((ref.kind.value, ref.name.lower()))
            if foreign is not None:
                return NameAvailability.SOFT_DELETED if foreign else NameAvailability.TAKEN

            holder = self._holder_of(ref.kind, ref.name)
            if holder is not None and holder != ref.key:
                return NameAvailability.TAKEN
            if holder is None and self._deleted_with_name(ref.kind, ref.name):
                return NameAvailability.SOFT_DELETED
            return NameAvailability.AVAILABLE

    def can_read(self, ref: ResourceRef) -> bool:
        with self._lock:
            return ref.key in self._live and ref.key not in self._unreadable

    def link_zone(self, zone: ZoneId, network_scope: str) -> None:
        with self._lock:
            key = zone.ref.key
            if key not in self._live:
                raise NotFoundError(f"Zone {key} not found")
            if ResourceRef(ResourceKind.SCOPE, None, network_scope).key not in self._live:
                raise NotFoundError(f"Network scope '{network_scope}' not found")
            self._links.setdefault(key, set()).add(network_scope)
            self._save()

    def upsert_record(self, zone: ZoneId, record_name: str, address: str) -> None:
        with self._lock:
            key = zone.ref.key
            if key not in self._live:
                raise NotFoundError(f"Zone {key} not found")
            self._records.setdefault(key, {})[record_name.lower()] = [address]
            self._save()

    def delete_record(self, zone: ZoneId, record_name: str) -> None:
        with self._lock:
            records = self._records.get(zone.ref.key)
            if records is not None and records.pop(record_name.lower(), None) is not None:
                self._save()

    def list_zones(self) -> list[PrivateZone]:
        with self._lock:
            zones = []
            for key, record in self._live.items():
                ref = _ref_from_dict(record["ref"])
                if ref.kind != ResourceKind.PRIVATE_ZONE:
                    continue
                zones.append(
                    PrivateZone(
                        zone=ZoneId.from_ref(ref),
                        links=frozenset(self._links.get(key, set())),
                        records={n: tuple(a) for n, a in self._records.get(key, {}).items()},
                    )
                )
            return sorted(zones, key=lambda z: z.zone)

    def list_owned(self, deployment: str) -> list[ObservedResource]:
        with self._lock:
            return [
                self._observed(record)
                for record in self._live.values()
                if record["tags"].get(OWNER_TAG) == OWNER_TAG_VALUE
                and record["tags"].get(DEPLOYMENT_TAG) == deployment
            ]
