"""Diff/plan engine.

The planner compares the declared state with a live snapshot and produces a
Plan. It has no side effects: the snapshot is read once before planning and
is immutable for the whole pass, so planning twice against the same snapshot
yields the same plan.

Per resource:
- missing or soft-deleted            -> Create
- failed provisioning                -> Update
- immutable property drift           -> Replace (destructive)
- property or tag drift              -> Update
- missing zone link or registration  -> Update
- otherwise                          -> NoOp

With pruning enabled, live resources carrying this deployment's ownership
tags that are no longer declared become destructive Delete steps, ordered
so dependents are deleted first.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .backend import Backend, ObservedResource, PrivateZone, ResourceStatus, ZoneId
from .config import DEFAULT_VALIDATION_CONCURRENCY
from .diff_normalizer import DiffNormalizer, PropertyChange
from .graph import DependencyGraph
from .models import (
    DEPLOYMENT_TAG,
    ENGINE_PROPERTIES,
    OWNER_TAG,
    OWNER_TAG_VALUE,
    ResourceKind,
    ResourceSpec,
)
from .plan import Action, Plan, PlanStep

logger = logging.getLogger(__name__)

# Lower rank is deleted first
KIND_DELETE_RANK: dict[ResourceKind, int] = {
    ResourceKind.ENDPOINT: 0,
    ResourceKind.DNS_RESOLVER: 1,
    ResourceKind.GATEWAY: 1,
    ResourceKind.CONTAINER_REGISTRY: 2,
    ResourceKind.STORAGE_ACCOUNT: 2,
    ResourceKind.MANAGED_IDENTITY: 2,
    ResourceKind.SECRET_STORE: 3,
    ResourceKind.PRIVATE_ZONE: 3,
    ResourceKind.NETWORK: 4,
    ResourceKind.SCOPE: 5,
}


@dataclass(frozen=True)
class LiveSnapshot:
    """Immutable view of the live environment for one planning pass."""

    resources: Mapping[str, ObservedResource | None] = field(
        default_factory=lambda: MappingProxyType({})
    )
    zones: Mapping[ZoneId, PrivateZone] = field(default_factory=lambda: MappingProxyType({}))
    owned: tuple[ObservedResource, ...] = ()

    def get(self, key: str) -> ObservedResource | None:
        return self.resources.get(key)

    def zone(self, zone: ZoneId) -> PrivateZone | None:
        return self.zones.get(zone)


async def capture_snapshot(
    backend: Backend,
    graph: DependencyGraph,
    deployment: str,
    include_owned: bool = False,
    concurrency: int = DEFAULT_VALIDATION_CONCURRENCY,
) -> LiveSnapshot:
    """Read every managed resource, all zones and (optionally) owned resources.

    Raises:
        BackendError: If any read fails; planning must not run on partial data.
    """
    semaphore = asyncio.Semaphore(concurrency)
    keys = graph.managed_keys()

    async def read(key: str) -> tuple[str, ObservedResource | None]:
        async with semaphore:
            return key, await asyncio.to_thread(backend.get, graph.nodes[key].ref)

    results = await asyncio.gather(*(read(k) for k in keys))
    zones = await asyncio.to_thread(backend.list_zones)
    owned: list[ObservedResource] = []
    if include_owned:
        owned = await asyncio.to_thread(backend.list_owned, deployment)

    logger.debug(
        "Live snapshot captured",
        extra={"resources": len(results), "zones": len(zones), "owned": len(owned)},
    )
    return LiveSnapshot(
        resources=MappingProxyType(dict(results)),
        zones=MappingProxyType({z.zone: z for z in zones}),
        owned=tuple(sorted(owned, key=lambda o: o.key)),
    )


def ownership_tags(deployment: str) -> dict[str, str]:
    return {OWNER_TAG: OWNER_TAG_VALUE, DEPLOYMENT_TAG: deployment}


def desired_properties(resource: ResourceSpec) -> dict[str, Any]:
    """Declared properties the backend receives."""
    return {k: v for k, v in resource.properties.items() if k not in ENGINE_PROPERTIES}


def immutable_changes(
    resource: ResourceSpec, changes: list[PropertyChange]
) -> list[PropertyChange]:
    """Changes that can only be applied by re-creating the resource."""
    return [c for c in changes if c.path.split(".")[0] in resource.schema.immutable_properties]


class Planner:
    """Computes a Plan from a graph and a live snapshot."""

    def __init__(self, normalizer: DiffNormalizer | None = None) -> None:
        self._normalizer = normalizer or DiffNormalizer()

    def plan(
        self,
        graph: DependencyGraph,
        snapshot: LiveSnapshot,
        deployment: str,
        prune: bool = False,
    ) -> Plan:
        managed = set(graph.managed_keys())
        steps: list[PlanStep] = []

        for key in graph.topological_order():
            node = graph.nodes[key]
            resource = node.resource
            assert resource is not None
            requires = tuple(k for k in node.requires if k in managed)
            steps.append(self._plan_resource(resource, snapshot, deployment, requires))

        if prune:
            steps.extend(self._plan_prune(graph, snapshot))

        plan = Plan(deployment=deployment, steps=tuple(steps))
        logger.info("Plan computed", extra={"deployment": deployment, **plan.summary()})
        return plan

    def _plan_resource(
        self,
        resource: ResourceSpec,
        snapshot: LiveSnapshot,
        deployment: str,
        requires: tuple[str, ...],
    ) -> PlanStep:
        properties = desired_properties(resource)
        tags = {**resource.tags, **ownership_tags(deployment)}
        observed = snapshot.get(resource.key)

        def step(
            action: Action,
            reason: str,
            changes: list[PropertyChange] | None = None,
            destructive: bool = False,
            purge: bool = False,
        ) -> PlanStep:
            return PlanStep(
                ref=resource.ref,
                action=action,
                reason=reason,
                destructive=destructive,
                requires=requires,
                changes=tuple(changes or ()),
                resource=resource,
                properties=properties,
                tags=tags,
                purge=purge,
            )

        if observed is None:
            return step(Action.CREATE, "Resource does not exist")
        if observed.status == ResourceStatus.SOFT_DELETED:
            return step(Action.CREATE, "Resource is soft-deleted and will be recreated")
        if observed.status == ResourceStatus.FAILED:
            return step(Action.UPDATE, "Previous provisioning failed; re-applying")

        property_changes = self._normalizer.significant_changes(
            resource.kind.value, properties, dict(observed.properties)
        )
        immutable = immutable_changes(resource, property_changes)
        if immutable:
            paths = ", ".join(c.path for c in immutable)
            reason = f"Immutable properties changed: {paths}"
            # A soft-deleted copy keeps the name reserved
            purge = resource.schema.soft_delete and not observed.purge_protected
            if purge:
                reason += "; the soft-deleted copy is purged before re-creating"
            elif resource.schema.soft_delete:
                reason += "; purge protection keeps the name reserved"
            return step(Action.REPLACE, reason, property_changes, destructive=True, purge=purge)

        tag_changes = [
            PropertyChange(f"tags.{name}", observed.tags.get(name), value)
            for name, value in sorted(tags.items())
            if observed.tags.get(name) != value
        ]
        changes = property_changes + tag_changes
        if changes:
            what = "Properties" if property_changes else "Tags"
            if property_changes and tag_changes:
                what = "Properties and tags"
            return step(Action.UPDATE, f"{what} drifted", changes)

        missing = self._missing_couplings(resource, observed, snapshot)
        if missing:
            return step(Action.UPDATE, "; ".join(missing))

        return step(Action.NOOP, "Live state matches declared state")

    def _missing_couplings(
        self, resource: ResourceSpec, observed: ObservedResource, snapshot: LiveSnapshot
    ) -> list[str]:
        """Zone links and endpoint registrations that are not in place."""
        missing: list[str] = []

        if resource.kind == ResourceKind.PRIVATE_ZONE:
            zone = snapshot.zone(ZoneId.from_ref(resource.ref))
            links = zone.links if zone else frozenset()
            for network in resource.linked_networks():
                if network not in links:
                    missing.append(f"Zone link to '{network}' missing")

        if resource.kind == ResourceKind.ENDPOINT:
            record = resource.record_name()
            address = observed.private_address
            for zone_ref in resource.joined_zone_refs():
                zone = snapshot.zone(ZoneId.from_ref(zone_ref))
                registered = zone.lookup(record) if zone else ()
                if not registered or (address and address not in registered):
                    missing.append(f"Registration '{record}' missing in {zone_ref.key}")

        return missing

    def _plan_prune(self, graph: DependencyGraph, snapshot: LiveSnapshot) -> list[PlanStep]:
        orphans = [o for o in snapshot.owned if o.key not in graph]
        orphans.sort(key=lambda o: (KIND_DELETE_RANK[o.ref.kind], o.key))

        steps: list[PlanStep] = []
        for orphan in orphans:
            rank = KIND_DELETE_RANK[orphan.ref.kind]
            # Wait for lower-ranked deletes inside the same scope (or inside this scope)
            scope = orphan.ref.name if orphan.ref.kind == ResourceKind.SCOPE else orphan.ref.scope
            requires = tuple(
                s.key for s in steps
                if KIND_DELETE_RANK[s.ref.kind] < rank
                and s.ref.scope == scope
            )
            steps.append(
                PlanStep(
                    ref=orphan.ref,
                    action=Action.DELETE,
                    reason="Owned by this deployment but no longer declared",
                    destructive=True,
                    requires=requires,
                )
            )
        return steps
