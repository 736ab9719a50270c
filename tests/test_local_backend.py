"""Tests for the in-process backend."""

from __future__ import annotations

from pathlib import Path

import pytest

from converge.backend import (
    Backend,
    BackendError,
    NameAvailability,
    NotFoundError,
    PurgeProtectedError,
    ResourceStatus,
    ZoneId,
)
from converge.local_backend import SECONDS_PER_DAY, LocalBackend
from converge.models import ResourceKind, ResourceRef

SCOPE_A = ResourceRef(ResourceKind.SCOPE, None, "ScopeA")
SCOPE_B = ResourceRef(ResourceKind.SCOPE, None, "ScopeB")
ZONE_1 = ResourceRef(ResourceKind.PRIVATE_ZONE, "ScopeA", "Zone1")
ENDPOINT_1 = ResourceRef(ResourceKind.ENDPOINT, "ScopeA", "Endpoint1")
VAULT = ResourceRef(ResourceKind.SECRET_STORE, "ScopeA", "kv-app")


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000_000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def local(clock: FakeClock) -> LocalBackend:
    backend = LocalBackend(retention_days=7, clock=clock)
    backend.create(SCOPE_A, {}, {})
    return backend


class TestLifecycle:
    """Tests for create/update/delete."""

    def test_satisfies_protocol(self, local: LocalBackend) -> None:
        assert isinstance(local, Backend)

    def test_create_requires_scope(self) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            LocalBackend().create(ZONE_1, {}, {})

        assert "Scope 'ScopeA' not found" in str(exc_info.value)

    def test_create_and_get(self, local: LocalBackend) -> None:
        observed = local.create(ZONE_1, {"registrationEnabled": False}, {"team": "net"})

        assert observed.status == ResourceStatus.SUCCEEDED
        assert local.get(ZONE_1) == observed
        assert local.exists(ZONE_1) is True

    def test_create_is_idempotent(self, local: LocalBackend) -> None:
        local.create(ZONE_1, {"a": 1}, {})
        observed = local.create(ZONE_1, {"a": 2}, {})

        assert observed.properties["a"] == 2
        assert len(local.list_zones()) == 1

    def test_endpoint_gets_private_address(self, local: LocalBackend) -> None:
        observed = local.create(ENDPOINT_1, {}, {})

        assert observed.private_address == "10.1.0.4"

    def test_update_missing_resource(self, local: LocalBackend) -> None:
        with pytest.raises(NotFoundError):
            local.update(ZONE_1, {}, {})

    def test_delete_absent_is_noop(self, local: LocalBackend) -> None:
        local.delete(ZONE_1)

        assert local.get(ZONE_1) is None

    def test_scope_delete_cascades(self, local: LocalBackend) -> None:
        local.create(ZONE_1, {}, {})
        local.delete(SCOPE_A)

        assert local.get(ZONE_1) is None
        assert local.exists(SCOPE_A) is False


class TestSoftDelete:
    """Tests for soft-delete, purge and purge protection."""

    def test_soft_delete_keeps_name_reserved(self, local: LocalBackend) -> None:
        local.create(VAULT, {}, {})
        local.delete(VAULT)

        observed = local.get(VAULT)
        assert observed is not None
        assert observed.soft_deleted is True
        assert local.name_availability(VAULT) == NameAvailability.SOFT_DELETED
        with pytest.raises(BackendError):
            local.create(VAULT, {}, {})

    def test_purge_releases_name(self, local: LocalBackend) -> None:
        local.create(VAULT, {}, {})
        local.delete(VAULT, purge=True)

        assert local.get(VAULT) is None
        assert local.name_availability(VAULT) == NameAvailability.AVAILABLE

    def test_purge_protection_blocks_purge(self, local: LocalBackend) -> None:
        local.create(VAULT, {"enablePurgeProtection": True}, {})

        with pytest.raises(PurgeProtectedError):
            local.delete(VAULT, purge=True)

        observed = local.get(VAULT)
        assert observed is not None
        assert observed.soft_deleted is True

    def test_purge_protection_cannot_be_disabled(self, local: LocalBackend) -> None:
        local.create(VAULT, {"enablePurgeProtection": True}, {})

        with pytest.raises(BackendError) as exc_info:
            local.update(VAULT, {"enablePurgeProtection": False}, {})

        assert "cannot be disabled" in str(exc_info.value)

    def test_retention_expiry(self, local: LocalBackend, clock: FakeClock) -> None:
        local.create(VAULT, {"enablePurgeProtection": True}, {})
        local.delete(VAULT)

        clock.now += 7 * SECONDS_PER_DAY

        assert local.get(VAULT) is None
        assert local.name_availability(VAULT) == NameAvailability.AVAILABLE


class TestNameAvailability:
    def test_foreign_name_taken(self, local: LocalBackend) -> None:
        local.reserve_foreign_name(ResourceKind.SECRET_STORE, "KV-App")

        assert local.name_availability(VAULT) == NameAvailability.TAKEN

    def test_name_held_by_other_scope(self, local: LocalBackend) -> None:
        local.create(SCOPE_B, {}, {})
        local.create(ResourceRef(ResourceKind.SECRET_STORE, "ScopeB", "kv-app"), {}, {})

        assert local.name_availability(VAULT) == NameAvailability.TAKEN

    def test_own_name_is_available(self, local: LocalBackend) -> None:
        local.create(VAULT, {}, {})

        assert local.name_availability(VAULT) == NameAvailability.AVAILABLE


class TestZones:
    """Tests for zone links and records."""

    def test_link_and_record(self, local: LocalBackend) -> None:
        local.create(ZONE_1, {}, {})
        zone = ZoneId.from_ref(ZONE_1)

        local.link_zone(zone, "ScopeA")
        local.link_zone(zone, "ScopeA")
        local.upsert_record(zone, "Endpoint1", "10.1.0.4")
        local.upsert_record(zone, "endpoint1", "10.1.0.4")

        [snapshot] = local.list_zones()
        assert snapshot.links == frozenset({"ScopeA"})
        assert snapshot.lookup("endpoint1") == ("10.1.0.4",)

    def test_link_requires_network_scope(self, local: LocalBackend) -> None:
        local.create(ZONE_1, {}, {})

        with pytest.raises(NotFoundError):
            local.link_zone(ZoneId.from_ref(ZONE_1), "ScopeB")

    def test_record_requires_zone(self, local: LocalBackend) -> None:
        with pytest.raises(NotFoundError):
            local.upsert_record(ZoneId.from_ref(ZONE_1), "endpoint1", "10.1.0.4")

    def test_delete_record_is_idempotent(self, local: LocalBackend) -> None:
        local.create(ZONE_1, {}, {})
        zone = ZoneId.from_ref(ZONE_1)
        local.upsert_record(zone, "endpoint1", "10.1.0.4")

        local.delete_record(zone, "endpoint1")
        local.delete_record(zone, "endpoint1")

        assert local.list_zones()[0].lookup("endpoint1") == ()


class TestAccessAndOwnership:
    def test_unreadable_resource(self, local: LocalBackend) -> None:
        local.create(ZONE_1, {}, {})
        local.mark_unreadable(ZONE_1)

        assert local.can_read(ZONE_1) is False
        with pytest.raises(BackendError):
            local.get(ZONE_1)

    def test_list_owned(self, local: LocalBackend) -> None:
        local.create(ZONE_1, {}, {"managedBy": "converge", "deployment": "demo"})
        local.create(ENDPOINT_1, {}, {"managedBy": "converge", "deployment": "other"})

        assert [o.key for o in local.list_owned("demo")] == ["private-zone/ScopeA/Zone1"]


class TestPersistence:
    def test_state_survives_restart(self, tmp_path: Path) -> None:
        state_file = tmp_path / "cloud.json"
        first = LocalBackend(state_file=state_file)
        first.create(SCOPE_A, {}, {})
        first.create(ZONE_1, {}, {})
        first.link_zone(ZoneId.from_ref(ZONE_1), "ScopeA")

        second = LocalBackend(state_file=state_file)

        assert second.exists(ZONE_1) is True
        assert second.list_zones()[0].is_linked("ScopeA") is True

    def test_unsupported_version(self, tmp_path: Path) -> None:
        state_file = tmp_path / "cloud.json"
        state_file.write_text('{"version": 99}')

        with pytest.raises(BackendError) as exc_info:
            LocalBackend(state_file=state_file)

        assert "Unsupported local state file version" in str(exc_info.value)
