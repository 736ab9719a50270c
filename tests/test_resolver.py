"""Tests for private name resolution."""

from __future__ import annotations

from collections.abc import Iterable

import pytest

from converge.backend import PrivateZone, ZoneId
from converge.resolver import (
    ForwardingRule,
    QueryState,
    Resolver,
    StaticRecursiveResolver,
    normalize_name,
    private_link_alias,
)


def zone(
    name: str,
    links: Iterable[str] = ("ScopeA",),
    records: dict[str, tuple[str, ...]] | None = None,
    scope: str = "ScopeA",
) -> PrivateZone:
    return PrivateZone(ZoneId(scope, name), frozenset(links), records or {})


@pytest.fixture
def public() -> StaticRecursiveResolver:
    return StaticRecursiveResolver(
        {"endpoint1.zone1": ("20.0.0.1",), "example.com": ("93.184.215.14",)}, name="public"
    )


class TestHelpers:
    def test_normalize_name(self) -> None:
        assert normalize_name(" Endpoint1.Zone1. ") == "endpoint1.zone1"

    def test_private_link_alias(self) -> None:
        assert private_link_alias("myvault.vault.azure.net") == (
            "myvault.privatelink.vaultcore.azure.net"
        )
        assert private_link_alias("acct.blob.core.windows.net") == (
            "acct.privatelink.blob.core.windows.net"
        )
        assert private_link_alias("example.com") is None

    def test_forwarding_rule_matching(self, public: StaticRecursiveResolver) -> None:
        rule = ForwardingRule("corp.local", public)

        assert rule.matches("corp.local") is True
        assert rule.matches("host.corp.local") is True
        assert rule.matches("notcorp.local") is False


class TestPrivateAnswers:
    """Tests for answers served from linked private zones."""

    def test_linked_zone_answers(self, public: StaticRecursiveResolver) -> None:
        zones = [zone("Zone1", records={"endpoint1": ("10.1.0.4",)})]
        resolver = Resolver("ScopeA", lambda: zones, public)

        result = resolver.resolve("Endpoint1.Zone1.")

        assert result.state == QueryState.PRIVATE_ANSWER
        assert result.private is True
        assert result.addresses == ("10.1.0.4",)
        assert result.zone == ZoneId("ScopeA", "Zone1")
        assert result.trace == (QueryState.RECEIVED, QueryState.PRIVATE_ANSWER)
        assert result.forwarded_to is None

    def test_apex_record(self, public: StaticRecursiveResolver) -> None:
        zones = [zone("zone1", records={"@": ("10.1.0.9",)})]

        result = Resolver("ScopeA", lambda: zones, public).resolve("zone1")

        assert result.addresses == ("10.1.0.9",)

    def test_longest_suffix_wins(self, public: StaticRecursiveResolver) -> None:
        zones = [
            zone("corp.internal", records={"app.east": ("10.0.0.1",)}),
            zone("east.corp.internal", records={"app": ("10.2.0.1",)}),
        ]

        result = Resolver("ScopeA", lambda: zones, public).resolve("app.east.corp.internal")

        assert result.addresses == ("10.2.0.1",)
        assert result.zone == ZoneId("ScopeA", "east.corp.internal")

    def test_private_link_alias_answers(self, public: StaticRecursiveResolver) -> None:
        zones = [
            zone("privatelink.vaultcore.azure.net", records={"kv-app": ("10.1.0.5",)}),
        ]

        result = Resolver("ScopeA", lambda: zones, public).resolve("kv-app.vault.azure.net")

        assert result.state == QueryState.PRIVATE_ANSWER
        assert result.query == "kv-app.vault.azure.net"
        assert result.answered_name == "kv-app.privatelink.vaultcore.azure.net"
        assert result.addresses == ("10.1.0.5",)


class TestRecursion:
    """Tests for names without a private answer."""

    def test_unlinked_zone_falls_back_to_public(self, public: StaticRecursiveResolver) -> None:
        zones = [zone("Zone1", records={"endpoint1": ("10.1.0.4",)})]

        result = Resolver("ScopeB", lambda: zones, public).resolve("endpoint1.zone1")

        assert result.state == QueryState.PUBLIC_ANSWER
        assert result.addresses == ("20.0.0.1",)
        assert result.forwarded_to == "public"
        assert result.trace == (
            QueryState.RECEIVED,
            QueryState.RECURSE,
            QueryState.PUBLIC_ANSWER,
        )

    def test_nxdomain_only_without_public_answer(self) -> None:
        zones = [zone("Zone1", records={"endpoint1": ("10.1.0.4",)})]
        resolver = Resolver("ScopeB", lambda: zones, StaticRecursiveResolver())

        result = resolver.resolve("endpoint1.zone1")

        assert result.state == QueryState.NXDOMAIN
        assert result.addresses == ()
        assert result.answered_name is None

    def test_linked_zone_without_record_recurses(self, public: StaticRecursiveResolver) -> None:
        """Test that a missing record in the owning zone is not an authoritative NXDOMAIN."""
        zones = [zone("Zone1", records={})]

        result = Resolver("ScopeA", lambda: zones, public).resolve("endpoint1.zone1")

        assert result.state == QueryState.PUBLIC_ANSWER
        assert QueryState.RECURSE in result.trace

    def test_more_specific_unlinked_zone_is_ignored(
        self, public: StaticRecursiveResolver
    ) -> None:
        zones = [
            zone("corp.internal", records={"app.east": ("10.0.0.1",)}),
            zone("east.corp.internal", links=("ScopeB",), records={"app": ("10.2.0.1",)}),
        ]

        result = Resolver("ScopeA", lambda: zones, public).resolve("app.east.corp.internal")

        assert result.addresses == ("10.0.0.1",)

    def test_forwarding_rules_most_specific_first(self) -> None:
        corp = StaticRecursiveResolver({"db.corp.local": ("192.168.0.10",)}, name="corp-dns")
        lab = StaticRecursiveResolver({"db.lab.corp.local": ("192.168.9.10",)}, name="lab-dns")
        resolver = Resolver(
            "ScopeA",
            lambda: [],
            StaticRecursiveResolver(),
            forwarding_rules=[ForwardingRule("corp.local", corp), ForwardingRule("lab.corp.local", lab)],
        )

        lab_result = resolver.resolve("db.lab.corp.local")
        corp_result = resolver.resolve("db.corp.local")

        assert lab_result.forwarded_to == "lab-dns"
        assert lab_result.addresses == ("192.168.9.10",)
        assert corp_result.forwarded_to == "corp-dns"

    def test_unmatched_name_uses_default_resolver(self, public: StaticRecursiveResolver) -> None:
        corp = StaticRecursiveResolver(name="corp-dns")
        resolver = Resolver(
            "ScopeA", lambda: [], public, forwarding_rules=[ForwardingRule("corp.local", corp)]
        )

        result = resolver.resolve("example.com")

        assert result.forwarded_to == "public"
        assert result.addresses == ("93.184.215.14",)


class TestStatelessness:
    def test_zones_read_per_query(self, public: StaticRecursiveResolver) -> None:
        """Test that a zone change is visible to the next query."""
        zones: list[PrivateZone] = []
        reads: list[int] = []

        def reader() -> list[PrivateZone]:
            reads.append(1)
            return list(zones)

        resolver = Resolver("ScopeA", reader, StaticRecursiveResolver())

        assert resolver.resolve("endpoint1.zone1").state == QueryState.NXDOMAIN
        zones.append(zone("Zone1", records={"endpoint1": ("10.1.0.4",)}))
        assert resolver.resolve("endpoint1.zone1").state == QueryState.PRIVATE_ANSWER
        assert len(reads) == 2

    def test_to_dict(self, public: StaticRecursiveResolver) -> None:
        zones = [zone("Zone1", records={"endpoint1": ("10.1.0.4",)})]

        result = Resolver("ScopeA", lambda: zones, public).resolve("endpoint1.zone1")

        assert result.to_dict() == {
            "query": "endpoint1.zone1",
            "state": "PrivateAnswer",
            "addresses": ["10.1.0.4"],
            "zone": "ScopeA/Zone1",
            "answered_name": "endpoint1.zone1",
            "forwarded_to": None,
            "trace": ["Received", "PrivateAnswer"],
        }
