"""Private name resolution.

A Resolver is bound to one network scope. Each query walks a small state
machine:

    Received -> PrivateAnswer
    Received -> Recurse -> PublicAnswer | NXDOMAIN

A name resolves privately only when a zone owning it (longest suffix match)
is linked to the resolver's network scope and holds a record for it. Public
service names are also tried under their private-link alias, so
``myvault.vault.azure.net`` is looked up as
``myvault.privatelink.vaultcore.azure.net``. A linked zone that owns the name
but has no record falls through to recursion instead of answering NXDOMAIN.

Recursion goes to the most specific matching conditional forwarding rule, or
to the default recursive resolver.

The resolver keeps no state between queries: the answer depends only on the
zones read at query time and the query name. It never writes zone state.
"""

from __future__ import annotations

import logging
import socket
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .backend import PrivateZone, ZoneId

logger = logging.getLogger(__name__)

# Public service suffix -> private-link zone that shadows it
PRIVATE_LINK_ALIASES: dict[str, str] = {
    "vault.azure.net": "privatelink.vaultcore.azure.net",
    "blob.core.windows.net": "privatelink.blob.core.windows.net",
    "file.core.windows.net": "privatelink.file.core.windows.net",
    "queue.core.windows.net": "privatelink.queue.core.windows.net",
    "table.core.windows.net": "privatelink.table.core.windows.net",
    "azurecr.io": "privatelink.azurecr.io",
    "database.windows.net": "privatelink.database.windows.net",
    "azure-api.net": "privatelink.azure-api.net",
}

APEX_RECORD = "@"


class QueryState(str, Enum):
    """States a query passes through."""

    RECEIVED = "Received"
    PRIVATE_ANSWER = "PrivateAnswer"
    RECURSE = "Recurse"
    PUBLIC_ANSWER = "PublicAnswer"
    NXDOMAIN = "NXDOMAIN"


TERMINAL_STATES = frozenset(
    {QueryState.PRIVATE_ANSWER, QueryState.PUBLIC_ANSWER, QueryState.NXDOMAIN}
)


@dataclass(frozen=True)
class ResolutionResult:
    """Outcome of one query."""

    query: str
    state: QueryState
    addresses: tuple[str, ...] = ()
    zone: ZoneId | None = None
    answered_name: str | None = None
    forwarded_to: str | None = None
    trace: tuple[QueryState, ...] = ()

    @property
    def private(self) -> bool:
        return self.state == QueryState.PRIVATE_ANSWER

    def to_dict(self) -> dict[str, object]:
        return {
            "query": self.query,
            "state": self.state.value,
            "addresses": list(self.addresses),
            "zone": f"{self.zone.scope}/{self.zone.name}" if self.zone else None,
            "answered_name": self.answered_name,
            "forwarded_to": self.forwarded_to,
            "trace": [s.value for s in self.trace],
        }


class RecursiveResolver(Protocol):
    """Upstream resolution for names with no private answer."""

    name: str

    def lookup(self, name: str) -> tuple[str, ...]:
        """Return IPv4 addresses for a name; empty means NXDOMAIN."""
        ...


class SystemRecursiveResolver:
    """Recursive resolution through the host's resolver."""

    name = "system"

    def lookup(self, name: str) -> tuple[str, ...]:
        try:
            infos = socket.getaddrinfo(name, None, family=socket.AF_INET, type=socket.SOCK_STREAM)
        except (socket.gaierror, UnicodeError) as e:
            logger.debug("Recursive lookup failed", extra={"query": name, "error": str(e)})
            return ()
        return tuple(sorted({str(info[4][0]) for info in infos}))


@dataclass
class StaticRecursiveResolver:
    """Recursive resolver answering from a fixed table (on-premises forwarders, tests)."""

    records: Mapping[str, Sequence[str]] = field(default_factory=dict)
    name: str = "static"

    def lookup(self, name: str) -> tuple[str, ...]:
        return tuple(self.records.get(normalize_name(name), ()))


@dataclass(frozen=True)
class ForwardingRule:
    """Conditional forwarding: names under ``domain`` go to ``target``."""

    domain: str
    target: RecursiveResolver

    def matches(self, name: str) -> bool:
        domain = normalize_name(self.domain)
        return name == domain or name.endswith("." + domain)


def normalize_name(name: str) -> str:
    return name.strip().rstrip(".").lower()


def private_link_alias(name: str) -> str | None:
    """Private-link form of a public service name, if it has one."""
    for suffix, zone in sorted(PRIVATE_LINK_ALIASES.items(), key=lambda i: -len(i[0])):
        if name.endswith("." + suffix):
            label = name[: -(len(suffix) + 1)]
            return f"{label}.{zone}"
    return None


def _owning_zones(name: str, zones: Iterable[PrivateZone]) -> list[PrivateZone]:
    """Zones that own ``name``, most specific first."""
    owning = [z for z in zones if name == z.name or name.endswith("." + z.name)]
    return sorted(owning, key=lambda z: (-len(z.name), z.zone))


def _relative_name(name: str, zone: PrivateZone) -> str:
    if name == zone.name:
        return APEX_RECORD
    return name[: -(len(zone.name) + 1)]


class Resolver:
    """Resolver bound to a single network scope."""

    def __init__(
        self,
        network_scope: str,
        zone_reader: Callable[[], Iterable[PrivateZone]],
        recursive: RecursiveResolver | None = None,
        forwarding_rules: Sequence[ForwardingRule] = (),
    ) -> None:
        self._network_scope = network_scope
        self._zone_reader = zone_reader
        self._recursive = recursive or SystemRecursiveResolver()
        self._rules = sorted(
            forwarding_rules, key=lambda r: -len(normalize_name(r.domain))
        )

    @property
    def network_scope(self) -> str:
        return self._network_scope

    def resolve(self, query: str) -> ResolutionResult:
        name = normalize_name(query)
        trace = [QueryState.RECEIVED]
        zones = list(self._zone_reader())

        candidates = [name]
        alias = private_link_alias(name)
        if alias:
            candidates.append(alias)

        for candidate in candidates:
            linked = [z for z in _owning_zones(candidate, zones) if z.is_linked(self._network_scope)]
            if not linked:
                continue
            zone = linked[0]
            addresses = zone.lookup(_relative_name(candidate, zone))
            if addresses:
                trace.append(QueryState.PRIVATE_ANSWER)
                result = ResolutionResult(
                    query=name,
                    state=QueryState.PRIVATE_ANSWER,
                    addresses=tuple(addresses),
                    zone=zone.zone,
                    answered_name=candidate,
                    trace=tuple(trace),
                )
                self._log(result)
                return result
            # The owning linked zone has no record: fall through to recursion
            break

        trace.append(QueryState.RECURSE)
        target = self._recursive
        for rule in self._rules:
            if rule.matches(name):
                target = rule.target
                break

        addresses = tuple(target.lookup(name))
        state = QueryState.PUBLIC_ANSWER if addresses else QueryState.NXDOMAIN
        trace.append(state)
        result = ResolutionResult(
            query=name,
            state=state,
            addresses=addresses,
            answered_name=name if addresses else None,
            forwarded_to=target.name,
            trace=tuple(trace),
        )
        self._log(result)
        return result

    def _log(self, result: ResolutionResult) -> None:
        logger.debug(
            "Query resolved",
            extra={
                "network_scope": self._network_scope,
                "query": result.query,
                "state": result.state.value,
                "addresses": list(result.addresses),
            },
        )
