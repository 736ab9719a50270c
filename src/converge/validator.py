"""Precondition validation before planning.

Read-only checks run concurrently against the backend on a bounded pool:
1. Externally referenced resources exist and are readable
2. Globally unique names are free (not taken, not soft-deleted), and a
   purge-protected resource is never due for re-creation
3. Secret stores behind secret references keep soft delete and purge
   protection on; existing references meet their ``requires``
4. Every resource's scope is declared or live
5. Required tags are present (warning only)

Findings are merged by resource key, never by completion order, so the same
inputs always produce the same report.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .backend import Backend, BackendError, NameAvailability
from .config import DEFAULT_VALIDATION_CONCURRENCY
from .diff_normalizer import DiffNormalizer
from .graph import DependencyGraph, GraphNode
from .models import (
    SECURED_STORE_INVARIANTS,
    ConvergeError,
    DeclaredState,
    ResourceKind,
    ResourceRef,
    ResourceSpec,
)
from .planner import desired_properties, immutable_changes

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    """Severity of a validation finding."""

    FATAL = "Fatal"
    WARNING = "Warning"


_SEVERITY_ORDER = {Severity.FATAL: 0, Severity.WARNING: 1}


@dataclass(frozen=True)
class ValidationFinding:
    """A single precondition problem."""

    severity: Severity
    resource: str
    message: str
    remediation: str = ""

    def sort_key(self) -> tuple[str, int, str]:
        return (self.resource, _SEVERITY_ORDER[self.severity], self.message)

    def __str__(self) -> str:
        text = f"[{self.severity.value}] {self.resource}: {self.message}"
        if self.remediation:
            text += f" (remediation: {self.remediation})"
        return text


class ValidationError(ConvergeError):
    """Raised when validation produced at least one fatal finding."""

    def __init__(self, findings: list[ValidationFinding]) -> None:
        self.findings = findings
        lines = "\n".join(f"  - {f}" for f in findings)
        super().__init__(f"Validation failed with {len(findings)} fatal finding(s):\n{lines}")


@dataclass(frozen=True)
class ValidationReport:
    """All findings of a validation pass, sorted by resource key."""

    findings: tuple[ValidationFinding, ...] = ()

    @property
    def fatal(self) -> list[ValidationFinding]:
        return [f for f in self.findings if f.severity == Severity.FATAL]

    @property
    def warnings(self) -> list[ValidationFinding]:
        return [f for f in self.findings if f.severity == Severity.WARNING]

    @property
    def has_fatal(self) -> bool:
        return bool(self.fatal)

    def raise_for_fatal(self) -> None:
        if self.has_fatal:
            raise ValidationError(self.fatal)


Check = Callable[[], list[ValidationFinding]]


class PreconditionValidator:
    """Runs precondition checks for a declared state and its graph."""

    def __init__(
        self,
        backend: Backend,
        concurrency: int = DEFAULT_VALIDATION_CONCURRENCY,
        normalizer: DiffNormalizer | None = None,
    ) -> None:
        self._backend = backend
        self._concurrency = concurrency
        self._normalizer = normalizer or DiffNormalizer()

    async def validate(self, state: DeclaredState, graph: DependencyGraph) -> ValidationReport:
        """Run every check and return the merged report."""
        checks = self._collect_checks(state, graph)
        semaphore = asyncio.Semaphore(self._concurrency)

        async def run(check: Check) -> list[ValidationFinding]:
            async with semaphore:
                return await asyncio.to_thread(check)

        results = await asyncio.gather(*(run(c) for c in checks))
        findings = sorted(
            (f for batch in results for f in batch), key=ValidationFinding.sort_key
        )
        report = ValidationReport(findings=tuple(findings))

        logger.info(
            "Validation complete",
            extra={
                "checks": len(checks),
                "fatal": len(report.fatal),
                "warnings": len(report.warnings),
            },
        )
        for finding in report.findings:
            level = logging.ERROR if finding.severity == Severity.FATAL else logging.WARNING
            logger.log(
                level,
                finding.message,
                extra={"resource": finding.resource, "remediation": finding.remediation},
            )
        return report

    def _collect_checks(self, state: DeclaredState, graph: DependencyGraph) -> list[Check]:
        checks: list[Check] = []

        for node in graph.external_nodes():
            checks.append(lambda node=node: self._guarded(node.key, self._check_external, node))

        for key in graph.managed_keys():
            resource = graph.nodes[key].resource
            assert resource is not None
            if resource.schema.globally_unique:
                checks.append(
                    lambda ref=resource.ref: self._guarded(ref.key, self._check_global_name, ref)
                )
            if resource.schema.globally_unique and resource.schema.soft_delete:
                checks.append(
                    lambda resource=resource: self._guarded(
                        resource.key, self._check_protected_replacement, resource
                    )
                )

        stores: dict[str, list[str]] = {}
        for resource in state.resources:
            for secret in resource.secret_refs():
                stores.setdefault(secret.store_ref.key, []).append(resource.key)
        for store_key, consumers in sorted(stores.items()):
            checks.append(
                lambda store_key=store_key, consumers=consumers: self._guarded(
                    store_key, self._check_secret_store, graph, store_key, consumers
                )
            )

        checks.append(lambda: self._check_required_tags(state))
        return checks

    def _guarded(
        self, resource: str, check: Callable[..., list[ValidationFinding]], *args: Any
    ) -> list[ValidationFinding]:
        """Run a check, turning backend errors into fatal findings."""
        try:
            return check(*args)
        except BackendError as e:
            return [
                ValidationFinding(
                    Severity.FATAL,
                    resource,
                    f"Could not verify precondition: {e}",
                    "check backend access and retry",
                )
            ]

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def _check_external(self, node: GraphNode) -> list[ValidationFinding]:
        ref = node.ref
        if not self._backend.exists(ref):
            if ref.kind == ResourceKind.SCOPE:
                return [
                    ValidationFinding(
                        Severity.FATAL,
                        ref.key,
                        f"Scope '{ref.name}' does not exist and is not declared",
                        f"declare {ref.key} in resources or create it first",
                    )
                ]
            return [
                ValidationFinding(
                    Severity.FATAL,
                    ref.key,
                    "Referenced resource does not exist",
                    "declare it in resources or create it before applying",
                )
            ]
        if not self._backend.can_read(ref):
            return [
                ValidationFinding(
                    Severity.FATAL,
                    ref.key,
                    "Referenced resource exists but is not readable",
                    "grant the deploying identity read access",
                )
            ]

        if node.existing is not None and node.existing.requires:
            observed = self._backend.get(ref)
            properties = dict(observed.properties) if observed else {}
            findings = []
            for field_name, expected in sorted(node.existing.requires.items()):
                equivalent, _ = self._normalizer.are_equivalent(
                    expected, properties.get(field_name), ref.kind.value, field_name
                )
                if not equivalent:
                    findings.append(
                        ValidationFinding(
                            Severity.FATAL,
                            ref.key,
                            f"Existing resource requires {field_name}={expected!r} "
                            f"but has {properties.get(field_name)!r}",
                            f"set {field_name} on the existing resource",
                        )
                    )
            return findings
        return []

    def _check_global_name(self, ref: ResourceRef) -> list[ValidationFinding]:
        availability = self._backend.name_availability(ref)
        if availability == NameAvailability.TAKEN:
            return [
                ValidationFinding(
                    Severity.FATAL,
                    ref.key,
                    f"Globally unique name '{ref.name}' is already taken",
                    "choose a different name",
                )
            ]
        if availability == NameAvailability.SOFT_DELETED:
            return [
                ValidationFinding(
                    Severity.FATAL,
                    ref.key,
                    f"Name '{ref.name}' is held by a soft-deleted {ref.kind.value}",
                    "purge the soft-deleted resource or choose a different name",
                )
            ]
        return []

    def _check_protected_replacement(self, resource: ResourceSpec) -> list[ValidationFinding]:
        observed = self._backend.get(resource.ref)
        if observed is None or observed.soft_deleted or not observed.purge_protected:
            return []
        changes = self._normalizer.significant_changes(
            resource.kind.value, desired_properties(resource), dict(observed.properties)
        )
        immutable = immutable_changes(resource, changes)
        if not immutable:
            return []
        return [
            ValidationFinding(
                Severity.FATAL,
                resource.key,
                f"Immutable properties changed on a purge-protected {resource.kind.value}: "
                f"{', '.join(c.path for c in immutable)}; re-creating it would leave "
                f"'{resource.name}' held by the soft-deleted copy",
                "revert the change or declare the resource under a new name",
            )
        ]

    def _check_secret_store(
        self, graph: DependencyGraph, store_key: str, consumers: list[str]
    ) -> list[ValidationFinding]:
        node = graph.nodes[store_key]
        if node.resource is not None:
            properties = dict(node.resource.properties)
            source = "declared"
        else:
            observed = self._backend.get(node.ref)
            if observed is None or observed.soft_deleted:
                # Missing stores are reported by the existence check
                return []
            properties = dict(observed.properties)
            source = "live"

        findings = []
        for field_name, expected in SECURED_STORE_INVARIANTS.items():
            equivalent, _ = self._normalizer.are_equivalent(
                expected, properties.get(field_name), ResourceKind.SECRET_STORE.value, field_name
            )
            if not equivalent:
                findings.append(
                    ValidationFinding(
                        Severity.FATAL,
                        store_key,
                        f"Secret store referenced by {', '.join(sorted(consumers))} must have "
                        f"{field_name} enabled ({source} value: {properties.get(field_name)!r})",
                        f"set {field_name}: true on the secret store",
                    )
                )
        return findings

    def _check_required_tags(self, state: DeclaredState) -> list[ValidationFinding]:
        findings = []
        for resource in state.resources:
            missing = [t for t in state.required_tags if t not in resource.tags]
            if missing:
                findings.append(
                    ValidationFinding(
                        Severity.WARNING,
                        resource.key,
                        f"Missing required tags: {', '.join(missing)}",
                        "add the tags to the resource or to the overrides document",
                    )
                )
        return findings
