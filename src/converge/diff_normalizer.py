"""Diff normalization rules engine for drift detection.

Declared and observed property values are often syntactically different but
semantically equal. This module normalizes both sides before comparison so
drift detection does not report false positives.

COMMON FALSE POSITIVES HANDLED:
1. Empty list/map/string vs null vs missing property
2. String "true" vs boolean true
3. Default values the backend fills in
4. Case differences in enums (e.g., "Standard" vs "standard")
5. List ordering for unordered collections (address prefixes, DNS servers)
6. Numeric strings ("90" vs 90)

Only declared fields are compared. A field the document leaves unset never
drifts, whatever the backend reports for it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import SecretReference, to_wire

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Empty equivalence: [], {}, "", null, missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Boolean normalization: "true", "True", True, 1 are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # Numeric string normalization: "100" == 100
    NUMERIC_STRING = "numeric_string"

    # Case normalization for enums/strings
    CASE_INSENSITIVE = "case_insensitive"

    # Whitespace normalization for multi-line strings
    WHITESPACE_NORMALIZE = "whitespace_normalize"

    # List order independence
    ARRAY_UNORDERED = "array_unordered"

    # Default value equivalence
    DEFAULT_VALUE = "default_value"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        resource_kind: Resource kind to match ("*" for all)
        path_pattern: Property path pattern to match (supports * and **)
        normalization_type: Type of normalization to apply
        params: Additional parameters for the normalization
        reason: Human-readable explanation
    """

    resource_kind: str
    path_pattern: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def matches(self, resource_kind: str, path: str) -> bool:
        """Check if this rule applies to a resource kind and property path."""
        if self.resource_kind != "*" and resource_kind.lower() != self.resource_kind.lower():
            return False
        return self.path_pattern == "*" or self._glob_match(path.lower(), self.path_pattern.lower())

    def _glob_match(self, value: str, pattern: str) -> bool:
        """Simple glob matching: ``*`` is one segment, ``**`` any number of them."""
        regex_pattern = "^"
        i = 0
        while i < len(pattern):
            if pattern[i : i + 3] == "**.":
                regex_pattern += "(.*\\.)?"
                i += 3
            elif pattern[i : i + 2] == "**":
                regex_pattern += ".*"
                i += 2
            elif pattern[i] == "*":
                regex_pattern += "[^.]*"
                i += 1
            elif pattern[i] in r"\.[]{}()+^$|":
                regex_pattern += "\\" + pattern[i]
                i += 1
            else:
                regex_pattern += pattern[i]
                i += 1
        regex_pattern += "$"

        return bool(re.match(regex_pattern, value))


# Default normalization rules for common backend behaviour
DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        resource_kind="*",
        path_pattern="**",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty values equal null/missing",
    ),
    # Boolean flags
    NormalizationRule(
        resource_kind="*",
        path_pattern="**.enable*",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean enable flags may be string or bool",
    ),
    NormalizationRule(
        resource_kind="*",
        path_pattern="**.*enabled",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean enabled flags may be string or bool",
    ),
    # Numeric strings
    NormalizationRule(
        resource_kind="*",
        path_pattern="**.softDeleteRetentionInDays",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Retention days may be string or int",
    ),
    NormalizationRule(
        resource_kind="*",
        path_pattern="**.ttl",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="TTL may be string or int",
    ),
    # Case insensitive enums
    NormalizationRule(
        resource_kind="*",
        path_pattern="location",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Locations are case-insensitive",
    ),
    NormalizationRule(
        resource_kind="*",
        path_pattern="**.sku",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="SKU names may have case variations",
    ),
    NormalizationRule(
        resource_kind="*",
        path_pattern="**.sku.*",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="SKU names and tiers may have case variations",
    ),
    NormalizationRule(
        resource_kind="*",
        path_pattern="**.publicNetworkAccess",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Access modes may have case variations",
    ),
    NormalizationRule(
        resource_kind="gateway",
        path_pattern="gatewayType",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Gateway types may have case variations",
    ),
    NormalizationRule(
        resource_kind="storage-account",
        path_pattern="accountKind",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Account kinds may have case variations",
    ),
    # Default values
    NormalizationRule(
        resource_kind="secret-store",
        path_pattern="enableSoftDelete",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": True},
        reason="Soft delete is on by default",
    ),
    NormalizationRule(
        resource_kind="network",
        path_pattern="enableDdosProtection",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": False},
        reason="DDoS protection defaults to false",
    ),
    NormalizationRule(
        resource_kind="storage-account",
        path_pattern="supportsHttpsTrafficOnly",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": True},
        reason="HTTPS only defaults to true",
    ),
    NormalizationRule(
        resource_kind="storage-account",
        path_pattern="minimumTlsVersion",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": "TLS1_2"},
        reason="Minimum TLS defaults to 1.2",
    ),
    # Unordered collections
    NormalizationRule(
        resource_kind="*",
        path_pattern="**.addressPrefixes",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Address prefix order doesn't matter",
    ),
    NormalizationRule(
        resource_kind="*",
        path_pattern="**.dnsServers",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="DNS server order doesn't matter",
    ),
    NormalizationRule(
        resource_kind="*",
        path_pattern="**.ipRules",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Firewall rule order doesn't matter",
    ),
    NormalizationRule(
        resource_kind="network",
        path_pattern="subnets",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Subnets are keyed by name, not position",
    ),
    # Free text
    NormalizationRule(
        resource_kind="*",
        path_pattern="**.description",
        normalization_type=NormalizationType.WHITESPACE_NORMALIZE,
        reason="Portals reflow description whitespace and line endings",
    ),
]


@dataclass(frozen=True)
class PropertyChange:
    """A significant difference between a declared and an observed value."""

    path: str
    before: Any
    after: Any


class DiffNormalizer:
    """Normalizes declared/observed values to detect semantic equivalence."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
        log_normalizations: bool = False,
    ) -> None:
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)
        self._log_normalizations = log_normalizations

    def normalize_value(self, value: Any, resource_kind: str, path: str) -> Any:
        """Normalize a value based on applicable rules."""
        normalized = value
        for rule in self._rules:
            if rule.matches(resource_kind, path):
                normalized = self._apply_normalization(normalized, rule)
        return normalized

    def _apply_normalization(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return self._normalize_empty(value)
            case NormalizationType.BOOLEAN_NORMALIZE:
                return self._normalize_boolean(value)
            case NormalizationType.NUMERIC_STRING:
                return self._normalize_numeric_string(value)
            case NormalizationType.CASE_INSENSITIVE:
                return self._normalize_case(value)
            case NormalizationType.WHITESPACE_NORMALIZE:
                return self._normalize_whitespace(value)
            case NormalizationType.ARRAY_UNORDERED:
                return self._normalize_array_order(value)
            case NormalizationType.DEFAULT_VALUE:
                return self._normalize_default(value, rule.params.get("default"))
            case _:
                return value

    def _normalize_empty(self, value: Any) -> Any:
        """[], {}, "", null all become None for comparison."""
        if value is None:
            return None
        if isinstance(value, str | list | tuple | dict) and len(value) == 0:
            return None
        return value

    def _normalize_boolean(self, value: Any) -> bool | Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            if value.lower() in ("true", "yes", "1", "on"):
                return True
            if value.lower() in ("false", "no", "0", "off"):
                return False
        if isinstance(value, int):
            if value == 1:
                return True
            if value == 0:
                return False
        return value

    def _normalize_numeric_string(self, value: Any) -> int | float | Any:
        if isinstance(value, int | float):
            return value
        if isinstance(value, str):
            try:
                if "." in value:
                    return float(value)
                return int(value)
            except ValueError:
                pass
        return value

    def _normalize_case(self, value: Any) -> Any:
        if isinstance(value, str):
            return value.lower()
        if isinstance(value, dict):
            return {k: self._normalize_case(v) for k, v in value.items()}
        return value

    def _normalize_whitespace(self, value: Any) -> str | Any:
        if isinstance(value, str):
            value = value.replace("\r\n", "\n").replace("\r", "\n")
            lines = [" ".join(line.split()) for line in value.split("\n")]
            value = "\n".join(lines).strip()
        return value

    def _normalize_array_order(self, value: Any) -> tuple | Any:
        """Sort lists so order is irrelevant; tuples keep the result hashable."""
        if isinstance(value, list | tuple):
            try:
                return tuple(sorted(value, key=lambda x: str(x)))
            except TypeError:
                return value
        return value

    def _normalize_default(self, value: Any, default: Any) -> Any:
        if value is None:
            return default
        return value

    def are_equivalent(
        self,
        declared: Any,
        observed: Any,
        resource_kind: str,
        path: str,
    ) -> tuple[bool, str | None]:
        """Check if two values are semantically equivalent.

        Returns:
            Tuple of (are_equivalent, reason_if_equivalent).
        """
        normalized_declared = self.normalize_value(declared, resource_kind, path)
        normalized_observed = self.normalize_value(observed, resource_kind, path)

        if normalized_declared == normalized_observed:
            return True, self._get_equivalence_reason(resource_kind, path)
        if self._deep_equal(normalized_declared, normalized_observed):
            return True, self._get_equivalence_reason(resource_kind, path)
        return False, None

    def _deep_equal(self, a: Any, b: Any) -> bool:
        if isinstance(a, list | tuple) and isinstance(b, list | tuple):
            if len(a) != len(b):
                return False
            return all(self._deep_equal(x, y) for x, y in zip(a, b, strict=True))

        if type(a) is not type(b):
            return False

        if isinstance(a, dict):
            if set(a.keys()) != set(b.keys()):
                return False
            return all(self._deep_equal(a[k], b[k]) for k in a)

        return a == b

    def _get_equivalence_reason(self, resource_kind: str, path: str) -> str:
        for rule in self._rules:
            if rule.matches(resource_kind, path):
                return rule.reason or f"Normalized via {rule.normalization_type.value}"
        return "Values are semantically equivalent after normalization"

    def significant_changes(
        self,
        resource_kind: str,
        declared: dict[str, Any],
        observed: dict[str, Any],
        prefix: str = "",
    ) -> list[PropertyChange]:
        """Compare declared properties against observed ones.

        Nested mappings are walked key by key so that fields the document
        leaves unset or declares as null never drift. Secret references are
        write-only: they drift only when the backend reports a different reference.
        """
        deltas: list[PropertyChange] = []

        for key, declared_value in declared.items():
            path = f"{prefix}.{key}" if prefix else key
            if declared_value is None:
                continue
            observed_value = observed.get(key) if isinstance(observed, dict) else None

            if isinstance(declared_value, SecretReference):
                if observed_value is not None and observed_value != declared_value.to_wire():
                    deltas.append(PropertyChange(path, observed_value, declared_value.to_wire()))
                continue

            if isinstance(declared_value, dict) and declared_value:
                if isinstance(observed_value, dict):
                    deltas.extend(
                        self.significant_changes(
                            resource_kind, declared_value, observed_value, path
                        )
                    )
                    continue

            declared_value = to_wire(declared_value)
            equivalent, reason = self.are_equivalent(
                declared_value, observed_value, resource_kind, path
            )
            if equivalent:
                if self._log_normalizations and declared_value != observed_value:
                    logger.debug(
                        "Change normalized away",
                        extra={
                            "resource_kind": resource_kind,
                            "path": path,
                            "declared": declared_value,
                            "observed": observed_value,
                            "reason": reason,
                        },
                    )
                continue
            deltas.append(PropertyChange(path, observed_value, declared_value))

        return deltas
