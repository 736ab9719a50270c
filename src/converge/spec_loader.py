"""Declared-state loading with validation.

SECURITY: All file operations enforce size limits and every document is
scanned for inline secret material before it is validated.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_RESOURCES_PER_PLAN, MAX_SPEC_FILE_SIZE_BYTES
from .models import ConvergeError, DeclaredState, ResourceKind, ResourceRef
from .security import scan_for_secret_material

logger = logging.getLogger(__name__)


class SpecLoadError(ConvergeError):
    """Raised when a document cannot be loaded or fails validation."""

    pass


def _read_yaml(path: Path) -> dict[str, Any]:
    """Read a YAML mapping from disk with size limits."""
    if not path.exists():
        raise SpecLoadError(f"File not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(f"File exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"File must contain a YAML mapping: {path}")
    return raw_data


def _resource_key(raw: dict[str, Any]) -> str | None:
    """Identity key of a raw resource entry, or None if it is malformed."""
    try:
        kind = ResourceKind(raw.get("kind"))
    except ValueError:
        return None
    name = raw.get("name")
    if not isinstance(name, str):
        return None
    scope = None if kind == ResourceKind.SCOPE else raw.get("scope")
    return ResourceRef(kind, scope, name).key


def merge_overrides(document: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Apply an overrides document to a raw declared-state document.

    Overrides are keyed by resource key. ``properties`` are merged one level
    deep into ``declaredProperties`` and ``tags`` into ``tags``.

    Raises:
        SpecLoadError: If an override names a resource that is not declared.
    """
    merged = copy.deepcopy(document)
    entries = overrides.get("resources") or {}
    if not isinstance(entries, dict):
        raise SpecLoadError("Overrides 'resources' must be a mapping keyed by resource key")

    by_key: dict[str, dict[str, Any]] = {}
    for raw in merged.get("resources") or []:
        if isinstance(raw, dict):
            key = _resource_key(raw)
            if key:
                by_key[key] = raw

    unknown = sorted(k for k in entries if k not in by_key)
    if unknown:
        raise SpecLoadError(f"Overrides reference undeclared resources: {unknown}")

    for key, override in entries.items():
        if not isinstance(override, dict):
            raise SpecLoadError(f"Override for {key} must be a mapping")
        target = by_key[key]
        props = override.get("properties")
        if props:
            target.setdefault("declaredProperties", {})
            if target["declaredProperties"] is None:
                target["declaredProperties"] = {}
            target["declaredProperties"].update(props)
        tags = override.get("tags")
        if tags:
            target.setdefault("tags", {})
            if target["tags"] is None:
                target["tags"] = {}
            target["tags"].update(tags)
        logger.debug("Applied override", extra={"resource": key})

    return merged


def _format_validation_error(path: Path, e: ValidationError) -> str:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"  - {loc}: {error['msg']}")
    return f"Validation failed for {path}:\n" + "\n".join(errors)


def load_declared_state(path: Path, overrides_path: Path | None = None) -> DeclaredState:
    """Load and validate a declared-state document.

    Args:
        path: Declared-state YAML file.
        overrides_path: Optional overrides YAML file.

    Returns:
        Validated DeclaredState.

    Raises:
        SpecLoadError: If a document cannot be loaded or fails validation.
        SecretMaterialError: If either document carries inline secret material.
    """
    raw_data = _read_yaml(path)
    scan_for_secret_material(raw_data, str(path))

    if overrides_path is not None:
        overrides = _read_yaml(overrides_path)
        scan_for_secret_material(overrides, str(overrides_path))
        raw_data = merge_overrides(raw_data, overrides)

    resources = raw_data.get("resources") or []
    if isinstance(resources, list) and len(resources) > MAX_RESOURCES_PER_PLAN:
        raise SpecLoadError(
            f"Too many resources ({len(resources)}); maximum per plan is {MAX_RESOURCES_PER_PLAN}"
        )

    try:
        state = DeclaredState.model_validate(raw_data)
    except ValidationError as e:
        raise SpecLoadError(_format_validation_error(path, e)) from e

    logger.info(
        "Loaded declared state '%s' from %s",
        state.deployment_name,
        path,
        extra={"resources": len(state.resources), "existing": len(state.existing)},
    )
    return state
