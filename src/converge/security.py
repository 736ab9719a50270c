"""Security enforcement: secretless credentials and secret-free documents.

Two rules are enforced here:
- The Azure backend authenticates with Managed Identity only. Service
  principal secrets in the environment block startup.
- Declared-state and overrides documents never carry secret material.
  Secret-valued properties are written as ``secretRef`` references and
  resolved by the backend at apply time.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any

from azure.identity import ManagedIdentityCredential

from .models import ConvergeError, SecretReference

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Secretless architecture violation: {env_var} is set.\n"
    "Service principal and password authentication are not allowed.\n"
    "Remove the credential variables and run under a Managed Identity "
    "with RBAC on the target subscription."
)

# Keys that name secret material
SECRET_KEY_PATTERN = re.compile(
    r"(api[_-]?key|passw(or)?d|pwd|secret|token|connection[_-]?string|private[_-]?key)",
    re.IGNORECASE,
)

# Values that look like secret material regardless of key
SECRET_VALUE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----"),
    re.compile(r"AKIA[0-9A-Z]{16}"),
    re.compile(r"AccountKey=[A-Za-z0-9+/=]{20,}", re.IGNORECASE),
    re.compile(r"(Server|Data Source)=[^;]+;.*Password=[^;]+", re.IGNORECASE),
    re.compile(r"SharedAccessSignature=|sig=[A-Za-z0-9%+/=]{20,}", re.IGNORECASE),
)

SECRET_REMEDIATION = (
    "store the value in a secret store and reference it with "
    "{secretRef: {scope: <scope>, store: <store>, entry: <entry>}}"
)


class SecretlessViolationError(ConvergeError):
    """Raised when credential secrets are present in the environment."""

    pass


class SecretMaterialError(ConvergeError):
    """Raised when a document carries inline secret material.

    Attributes:
        paths: Dotted locations of every offending value.
    """

    def __init__(self, source: str, paths: list[str]) -> None:
        self.source = source
        self.paths = paths
        locations = "\n".join(f"  - {p}" for p in paths)
        super().__init__(
            f"Secret material found in {source}:\n{locations}\nRemediation: {SECRET_REMEDIATION}"
        )


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.info(
        "Secretless architecture verified",
        extra={
            "security_event": "secretless_verified",
            "credential_type": "ManagedIdentity",
        },
    )


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential after verifying secretless architecture.

    Args:
        client_id: Client ID of a user-assigned identity. System-assigned if None.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def find_secret_material(value: Any, path: str = "") -> list[str]:
    """Return the dotted paths of every value that looks like secret material.

    SecretReference values are the sanctioned form and are never reported.
    A key matching ``SECRET_KEY_PATTERN`` is reported when it holds a literal
    (non-empty string or number) instead of a reference.
    """
    found: list[str] = []

    if isinstance(value, SecretReference):
        return found

    if isinstance(value, dict):
        if set(value.keys()) == {"secretRef"}:
            return found
        for key, item in value.items():
            child = f"{path}.{key}" if path else str(key)
            is_literal = isinstance(item, (str, int, float)) and not isinstance(item, bool)
            if SECRET_KEY_PATTERN.search(str(key)) and is_literal and str(item) != "":
                found.append(child)
            else:
                found.extend(find_secret_material(item, child))
        return found

    if isinstance(value, list):
        for index, item in enumerate(value):
            found.extend(find_secret_material(item, f"{path}[{index}]"))
        return found

    if isinstance(value, str):
        for pattern in SECRET_VALUE_PATTERNS:
            if pattern.search(value):
                found.append(path or "<root>")
                break

    return found


def scan_for_secret_material(document: Any, source: str) -> None:
    """Reject a document that carries inline secret material.

    Raises:
        SecretMaterialError: If any secret-looking key or value is present.
    """
    paths = find_secret_material(document)
    if paths:
        logger.error(
            "Secret material rejected",
            extra={"security_event": "secret_material", "source": source, "count": len(paths)},
        )
        raise SecretMaterialError(source, paths)
