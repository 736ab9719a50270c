"""Pytest configuration and fixtures."""

import copy
import sys
from pathlib import Path
from typing import Any

import pytest
import yaml

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for backend_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from backend_mock import FakeBackend  # noqa: E402

from converge.config import EngineConfig  # noqa: E402
from converge.models import DeclaredState  # noqa: E402

# ScopeA holds Zone1; Endpoint1 joins Zone1 and registers "endpoint1"
SCENARIO_DOCUMENT: dict[str, Any] = {
    "apiVersion": "converge/v1",
    "metadata": {"name": "demo"},
    "requiredTags": [],
    "resources": [
        {"kind": "scope", "name": "ScopeA"},
        {"kind": "private-zone", "scope": "ScopeA", "name": "Zone1"},
        {
            "kind": "endpoint",
            "scope": "ScopeA",
            "name": "Endpoint1",
            "declaredProperties": {"joinZones": ["Zone1"]},
            "dependsOn": ["private-zone/Zone1"],
        },
    ],
}


@pytest.fixture
def scenario_document() -> dict[str, Any]:
    return copy.deepcopy(SCENARIO_DOCUMENT)


@pytest.fixture
def scenario_state(scenario_document: dict[str, Any]) -> DeclaredState:
    return DeclaredState.model_validate(scenario_document)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fast_config() -> EngineConfig:
    """Config without backoff or propagation waits."""
    return EngineConfig(
        step_timeout_seconds=5,
        retry_backoff_base_seconds=0.0,
        registration_propagation_seconds=0.0,
        registration_poll_interval_seconds=0.01,
    )


@pytest.fixture
def write_yaml(tmp_path: Path):
    """Write a document to a YAML file under tmp_path and return its path."""

    def _write(document: Any, name: str = "state.yaml") -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(document, sort_keys=False))
        return path

    return _write
