"""Tests for logging setup."""

from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest

from converge.config import EngineConfig, LogFormat
from converge.main import JsonFormatter, TextFormatter, setup_logging


def make_record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        "converge.reconciler", logging.INFO, __file__, 1, "Step succeeded", None, None
    )
    record.__dict__.update(extra)
    return record


@pytest.fixture
def root_logger() -> Generator[logging.Logger, None, None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestFormatters:
    def test_json_includes_extras(self) -> None:
        line = JsonFormatter().format(make_record(resource="scope/ScopeA", attempts=2))

        data = json.loads(line)
        assert data["message"] == "Step succeeded"
        assert data["level"] == "INFO"
        assert data["logger"] == "converge.reconciler"
        assert data["resource"] == "scope/ScopeA"
        assert data["attempts"] == 2
        assert "msg" not in data

    def test_json_serializes_unknown_types(self) -> None:
        line = JsonFormatter().format(make_record(keys={"a"}))

        assert json.loads(line)["keys"] == "{'a'}"

    def test_text_appends_extras(self) -> None:
        line = TextFormatter().format(make_record(resource="scope/ScopeA"))

        assert "converge.reconciler: Step succeeded" in line
        assert line.endswith("resource=scope/ScopeA")


class TestSetupLogging:
    def test_replaces_previous_handler(self, root_logger: logging.Logger) -> None:
        setup_logging(EngineConfig(log_format=LogFormat.TEXT))
        setup_logging(EngineConfig(log_level="debug"))

        installed = [h for h in root_logger.handlers if h.get_name() == "converge"]
        assert len(installed) == 1
        assert isinstance(installed[0].formatter, JsonFormatter)
        assert root_logger.level == logging.DEBUG
        assert logging.getLogger("azure").level == logging.WARNING
