"""Tests for magazine_pipeline/utils/logging_config.py."""

import json

import pytest
import structlog

from magazine_pipeline.utils.logging_config import configure_logging


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


class TestConfigureLogging:
    def test_json_output(self, capsys):
        configure_logging("INFO", json_output=True)

        structlog.get_logger("test").info("stage_advanced", issue_id=42, to_stage="CONTENT_WRITING")

        line = json.loads(capsys.readouterr().out.strip())
        assert line["event"] == "stage_advanced"
        assert line["issue_id"] == 42
        assert line["level"] == "info"
        assert "timestamp" in line

    def test_level_filtering(self, capsys):
        configure_logging("warning", json_output=True)

        log = structlog.get_logger("test")
        log.info("hidden")
        log.warning("shown")

        out = capsys.readouterr().out
        assert "hidden" not in out
        assert "shown" in out

    def test_console_output(self, capsys):
        configure_logging("DEBUG", json_output=False)

        structlog.get_logger("test").debug("issue_created", issue_id=7)

        out = capsys.readouterr().out
        assert "issue_created" in out
        assert "issue_id" in out
