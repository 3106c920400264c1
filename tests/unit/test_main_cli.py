"""Unit tests for the magazine CLI.

The CLI is exercised end to end against a temporary SQLite database, with
the generation provider replaced by a deterministic fake.
"""

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner
from fastapi.testclient import TestClient

from magazine_pipeline.engine.machine import Stage
from magazine_pipeline.main import cli
from magazine_pipeline.store.database import PipelineStore
from tests.factories import FakeGenerator

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "magazine.db"


@pytest.fixture
def config_file(tmp_path: Path, db_path: Path) -> Path:
    """Configuration pointing at a temporary database."""
    config = tmp_path / "magazine.yaml"
    config.write_text(f"database:\n  path: {db_path}\nworkflow:\n  label_prefix: Dram\n")
    return config


@pytest.fixture(autouse=True)
def fake_generator():
    """Every pipeline the CLI builds gets a fresh fake generator."""
    with patch("magazine_pipeline.pipeline.create_generator", side_effect=lambda settings: FakeGenerator()):
        yield


@pytest.fixture
def invoke(cli_runner: CliRunner, config_file: Path):
    def run(*args: str):
        return cli_runner.invoke(cli, ["--config", str(config_file), *args])

    return run


@pytest.fixture
def image_invoke(cli_runner: CliRunner, tmp_path: Path, db_path: Path):
    """Invoke the CLI with the image generation stage enabled."""
    config = tmp_path / "images.yaml"
    config.write_text(f"database:\n  path: {db_path}\nworkflow:\n  include_image_generation: true\n")

    def run(*args: str):
        return cli_runner.invoke(cli, ["--config", str(config), *args])

    return run


# =============================================================================
# Group options
# =============================================================================


class TestCliGroup:
    """Tests for the top-level group."""

    def test_help(self, cli_runner: CliRunner):
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in (
            "start",
            "select-topic",
            "attach-search",
            "edit-card",
            "assign-image",
            "approve",
            "retry",
            "reset",
            "cancel",
            "serve",
        ):
            assert command in result.output

    def test_missing_config_file(self, cli_runner: CliRunner, tmp_path: Path):
        result = cli_runner.invoke(cli, ["--config", str(tmp_path / "absent.yaml"), "active"])

        assert result.exit_code == 1
        assert "Error: Configuration file not found" in result.output


# =============================================================================
# Commands
# =============================================================================


class TestInitDb:
    def test_creates_database(self, invoke, db_path: Path):
        result = invoke("init-db")

        assert result.exit_code == 0
        assert db_path.exists()
        assert "Database ready" in result.output


class TestStart:
    def test_start_lists_candidates(self, invoke):
        result = invoke("start", "--channel", "whisky")

        assert result.exit_code == 0
        assert "Started issue #1 (id 1)" in result.output
        assert "[0] Peated Islay Malts - Smoke, brine and iodine" in result.output
        assert "[2] Japanese Blends" in result.output

    def test_start_requires_channel(self, invoke):
        result = invoke("start")

        assert result.exit_code == 2


class TestApprovalCommands:
    def test_full_issue_lifecycle(self, invoke, db_path: Path):
        invoke("start", "--channel", "whisky")

        selected = invoke("select-topic", "1", "1")
        assert selected.exit_code == 0
        assert "moved to Content writing" in selected.output

        layout = invoke("approve", "1")
        assert layout.exit_code == 0
        assert "moved to Figma layout" in layout.output

        final = invoke("approve", "1")
        assert "moved to Final output" in final.output

        done = invoke("approve", "1", "--stage", "final_output")
        assert done.exit_code == 0
        assert "moved to Complete" in done.output

        with PipelineStore(db_path) as store:
            assert store.get_issue(1).stage == Stage.COMPLETE
            assert store.get_published_topic_titles() == ["Sherry Cask Finishes"]

    def test_select_topic_out_of_range(self, invoke):
        invoke("start", "--channel", "whisky")

        result = invoke("select-topic", "1", "9")

        assert result.exit_code == 1
        assert "Error: " in result.output

    def test_approve_missing_issue(self, invoke):
        result = invoke("approve", "4")

        assert result.exit_code == 1
        assert "Error: Issue 4 not found" in result.output

    def test_regenerate(self, invoke, db_path: Path):
        invoke("start", "--channel", "whisky")

        result = invoke("regenerate", "1")

        assert result.exit_code == 0
        assert "Regenerated topic selection data for issue 1" in result.output
        with PipelineStore(db_path) as store:
            assert store.get_stage_data(1, Stage.TOPIC_SELECTION).id == 2

    def test_approve_topics_without_selection(self, invoke, db_path: Path):
        invoke("start", "--channel", "whisky")

        result = invoke("approve", "1")

        assert result.exit_code == 1
        assert "Error: No topic has been selected" in result.output
        with PipelineStore(db_path) as store:
            assert store.get_issue(1).stage == Stage.TOPIC_SELECTION


class TestReviewerInputCommands:
    def test_attach_search_then_generate_topic(self, invoke, tmp_path: Path, db_path: Path):
        invoke("start", "--channel", "whisky")
        results_file = tmp_path / "results.json"
        results_file.write_text(
            json.dumps([{"title": "Cask prices fall", "url": "https://news.example.com/casks"}])
        )

        attached = invoke("attach-search", "1", str(results_file))
        assert attached.exit_code == 0
        assert "Attached 1 search result(s) to issue 1" in attached.output
        assert "[0] Cask prices fall (https://news.example.com/casks)" in attached.output

        generated = invoke("regenerate", "1", "--search-result", "0")
        assert generated.exit_code == 0
        with PipelineStore(db_path) as store:
            payload = store.get_stage_data(1, Stage.TOPIC_SELECTION).payload
        assert payload["mode"] == "search"
        assert payload["topics"][0]["title"] == "From search: Cask prices fall"

    def test_attach_empty_search_falls_back(self, invoke, tmp_path: Path):
        invoke("start", "--channel", "whisky")
        results_file = tmp_path / "results.json"
        results_file.write_text("[]")

        result = invoke("attach-search", "1", str(results_file))

        assert result.exit_code == 0
        assert "generated topic candidates instead" in result.output
        assert "[0] Peated Islay Malts" in result.output

    def test_attach_search_rejects_non_list(self, invoke, tmp_path: Path):
        invoke("start", "--channel", "whisky")
        results_file = tmp_path / "results.json"
        results_file.write_text('{"title": "Cask prices fall"}')

        result = invoke("attach-search", "1", str(results_file))

        assert result.exit_code == 1
        assert "must contain a JSON list" in result.output

    def test_attach_search_invalid_json(self, invoke, tmp_path: Path):
        results_file = tmp_path / "results.json"
        results_file.write_text("not json")

        result = invoke("attach-search", "1", str(results_file))

        assert result.exit_code == 1
        assert "Error: Cannot read search results" in result.output

    def test_edit_card(self, invoke, db_path: Path):
        invoke("start", "--channel", "whisky")
        invoke("select-topic", "1", "0")

        result = invoke("edit-card", "1", "1", "--heading", "Floor malting")

        assert result.exit_code == 0
        assert "Card 1 of issue 1 updated" in result.output
        with PipelineStore(db_path) as store:
            latest = store.get_stage_data(1, Stage.CONTENT_WRITING)
        assert not latest.is_approved
        assert latest.payload["cards"][1]["heading"] == "Floor malting"
        assert latest.payload["cards"][1]["body"] == "Malt is dried over peat."

    def test_edit_card_requires_a_field(self, invoke):
        result = invoke("edit-card", "1", "0")

        assert result.exit_code == 2
        assert "--heading" in result.output

    def test_assign_images_then_approve(self, image_invoke, db_path: Path):
        image_invoke("start", "--channel", "whisky")
        image_invoke("select-topic", "1", "0")
        moved = image_invoke("approve", "1")
        assert "moved to Image generation" in moved.output

        refused = image_invoke("approve", "1")
        assert refused.exit_code == 1
        assert "Error: Cards without images: 0, 2" in refused.output

        first = image_invoke("assign-image", "1", "0", "https://cdn.example.com/cover.png")
        assert first.exit_code == 0
        assert "Cards still without images: 2" in first.output

        second = image_invoke("assign-image", "1", "2", "https://cdn.example.com/glass.png")
        assert "Every card has an image" in second.output

        approved = image_invoke("approve", "1")
        assert approved.exit_code == 0
        assert "moved to Figma layout" in approved.output
        with PipelineStore(db_path) as store:
            cards = store.get_stage_data(1, Stage.FIGMA_LAYOUT).payload["cards"]
        assert cards[2]["imageRef"] == "https://cdn.example.com/glass.png"


class TestInspectionCommands:
    def test_active_empty(self, invoke):
        result = invoke("active")

        assert result.exit_code == 0
        assert "No active issues." in result.output

    def test_active_lists_issues(self, invoke):
        invoke("start", "--channel", "whisky")

        result = invoke("active")

        assert "Active issues (1):" in result.output
        assert "#1 (id 1): Topic selection" in result.output

    def test_status_shows_topics(self, invoke):
        invoke("start", "--channel", "whisky")

        result = invoke("status", "--channel", "whisky")

        assert result.exit_code == 0
        assert "#1 (id 1) - Topic selection" in result.output
        assert "pending" in result.output
        assert "[1] Sherry Cask Finishes" in result.output

    def test_errors_none(self, invoke):
        invoke("start", "--channel", "whisky")

        result = invoke("errors", "1")

        assert "No unresolved errors." in result.output

    def test_errors_listed(self, invoke, db_path: Path):
        invoke("start", "--channel", "whisky")
        with PipelineStore(db_path) as store:
            store.record_stage_error(1, Stage.TOPIC_SELECTION, "rate limited")

        result = invoke("errors", "1")

        assert "Topic selection: rate limited (retries: 0" in result.output


class TestOperatorCommands:
    def test_cancel(self, invoke, db_path: Path):
        invoke("start", "--channel", "whisky")

        result = invoke("cancel", "1")

        assert result.exit_code == 0
        assert "Issue #1 cancelled." in result.output
        with PipelineStore(db_path) as store:
            assert store.get_issue(1).stage == Stage.COMPLETE

    def test_cancel_twice_fails(self, invoke):
        invoke("start", "--channel", "whisky")
        invoke("cancel", "1")

        result = invoke("cancel", "1")

        assert result.exit_code == 1
        assert "Error: " in result.output

    def test_reset_accepts_lowercase_stage(self, invoke, db_path: Path):
        invoke("start", "--channel", "whisky")
        invoke("select-topic", "1", "0")

        result = invoke("reset", "1", "topic_selection")

        assert result.exit_code == 0
        assert "reset to Topic selection" in result.output
        with PipelineStore(db_path) as store:
            assert store.get_issue(1).stage == Stage.TOPIC_SELECTION

    def test_reset_unknown_stage(self, invoke):
        result = invoke("reset", "1", "printing")

        assert result.exit_code == 2

    def test_retry_reruns_current_stage(self, invoke, db_path: Path):
        invoke("start", "--channel", "whisky")
        with PipelineStore(db_path) as store:
            store.record_stage_error(1, Stage.TOPIC_SELECTION, "rate limited")

        result = invoke("retry", "1")

        assert result.exit_code == 0
        assert "Retried topic selection for issue 1." in result.output
        with PipelineStore(db_path) as store:
            assert store.get_unresolved_errors(1) == []


class TestServe:
    def test_serve_closes_pipeline_inside_server_loop(self, invoke):
        served = []

        def fake_run(app, host, port):
            with TestClient(app) as client:
                served.append(client.get("/health").status_code)

        with (
            patch("uvicorn.run", side_effect=fake_run) as run,
            patch("magazine_pipeline.pipeline.Pipeline.aclose", new_callable=AsyncMock) as aclose,
        ):
            result = invoke("serve", "--port", "9001")

        assert result.exit_code == 0
        assert served == [200]
        assert run.call_args.kwargs["port"] == 9001
        aclose.assert_awaited_once()
