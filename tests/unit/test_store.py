"""Tests for the SQLite pipeline store."""

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import patch

import pytest

from magazine_pipeline.engine.machine import Stage
from magazine_pipeline.exceptions import StoreError
from magazine_pipeline.models.domain import StageDataStatus
from magazine_pipeline.store.database import PipelineStore


class TestLifecycle:
    """Opening, migrating and closing the store."""

    def test_open_creates_tables(self, tmp_path: Path):
        with PipelineStore(tmp_path / "new.db") as store:
            tables = {
                row["name"] for row in store.conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }

        assert {"magazine_issues", "stage_data", "published_topics", "stage_errors"} <= tables

    def test_migrate_adds_thread_url_to_old_database(self, tmp_path: Path):
        db_path = tmp_path / "old.db"
        conn = sqlite3.connect(db_path)
        conn.execute(
            """
            CREATE TABLE magazine_issues (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                issue_number INTEGER NOT NULL,
                stage TEXT NOT NULL DEFAULT 'TOPIC_SELECTION',
                channel_id TEXT NOT NULL,
                thread_id TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.commit()
        conn.close()

        with PipelineStore(db_path) as store:
            columns = {row["name"] for row in store.conn.execute("PRAGMA table_info(magazine_issues)")}
            issue = store.create_issue("channel-1")

        assert "thread_url" in columns
        assert issue.thread_url is None

    def test_migrate_is_idempotent(self, tmp_path: Path):
        db_path = tmp_path / "twice.db"
        with PipelineStore(db_path) as store:
            store.create_issue("channel-1")

        with PipelineStore(db_path) as store:
            store.migrate()
            assert store.get_issue(1) is not None

    def test_use_before_open_raises(self, tmp_path: Path):
        store = PipelineStore(tmp_path / "closed.db")

        with pytest.raises(StoreError):
            store.get_issue(1)

    def test_sqlite_errors_become_store_errors(self, store: PipelineStore):
        with pytest.raises(StoreError):
            store.save_stage_data(999, Stage.CONTENT_WRITING, {"cards": []})


class TestIssues:
    """Issue creation and queries."""

    def test_create_issue_defaults(self, store: PipelineStore):
        issue = store.create_issue("channel-1", thread_id="thread-1")

        assert issue.issue_number == 1
        assert issue.stage == Stage.TOPIC_SELECTION
        assert issue.channel_id == "channel-1"
        assert issue.thread_id == "thread-1"
        assert issue.context_id == "thread-1"

    def test_issue_numbers_increase_without_gaps(self, store: PipelineStore):
        numbers = [store.create_issue(f"channel-{n % 2}").issue_number for n in range(5)]

        assert numbers == [1, 2, 3, 4, 5]

    def test_concurrent_creates_from_many_connections_get_unique_numbers(self, tmp_path: Path):
        db_path = tmp_path / "shared.db"
        stores = [PipelineStore(db_path).open() for _ in range(4)]

        def create_many(worker: PipelineStore) -> list[int]:
            return [worker.create_issue("channel-1").issue_number for _ in range(20)]

        try:
            with ThreadPoolExecutor(max_workers=4) as pool:
                per_thread = list(pool.map(create_many, stores))
        finally:
            for worker in stores:
                worker.close()

        numbers = [n for batch in per_thread for n in batch]
        assert sorted(numbers) == list(range(1, 81))
        for batch in per_thread:
            assert batch == sorted(batch)

    def test_missing_row_after_insert_raises_store_error(self, store: PipelineStore):
        with patch.object(store, "get_issue", return_value=None):
            with pytest.raises(StoreError, match="missing after insert"):
                store.create_issue("channel-1")

    def test_context_id_falls_back_to_channel(self, store: PipelineStore):
        assert store.create_issue("channel-1").context_id == "channel-1"

    def test_get_missing_issue(self, store: PipelineStore):
        assert store.get_issue(42) is None

    def test_get_issue_by_thread(self, store: PipelineStore):
        issue = store.create_issue("channel-1")
        store.update_issue_thread(issue.id, "thread-9")

        found = store.get_issue_by_thread("thread-9")

        assert found is not None
        assert found.id == issue.id

    def test_get_active_issue_ignores_complete(self, store: PipelineStore):
        first = store.create_issue("channel-1")
        store.update_issue_stage(first.id, Stage.COMPLETE)

        assert store.get_active_issue("channel-1") is None

        second = store.create_issue("channel-1")
        active = store.get_active_issue("channel-1")

        assert active is not None
        assert active.id == second.id

    def test_get_all_active_issues_joins_selected_topic(self, store: PipelineStore):
        first = store.create_issue("channel-1")
        second = store.create_issue("channel-2")
        store.save_stage_data(first.id, Stage.TOPIC_SELECTION, {"topics": [], "selectedTopic": {"title": "Old"}})
        store.save_stage_data(first.id, Stage.TOPIC_SELECTION, {"topics": [], "selectedTopic": {"title": "Bourbon"}})

        active = store.get_all_active_issues()

        assert [a.id for a in active] == [second.id, first.id]
        assert active[0].topic_title is None
        assert active[1].topic_title == "Bourbon"

    def test_list_issues_in_stage(self, store: PipelineStore):
        first = store.create_issue("channel-1")
        store.create_issue("channel-1")
        store.update_issue_stage(first.id, Stage.FIGMA_LAYOUT)

        listed = store.list_issues_in_stage(Stage.FIGMA_LAYOUT)

        assert [i.id for i in listed] == [first.id]

    def test_update_thread_url(self, store: PipelineStore):
        issue = store.create_issue("channel-1")
        store.update_issue_thread_url(issue.id, "https://chat.example.com/t/1")

        assert store.get_issue(issue.id).thread_url == "https://chat.example.com/t/1"


class TestStageData:
    """Versioned stage snapshots."""

    def test_save_creates_pending_row(self, store: PipelineStore):
        issue = store.create_issue("channel-1")

        data = store.save_stage_data(issue.id, Stage.CONTENT_WRITING, {"cards": ["한글"]})

        assert data.status == StageDataStatus.PENDING
        assert data.payload == {"cards": ["한글"]}
        assert "한글" in data.data_json

    def test_missing_row_after_insert_raises_store_error(self, store: PipelineStore):
        issue = store.create_issue("channel-1")

        with patch.object(store, "_fetchone", return_value=None):
            with pytest.raises(StoreError, match="missing after insert"):
                store.save_stage_data(issue.id, Stage.TOPIC_SELECTION, {"topics": []})

    def test_get_returns_latest_version(self, store: PipelineStore):
        issue = store.create_issue("channel-1")
        first = store.save_stage_data(issue.id, Stage.CONTENT_WRITING, {"v": 1})
        second = store.save_stage_data(issue.id, Stage.CONTENT_WRITING, {"v": 2})

        latest = store.get_stage_data(issue.id, Stage.CONTENT_WRITING)

        assert first.id != second.id
        assert latest.id == second.id
        assert latest.payload == {"v": 2}

    def test_approving_older_row_does_not_change_latest(self, store: PipelineStore):
        issue = store.create_issue("channel-1")
        first = store.save_stage_data(issue.id, Stage.CONTENT_WRITING, {"v": 1})
        second = store.save_stage_data(issue.id, Stage.CONTENT_WRITING, {"v": 2})

        store.approve_stage_data(first.id)
        latest = store.get_stage_data(issue.id, Stage.CONTENT_WRITING)

        assert latest.id == second.id
        assert latest.status == StageDataStatus.PENDING

    def test_approve_is_idempotent(self, store: PipelineStore):
        issue = store.create_issue("channel-1")
        data = store.save_stage_data(issue.id, Stage.FINAL_OUTPUT, {"caption": "x"})

        store.approve_stage_data(data.id)
        store.approve_stage_data(data.id)

        assert store.get_stage_data(issue.id, Stage.FINAL_OUTPUT).is_approved

    def test_get_missing_stage_data(self, store: PipelineStore):
        issue = store.create_issue("channel-1")

        assert store.get_stage_data(issue.id, Stage.FIGMA_LAYOUT) is None


class TestPublishedTopics:
    """Published topic history."""

    def test_titles_newest_first(self, store: PipelineStore):
        issue = store.create_issue("channel-1")
        store.publish_topic(issue.id, "Rye")
        store.publish_topic(issue.id, "Bourbon")

        assert store.get_published_topic_titles() == ["Bourbon", "Rye"]

    def test_duplicate_titles_ignored(self, store: PipelineStore):
        issue = store.create_issue("channel-1")
        store.publish_topic(issue.id, "Rye")
        store.publish_topic(issue.id, "Rye")

        assert store.get_published_topic_titles() == ["Rye"]


class TestStageErrors:
    """Error ledger rows."""

    def test_record_increment_and_resolve(self, store: PipelineStore):
        issue = store.create_issue("channel-1")
        error_id = store.record_stage_error(issue.id, Stage.CONTENT_WRITING, "timeout")
        store.increment_retry_count(error_id)

        error = store.get_stage_error(error_id)
        assert error.retry_count == 1
        assert not error.is_resolved

        store.mark_error_resolved(error_id)

        assert store.get_stage_error(error_id).is_resolved
        assert store.get_unresolved_errors(issue.id) == []

    def test_resolving_twice_keeps_first_timestamp(self, store: PipelineStore):
        issue = store.create_issue("channel-1")
        error_id = store.record_stage_error(issue.id, Stage.CONTENT_WRITING, "timeout")
        store.mark_error_resolved(error_id)
        resolved_at = store.get_stage_error(error_id).resolved_at

        store.mark_error_resolved(error_id)

        assert store.get_stage_error(error_id).resolved_at == resolved_at

    def test_latest_unresolved_error_per_stage(self, store: PipelineStore):
        issue = store.create_issue("channel-1")
        store.record_stage_error(issue.id, Stage.CONTENT_WRITING, "first")
        store.record_stage_error(issue.id, Stage.CONTENT_WRITING, "second")
        store.record_stage_error(issue.id, Stage.TOPIC_SELECTION, "other")

        latest = store.get_latest_unresolved_error(issue.id, Stage.CONTENT_WRITING)

        assert latest.error_message == "second"
        assert [e.error_message for e in store.get_unresolved_errors(issue.id)] == ["first", "second", "other"]
