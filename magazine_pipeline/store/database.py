"""
SQLite persistence for issues, stage data, published topics and stage errors.

The store is a dumb persistence layer: it performs no stage validation and no
retries. Every operation is its own atomic unit; nothing spans multiple calls.

Lifecycle:
    The store is constructed explicitly and injected into the engine, the
    recovery manager and the stage handlers::

        store = PipelineStore("magazine.db")
        store.open()        # connect and apply migrations
        ...                 # serve requests
        store.close()

    It can also be used as a context manager, which opens and closes it.

Schema Evolution:
    ``migrate()`` creates missing tables and then applies additive column
    migrations (check ``PRAGMA table_info``, then ``ALTER TABLE ... ADD
    COLUMN``). Migrations are idempotent and never destructive.

Failure Semantics:
    Any ``sqlite3.Error`` is re-raised as ``StoreError``. Retrying is the
    recovery layer's job, one level up.
"""

import json
import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import Any

import structlog

from magazine_pipeline.engine.machine import Stage
from magazine_pipeline.exceptions import StoreError
from magazine_pipeline.models.domain import ActiveIssue, Issue, StageData, StageDataStatus, StageError

log = structlog.get_logger(__name__)

SCHEMA_SQLITE = """
CREATE TABLE IF NOT EXISTS magazine_issues (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_number INTEGER NOT NULL,
    stage TEXT NOT NULL DEFAULT 'TOPIC_SELECTION',
    channel_id TEXT NOT NULL,
    thread_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stage_data (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_id INTEGER NOT NULL,
    stage TEXT NOT NULL,
    data_json TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    FOREIGN KEY (issue_id) REFERENCES magazine_issues(id)
);

CREATE TABLE IF NOT EXISTS published_topics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_id INTEGER NOT NULL,
    topic_title TEXT NOT NULL UNIQUE,
    published_at TEXT NOT NULL,
    FOREIGN KEY (issue_id) REFERENCES magazine_issues(id)
);

CREATE TABLE IF NOT EXISTS stage_errors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_id INTEGER NOT NULL,
    stage TEXT NOT NULL,
    error_message TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    resolved_at TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (issue_id) REFERENCES magazine_issues(id)
);
"""

# (table, column, type) added after the first release.
COLUMN_MIGRATIONS: list[tuple[str, str, str]] = [
    ("magazine_issues", "thread_url", "TEXT"),
]


def _now() -> str:
    return datetime.now(UTC).isoformat()


class PipelineStore:
    """Durable CRUD for the pipeline's four entities.

    Attributes:
        db_path: Location of the SQLite database file (``":memory:"`` allowed).
        wal: Whether to switch the database to write-ahead logging on open.
    """

    def __init__(self, db_path: str | Path, wal: bool = True) -> None:
        self.db_path = str(db_path)
        self.wal = wal
        self._conn: sqlite3.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "PipelineStore":
        """Connect to the database and apply schema migrations.

        Returns:
            The store itself, for chaining.

        Raises:
            StoreError: If the database cannot be opened or migrated.
        """
        if self._conn is not None:
            return self

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            if self.wal and self.db_path != ":memory:":
                conn.execute("PRAGMA journal_mode = WAL")
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open database {self.db_path}: {e}") from e

        self._conn = conn
        self.migrate()
        log.info("store_opened", db_path=self.db_path)
        return self

    def migrate(self) -> None:
        """Create missing tables and add missing columns."""
        try:
            self.conn.executescript(SCHEMA_SQLITE)
        except sqlite3.Error as e:
            raise StoreError(f"Schema creation failed: {e}") from e

        for table, column, column_type in COLUMN_MIGRATIONS:
            existing = {row["name"] for row in self._fetchall(f"PRAGMA table_info({table})")}
            if column not in existing:
                self._execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")
                log.info("migration_applied", table=table, column=column)

        self._execute("CREATE INDEX IF NOT EXISTS idx_stage_data_issue_stage ON stage_data(issue_id, stage)")
        self._execute("CREATE INDEX IF NOT EXISTS idx_stage_errors_issue ON stage_errors(issue_id, resolved_at)")

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            log.info("store_closed", db_path=self.db_path)

    def __enter__(self) -> "PipelineStore":
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Low-level helpers
    # ------------------------------------------------------------------

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("Store is not open; call open() first")
        return self._conn

    def _execute(self, query: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(query, tuple(params))
        except sqlite3.Error as e:
            raise StoreError(f"Database operation failed: {e}") from e

    def _fetchone(self, query: str, params: Iterable[Any] = ()) -> sqlite3.Row | None:
        return self._execute(query, params).fetchone()

    def _fetchall(self, query: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        return self._execute(query, params).fetchall()

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def create_issue(self, channel_id: str, thread_id: str | None = None) -> Issue:
        """Create an issue in TOPIC_SELECTION.

        The issue number is computed inside the INSERT statement, so two
        concurrent creates can never be assigned the same number.
        """
        now = _now()
        cursor = self._execute(
            """
            INSERT INTO magazine_issues (issue_number, stage, channel_id, thread_id, created_at, updated_at)
            SELECT COUNT(*) + 1, ?, ?, ?, ?, ? FROM magazine_issues
            """,
            (Stage.TOPIC_SELECTION.value, channel_id, thread_id, now, now),
        )
        issue = self.get_issue(int(cursor.lastrowid))
        if issue is None:
            raise StoreError(f"Issue row {cursor.lastrowid} missing after insert")
        log.info("issue_created", issue_id=issue.id, issue_number=issue.issue_number, channel_id=channel_id)
        return issue

    def get_issue(self, issue_id: int) -> Issue | None:
        row = self._fetchone("SELECT * FROM magazine_issues WHERE id = ?", (issue_id,))
        return Issue.from_row(row) if row else None

    def get_issue_by_thread(self, thread_id: str) -> Issue | None:
        row = self._fetchone("SELECT * FROM magazine_issues WHERE thread_id = ?", (thread_id,))
        return Issue.from_row(row) if row else None

    def get_active_issue(self, channel_id: str) -> Issue | None:
        """Most recent non-complete issue started from ``channel_id``."""
        row = self._fetchone(
            "SELECT * FROM magazine_issues WHERE channel_id = ? AND stage != ? ORDER BY id DESC LIMIT 1",
            (channel_id, Stage.COMPLETE.value),
        )
        return Issue.from_row(row) if row else None

    def get_all_active_issues(self) -> list[ActiveIssue]:
        """Every non-complete issue, newest first, with its selected topic title.

        The title comes from the latest TOPIC_SELECTION row and is None until
        a topic has been selected.
        """
        rows = self._fetchall(
            """
            SELECT mi.*,
                   json_extract(sd.data_json, '$.selectedTopic.title') AS topic_title
            FROM magazine_issues mi
            LEFT JOIN stage_data sd ON sd.id = (
                SELECT MAX(id) FROM stage_data
                WHERE issue_id = mi.id AND stage = ?
            )
            WHERE mi.stage != ?
            ORDER BY mi.id DESC
            """,
            (Stage.TOPIC_SELECTION.value, Stage.COMPLETE.value),
        )
        return [ActiveIssue.from_row(row) for row in rows]

    def list_issues_in_stage(self, stage: Stage | str) -> list[Issue]:
        rows = self._fetchall(
            "SELECT * FROM magazine_issues WHERE stage = ? ORDER BY id DESC",
            (str(stage),),
        )
        return [Issue.from_row(row) for row in rows]

    def update_issue_stage(self, issue_id: int, stage: Stage | str) -> None:
        """Overwrite the stage and refresh ``updated_at``. No validation."""
        self._execute(
            "UPDATE magazine_issues SET stage = ?, updated_at = ? WHERE id = ?",
            (str(stage), _now(), issue_id),
        )

    def update_issue_thread(self, issue_id: int, thread_id: str) -> None:
        self._execute(
            "UPDATE magazine_issues SET thread_id = ?, updated_at = ? WHERE id = ?",
            (thread_id, _now(), issue_id),
        )

    def update_issue_thread_url(self, issue_id: int, thread_url: str) -> None:
        self._execute(
            "UPDATE magazine_issues SET thread_url = ?, updated_at = ? WHERE id = ?",
            (thread_url, _now(), issue_id),
        )

    # ------------------------------------------------------------------
    # Stage data
    # ------------------------------------------------------------------

    def save_stage_data(self, issue_id: int, stage: Stage | str, payload: Any) -> StageData:
        """Insert a new pending snapshot. Existing rows are never updated."""
        cursor = self._execute(
            "INSERT INTO stage_data (issue_id, stage, data_json, status, created_at) VALUES (?, ?, ?, ?, ?)",
            (issue_id, str(stage), json.dumps(payload, ensure_ascii=False), StageDataStatus.PENDING.value, _now()),
        )
        row = self._fetchone("SELECT * FROM stage_data WHERE id = ?", (cursor.lastrowid,))
        if row is None:
            raise StoreError(f"Stage data row {cursor.lastrowid} missing after insert")
        log.debug("stage_data_saved", issue_id=issue_id, stage=str(stage), stage_data_id=row["id"])
        return StageData.from_row(row)

    def get_stage_data(self, issue_id: int, stage: Stage | str) -> StageData | None:
        """Latest snapshot for ``(issue_id, stage)``."""
        row = self._fetchone(
            "SELECT * FROM stage_data WHERE issue_id = ? AND stage = ? ORDER BY id DESC LIMIT 1",
            (issue_id, str(stage)),
        )
        return StageData.from_row(row) if row else None

    def approve_stage_data(self, stage_data_id: int) -> None:
        """Mark exactly one row approved. Re-approving is a no-op."""
        self._execute(
            "UPDATE stage_data SET status = ? WHERE id = ?",
            (StageDataStatus.APPROVED.value, stage_data_id),
        )

    # ------------------------------------------------------------------
    # Published topics
    # ------------------------------------------------------------------

    def publish_topic(self, issue_id: int, title: str) -> None:
        """Record a completed topic; duplicates are silently ignored."""
        self._execute(
            "INSERT OR IGNORE INTO published_topics (issue_id, topic_title, published_at) VALUES (?, ?, ?)",
            (issue_id, title, _now()),
        )

    def get_published_topic_titles(self) -> list[str]:
        rows = self._fetchall("SELECT topic_title FROM published_topics ORDER BY id DESC")
        return [row["topic_title"] for row in rows]

    # ------------------------------------------------------------------
    # Stage errors
    # ------------------------------------------------------------------

    def record_stage_error(self, issue_id: int, stage: Stage | str, message: str) -> int:
        cursor = self._execute(
            "INSERT INTO stage_errors (issue_id, stage, error_message, created_at) VALUES (?, ?, ?, ?)",
            (issue_id, str(stage), message, _now()),
        )
        return int(cursor.lastrowid)

    def increment_retry_count(self, error_id: int) -> None:
        self._execute("UPDATE stage_errors SET retry_count = retry_count + 1 WHERE id = ?", (error_id,))

    def mark_error_resolved(self, error_id: int) -> None:
        self._execute(
            "UPDATE stage_errors SET resolved_at = ? WHERE id = ? AND resolved_at IS NULL",
            (_now(), error_id),
        )

    def get_stage_error(self, error_id: int) -> StageError | None:
        row = self._fetchone("SELECT * FROM stage_errors WHERE id = ?", (error_id,))
        return StageError.from_row(row) if row else None

    def get_unresolved_errors(self, issue_id: int) -> list[StageError]:
        rows = self._fetchall(
            "SELECT * FROM stage_errors WHERE issue_id = ? AND resolved_at IS NULL ORDER BY id",
            (issue_id,),
        )
        return [StageError.from_row(row) for row in rows]

    def get_latest_unresolved_error(self, issue_id: int, stage: Stage | str) -> StageError | None:
        row = self._fetchone(
            """
            SELECT * FROM stage_errors
            WHERE issue_id = ? AND stage = ? AND resolved_at IS NULL
            ORDER BY id DESC LIMIT 1
            """,
            (issue_id, str(stage)),
        )
        return StageError.from_row(row) if row else None
