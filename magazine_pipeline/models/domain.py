"""
Domain models for the magazine pipeline.

These dataclasses are the normalized in-memory form of the rows persisted by
``PipelineStore``. The store builds them from ``sqlite3.Row`` objects; nothing
else constructs them from raw rows.

Example:
    >>> issue = store.create_issue("channel-1")
    >>> issue.stage
    <Stage.TOPIC_SELECTION: 'TOPIC_SELECTION'>
    >>> data = store.save_stage_data(issue.id, Stage.TOPIC_SELECTION, {"topics": []})
    >>> data.status
    <StageDataStatus.PENDING: 'pending'>
"""

import json
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any

from magazine_pipeline.engine.machine import Stage


class StageDataStatus(str, Enum):
    """Approval status of a stage-data snapshot.

    Approval is monotonic: PENDING may become APPROVED, never the reverse.
    """

    PENDING = "pending"
    """Produced by a handler, awaiting human review."""

    APPROVED = "approved"
    """Confirmed by a human reviewer."""

    def __str__(self) -> str:
        return self.value


@dataclass
class Issue:
    """One unit of pipeline work progressing through the stages."""

    id: int
    """Store-assigned primary key."""

    issue_number: int
    """Human-facing, globally increasing sequence number."""

    stage: Stage
    """Current stage. Mutated only by the workflow engine."""

    channel_id: str
    """Origin context the issue was started from."""

    thread_id: str | None
    """Sub-context created lazily for the issue's conversation."""

    thread_url: str | None
    """External deep link to the sub-context."""

    created_at: str
    updated_at: str

    @property
    def context_id(self) -> str:
        """Where notifications about this issue should go."""
        return self.thread_id or self.channel_id

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Issue":
        return cls(
            id=row["id"],
            issue_number=row["issue_number"],
            stage=Stage(row["stage"]),
            channel_id=row["channel_id"],
            thread_id=row["thread_id"],
            thread_url=row["thread_url"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class ActiveIssue(Issue):
    """Issue listing entry joined with its selected topic title."""

    topic_title: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ActiveIssue":
        base = Issue.from_row(row)
        return cls(**vars(base), topic_title=row["topic_title"])


@dataclass
class StageData:
    """Versioned snapshot of one stage's output for one issue."""

    id: int
    issue_id: int
    stage: Stage
    data_json: str
    status: StageDataStatus
    created_at: str

    @property
    def payload(self) -> Any:
        """Decoded payload. Its shape belongs to the stage handler."""
        return json.loads(self.data_json)

    @property
    def is_approved(self) -> bool:
        return self.status == StageDataStatus.APPROVED

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StageData":
        return cls(
            id=row["id"],
            issue_id=row["issue_id"],
            stage=Stage(row["stage"]),
            data_json=row["data_json"],
            status=StageDataStatus(row["status"]),
            created_at=row["created_at"],
        )


@dataclass
class StageError:
    """Ledger entry for one failure sequence of a stage handler."""

    id: int
    issue_id: int
    stage: Stage
    error_message: str
    retry_count: int
    resolved_at: str | None
    created_at: str

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StageError":
        return cls(
            id=row["id"],
            issue_id=row["issue_id"],
            stage=Stage(row["stage"]),
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            resolved_at=row["resolved_at"],
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class RetryInfo:
    """Read-only summary of a stage's latest unresolved error."""

    has_error: bool
    retry_count: int
    message: str | None
