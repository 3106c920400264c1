"""
Workflow engine enforcing legal stage progression.

The engine is the only component that writes ``Issue.stage``. Everything else
reads it. Every stage change is persisted first and then announced through the
notifier; announcement failures are logged and never undo the change.

Typical Flow:
    1. ``start_issue`` creates an issue in TOPIC_SELECTION
    2. A stage handler saves pending stage data
    3. A reviewer approves the data (see ``ApprovalFlow``)
    4. ``advance_stage`` moves the issue to the machine's successor stage

Example:
    >>> engine = WorkflowEngine(store, StageMachine(), LogNotifier())
    >>> issue = await engine.start_issue("channel-1")
    >>> issue = await engine.advance_stage(issue.id)
    >>> issue.stage
    <Stage.CONTENT_WRITING: 'CONTENT_WRITING'>
"""

import structlog

from magazine_pipeline.engine.machine import Stage, StageMachine, stage_label
from magazine_pipeline.exceptions import (
    AlreadyTerminalError,
    CannotRejectError,
    NoTransitionError,
    NotFoundError,
)
from magazine_pipeline.models.domain import Issue
from magazine_pipeline.providers.base import Notifier
from magazine_pipeline.store.database import PipelineStore

log = structlog.get_logger(__name__)


class WorkflowEngine:
    """Orchestrate stage advancement for issues.

    Attributes:
        store: Persistence for issues and stage data.
        machine: Stage machine consulted on every transition.
        notifier: Receives label updates after stage changes.
        label_prefix: Prefix of the human-readable issue label.
    """

    def __init__(
        self,
        store: PipelineStore,
        machine: StageMachine,
        notifier: Notifier,
        label_prefix: str = "Magazine",
    ) -> None:
        self.store = store
        self.machine = machine
        self.notifier = notifier
        self.label_prefix = label_prefix

    def _load(self, issue_id: int) -> Issue:
        issue = self.store.get_issue(issue_id)
        if issue is None:
            raise NotFoundError(f"Issue {issue_id} not found", issue_id=issue_id)
        return issue

    def selected_topic_title(self, issue_id: int) -> str | None:
        """Title of the topic chosen for the issue, if one has been selected."""
        data = self.store.get_stage_data(issue_id, Stage.TOPIC_SELECTION)
        if data is None:
            return None
        payload = data.payload
        if not isinstance(payload, dict):
            return None
        selected = payload.get("selectedTopic") or {}
        return selected.get("title") if isinstance(selected, dict) else None

    def format_label(self, issue: Issue, stage: Stage, topic_title: str | None = None) -> str:
        """Build the label shown on the issue's context, e.g. ``Magazine #3 - Figma layout``."""
        label = f"{self.label_prefix} #{issue.issue_number} - {stage_label(stage)}"
        if topic_title:
            label = f"{label} ({topic_title})"
        return label

    async def _announce(self, issue: Issue, stage: Stage, label: str | None = None) -> None:
        """Best-effort label update. Never raises."""
        if label is None:
            label = self.format_label(issue, stage, self.selected_topic_title(issue.id))
        try:
            await self.notifier.update_label(issue.context_id, label)
        except Exception:
            log.warning("label_update_failed", issue_id=issue.id, stage=str(stage), exc_info=True)

    async def start_issue(self, channel_id: str) -> Issue:
        """Start a new issue in ``channel_id``.

        An issue already active in that channel is cancelled first so at most
        one issue is active per channel.

        Args:
            channel_id: Origin context identifier.

        Returns:
            The newly created issue, in TOPIC_SELECTION.
        """
        active = self.store.get_active_issue(channel_id)
        if active is not None:
            log.info("superseding_active_issue", issue_id=active.id, channel_id=channel_id)
            await self.force_stage(active.id, Stage.COMPLETE)
            for error in self.store.get_unresolved_errors(active.id):
                self.store.mark_error_resolved(error.id)

        issue = self.store.create_issue(channel_id)
        await self._announce(issue, issue.stage)
        return issue

    async def advance_stage(self, issue_id: int) -> Issue:
        """Move an issue to the machine's successor of its current stage.

        Args:
            issue_id: Issue to advance.

        Returns:
            The issue as persisted after the transition.

        Raises:
            NotFoundError: If the issue does not exist.
            AlreadyTerminalError: If the issue is already COMPLETE.
            NoTransitionError: If the current stage has no successor.
        """
        issue = self._load(issue_id)

        if self.machine.is_terminal(issue.stage):
            raise AlreadyTerminalError(f"Issue {issue_id} is already complete", issue_id=issue_id, stage=str(issue.stage))

        next_stage = self.machine.next_stage(issue.stage)
        if next_stage is None:
            raise NoTransitionError(f"No next stage for {issue.stage}", issue_id=issue_id, stage=str(issue.stage))

        self.store.update_issue_stage(issue_id, next_stage)
        updated = self._load(issue_id)
        log.info("stage_advanced", issue_id=issue_id, from_stage=str(issue.stage), to_stage=str(next_stage))

        await self._announce(updated, next_stage)
        return updated

    async def rerun_current_stage(self, issue_id: int) -> Issue:
        """Signal that the current stage's handler should run again.

        The stage is written back unchanged, which only refreshes
        ``updated_at``. Rejection never moves an issue backwards.

        Raises:
            NotFoundError: If the issue does not exist.
            CannotRejectError: If the current stage cannot be re-run this way.
        """
        issue = self._load(issue_id)

        if not self.machine.can_reject(issue.stage):
            raise CannotRejectError(f"Cannot reject stage {issue.stage}", issue_id=issue_id, stage=str(issue.stage))

        self.store.update_issue_stage(issue_id, issue.stage)
        log.info("stage_rerun_requested", issue_id=issue_id, stage=str(issue.stage))
        return self._load(issue_id)

    reject_stage = rerun_current_stage

    def get_current_stage(self, issue_id: int) -> Stage:
        return self._load(issue_id).stage

    async def force_stage(self, issue_id: int, stage: Stage, label: str | None = None) -> Issue:
        """Set the stage directly, bypassing the machine's linear order.

        Used only by the operator escape hatches (cancel, reset) and by
        ``start_issue`` when superseding an active issue.

        Args:
            issue_id: Issue to update.
            stage: Stage to write.
            label: Optional label override (e.g. a "cancelled" marker).

        Raises:
            NotFoundError: If the issue does not exist.
        """
        issue = self._load(issue_id)
        self.store.update_issue_stage(issue_id, stage)
        updated = self._load(issue_id)
        log.info("stage_forced", issue_id=issue_id, from_stage=str(issue.stage), to_stage=str(stage))

        await self._announce(updated, stage, label)
        return updated
