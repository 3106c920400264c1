"""
Operator escape hatches: cancel, reset and retry.

These bypass the stage machine's linear order on purpose and always clear the
issue's error ledger, so a fresh attempt starts without stale entries.
"""

import structlog

from magazine_pipeline.engine.machine import Stage, StageMachine, stage_label
from magazine_pipeline.engine.recovery import OnRetry, RecoveryManager
from magazine_pipeline.engine.stages.dispatcher import StageDispatcher
from magazine_pipeline.engine.workflow import WorkflowEngine
from magazine_pipeline.exceptions import AlreadyTerminalError, InvalidTransitionError, NotFoundError
from magazine_pipeline.models.domain import ActiveIssue, Issue, StageData, StageError
from magazine_pipeline.store.database import PipelineStore

log = structlog.get_logger(__name__)


class OperatorControls:
    """Manual controls for issues that are stuck or need re-running.

    Attributes:
        store: Persistence for issues and the error ledger.
        engine: Workflow engine used to force stages.
        recovery: Recovery manager owning error resolution.
        dispatcher: Runs the handler of an issue's current stage.
    """

    def __init__(
        self,
        store: PipelineStore,
        engine: WorkflowEngine,
        recovery: RecoveryManager,
        dispatcher: StageDispatcher,
    ) -> None:
        self.store = store
        self.engine = engine
        self.recovery = recovery
        self.dispatcher = dispatcher

    @property
    def machine(self) -> StageMachine:
        return self.engine.machine

    def _load_open(self, issue_id: int) -> Issue:
        issue = self.store.get_issue(issue_id)
        if issue is None:
            raise NotFoundError(f"Issue {issue_id} not found", issue_id=issue_id)
        if self.machine.is_terminal(issue.stage):
            raise AlreadyTerminalError(f"Issue {issue_id} is already complete", issue_id=issue_id, stage=str(issue.stage))
        return issue

    async def cancel(self, issue_id: int) -> Issue:
        """Force the issue to COMPLETE and resolve its errors.

        Raises:
            NotFoundError: If the issue does not exist.
            AlreadyTerminalError: If the issue is already complete.
        """
        issue = self._load_open(issue_id)
        resolved = self.recovery.resolve_all(issue_id)
        label = f"{self.engine.label_prefix} #{issue.issue_number} - Cancelled"
        cancelled = await self.engine.force_stage(issue_id, Stage.COMPLETE, label=label)
        log.info("issue_cancelled", issue_id=issue_id, from_stage=str(issue.stage), errors_resolved=resolved)
        return cancelled

    async def reset(self, issue_id: int, target_stage: Stage | str) -> Issue:
        """Force the issue to ``target_stage`` and resolve its errors.

        The target may be before or after the current stage. The handler is
        not run; use :meth:`retry` afterwards to re-run it.

        Raises:
            NotFoundError: If the issue does not exist.
            AlreadyTerminalError: If the issue is already complete.
            InvalidTransitionError: If the target is not a non-terminal stage
                of the machine.
        """
        issue = self._load_open(issue_id)
        target = next((s for s in self.machine.resettable_stages() if s == target_stage), None)
        if target is None:
            allowed = ", ".join(str(s) for s in self.machine.resettable_stages())
            raise InvalidTransitionError(
                f"Cannot reset to {target_stage}; choose one of: {allowed}",
                issue_id=issue_id,
                stage=str(issue.stage),
            )

        resolved = self.recovery.resolve_all(issue_id)
        updated = await self.engine.force_stage(issue_id, target)
        log.info(
            "issue_reset",
            issue_id=issue_id,
            from_stage=str(issue.stage),
            to_stage=str(target),
            errors_resolved=resolved,
        )
        return updated

    async def retry(self, issue_id: int, on_retry: OnRetry | None = None) -> StageData:
        """Resolve the issue's errors and re-run its current stage's handler.

        The stage itself is not changed.

        Raises:
            NotFoundError: If the issue does not exist.
            AlreadyTerminalError: If the issue is already complete.
            StageExhaustedError: If the re-run fails again.
        """
        issue = self._load_open(issue_id)
        resolved = self.recovery.resolve_all(issue_id)
        log.info("issue_retry", issue_id=issue_id, stage=str(issue.stage), errors_resolved=resolved)
        return await self.dispatcher.run(issue, on_retry=on_retry)

    def list_active(self) -> list[ActiveIssue]:
        return self.store.get_all_active_issues()

    def resolve_target(self, issue_id: int | None = None, channel_id: str | None = None) -> Issue:
        """Pick the issue an operator command refers to.

        An explicit ``issue_id`` wins. Otherwise the channel's active issue is
        used, and failing that the only active issue, if there is exactly one.

        Raises:
            NotFoundError: If no single issue can be determined.
        """
        if issue_id is not None:
            issue = self.store.get_issue(issue_id)
            if issue is None:
                raise NotFoundError(f"Issue {issue_id} not found", issue_id=issue_id)
            return issue

        if channel_id is not None:
            issue = self.store.get_active_issue(channel_id)
            if issue is not None:
                return issue

        active = self.store.get_all_active_issues()
        if len(active) == 1:
            return active[0]
        if not active:
            raise NotFoundError("No active issues")
        numbers = ", ".join(f"#{a.issue_number} (id {a.id})" for a in active)
        raise NotFoundError(f"Several active issues, specify one: {numbers}")

    def describe_errors(self, issue_id: int) -> list[StageError]:
        """Unresolved errors of an issue, oldest first."""
        if self.store.get_issue(issue_id) is None:
            raise NotFoundError(f"Issue {issue_id} not found", issue_id=issue_id)
        return self.store.get_unresolved_errors(issue_id)

    def summarize(self, issue: Issue) -> str:
        """One-line status of an issue for operator output."""
        info = self.recovery.get_retry_info(issue.id, issue.stage)
        line = f"#{issue.issue_number} (id {issue.id}) - {stage_label(issue.stage)}"
        if info.has_error:
            line = f"{line} [error after {info.retry_count + 1} attempt(s): {info.message}]"
        return line
